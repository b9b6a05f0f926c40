"""Static supplier registry used to validate the AI's categorization.

The registry is built once at process start and never mutated. Categories
are scanned in declaration order by the matcher, so the order of
``DEFAULT_REGISTRY.categories`` is significant.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from scanner.extraction.schema import SupplierCategory


@dataclass(frozen=True)
class CategoryEntry:
    """Known suppliers and keywords of one generic category."""

    category: SupplierCategory
    suppliers: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class SupplierRegistry:
    """Read-only supplier knowledge base.

    Attributes:
        priority: Canonical names of suppliers that must never be recategorized
        aliases: Alternate-script spelling -> canonical priority name
        categories: Generic categories in scan order
    """

    priority: tuple[str, ...]
    aliases: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    categories: tuple[CategoryEntry, ...] = ()

    def __post_init__(self) -> None:
        unknown = [name for name in self.aliases.values() if name not in self.priority]
        if unknown:
            raise ValueError(f"Aliases point to unknown priority suppliers: {unknown}")
        # Freeze caller-supplied dicts
        object.__setattr__(self, "aliases", MappingProxyType(dict(self.aliases)))

    def category(self, category: SupplierCategory) -> CategoryEntry | None:
        """Get the entry of a generic category, if registered."""
        for entry in self.categories:
            if entry.category is category:
                return entry
        return None


PRIORITY_SUPPLIERS: tuple[str, ...] = (
    "אלכס ברק",
    "אחים לוי",
    'אלמנדוס בע"מ',
    "אפי שיווק ביצים",
    "אקיופוז",
    "ארגל",
    "אריזים שפי פלסט",
    "בזק",
    'הפרסי פירות וירקות בע"מ',
    "דקל דברי נוי",
    "ח.ל.ק.ט קרח",
    "טויטו שחר מחלבות גד",
    "טכנאים",
    "מ. אש קפה",
    "מגבוני סיוון",
    "מיכל גינון",
    "מיכלי זהב",
    "מירב אוזן",
    "מקאנו",
    "מר קייק",
    "מרכז הירק",
    "משתלות",
    "נטפים",
    "פוליבה",
    "פיין וויין גבינות",
    "פנדרייה (אנשי הלחם)",
    "פפירוס",
    "פריניב",
    "צח",
    "קיבוץ כנרת",
    'רפת א.א.א.',
    "תבליני כהן",
)

SUPPLIER_ALIASES: dict[str, str] = {
    "meccano": "מקאנו",
    "bezeq": "בזק",
    "netafim": "נטפים",
    "papyrus": "פפירוס",
    "kinneret": "קיבוץ כנרת",
    "almandos": 'אלמנדוס בע"מ',
    "mr cake": "מר קייק",
    "pandreya": "פנדרייה (אנשי הלחם)",
    "polyva": "פוליבה",
    "priniv": "פריניב",
    "fine wine": "פיין וויין גבינות",
    "tavlinei cohen": "תבליני כהן",
}

DEFAULT_CATEGORIES: tuple[CategoryEntry, ...] = (
    CategoryEntry(
        category=SupplierCategory.FUEL_STATION,
        suppliers=(
            "Yellow",
            "דור אלון",
            "סונול",
            "פז",
            "Ten",
            "באר מרים",
            "שלמה סיקסט",
        ),
        keywords=(
            "דלק",
            "תדלוק",
            "fuel",
            "בנזין",
            "דיזל",
            "gas station",
            "תחנת דלק",
            "ליטר",
        ),
    ),
    CategoryEntry(
        category=SupplierCategory.SUPERMARKET,
        suppliers=(
            "שופרסל",
            "רמי לוי",
            "ויקטורי",
            "יוחננוף",
            "אלונית",
            "מחסני השוק",
            "טרמינל 3",
            "יינות ביתן",
            "אושר עד",
            "מגא",
            "חצי חינם",
            "קופיקס",
        ),
        keywords=(
            "סופר",
            "סופרמרקט",
            "supermarket",
            "שוק",
            "מרכול",
            "מכולת",
        ),
    ),
    CategoryEntry(
        category=SupplierCategory.NURSERY,
        suppliers=(),
        keywords=(
            "משתלה",
            "משתלת",
            "גננות",
            "צמחים",
            "nursery",
            "גינון",
            "עציצים",
        ),
    ),
)

DEFAULT_REGISTRY = SupplierRegistry(
    priority=PRIORITY_SUPPLIERS,
    aliases=SUPPLIER_ALIASES,
    categories=DEFAULT_CATEGORIES,
)
