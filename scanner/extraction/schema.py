"""Invoice data models for structured extraction.

The AI response is coerced into these models by the response normalizer.
Field names follow the snake_case keys the model is asked to emit.
"""

import math
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

CREDIT_NOTE_MARKER = "חשבונית זיכוי"

# Confidence thresholds for overall document quality
CONFIDENCE_HIGH = 90
CONFIDENCE_MEDIUM = 75
CONFIDENCE_LOW = 60


class SupplierCategory(str, Enum):
    """Supplier buckets used by the ledger."""

    PRIORITY = "priority"
    FUEL_STATION = "fuel_station"
    SUPERMARKET = "supermarket"
    NURSERY = "nursery"
    OTHER = "other"


class DocumentType(str, Enum):
    """Kinds of paper documents the scanner accepts."""

    INVOICE = "invoice"
    DELIVERY_NOTE = "delivery_note"
    CREDIT_INVOICE = "credit_invoice"


class QualityLevel(str, Enum):
    """Overall confidence bucket of an extracted document."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    POOR = "poor"


CATEGORY_DISPLAY_NAMES: dict[SupplierCategory, str] = {
    SupplierCategory.PRIORITY: "ספק מוכר",
    SupplierCategory.FUEL_STATION: "תחנת דלק",
    SupplierCategory.SUPERMARKET: "רשתות מזון",
    SupplierCategory.NURSERY: "משתלות",
    SupplierCategory.OTHER: "שונות",
}

DOCUMENT_TYPE_DISPLAY_NAMES: dict[DocumentType, str] = {
    DocumentType.INVOICE: "חשבונית מס",
    DocumentType.DELIVERY_NOTE: "תעודת משלוח",
    DocumentType.CREDIT_INVOICE: CREDIT_NOTE_MARKER,
}


def category_display_name(category: SupplierCategory | None) -> str:
    """Get the ledger display name of a category ('שונות' when unknown)."""
    if category is None:
        return CATEGORY_DISPLAY_NAMES[SupplierCategory.OTHER]
    return CATEGORY_DISPLAY_NAMES[category]


def category_from_display_name(name: str) -> SupplierCategory:
    """Reverse lookup of :func:`category_display_name`, defaulting to OTHER."""
    for category, display in CATEGORY_DISPLAY_NAMES.items():
        if display == name:
            return category
    return SupplierCategory.OTHER


def clamp_confidence(value: Any) -> int:
    """Coerce a model-reported confidence into an integer in [0, 100]."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(str(value).strip().rstrip("%"))
    except ValueError:
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, min(100, round(number)))


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        try:
            number = Decimal(text)
        except ArithmeticError:
            return None
    # NaN, sNaN and Infinity are not amounts
    return number if number.is_finite() else None


class LineItem(BaseModel):
    """One product row of an invoice or delivery note.

    Accepts the short keys the model sometimes emits (``qty``, ``total``,
    ``price``) in addition to the canonical ones.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    quantity: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("quantity", "qty")
    )
    unit: str | None = None
    unit_price_ex_vat: Decimal | None = Field(
        default=None,
        validation_alias=AliasChoices("unit_price_ex_vat", "unit_price", "price"),
    )
    total_ex_vat: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("total_ex_vat", "total")
    )

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("unit", mode="before")
    @classmethod
    def _unit_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip() or None

    @field_validator("quantity", "unit_price_ex_vat", "total_ex_vat", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> Decimal | None:
        return _to_decimal(value)


class ExtractedInvoice(BaseModel):
    """Normalized record produced from one scanned document.

    Invariants (enforced by the response normalizer):
    - priority suppliers never carry a credit card reference
    - credit invoices have a negative total and the credit marker in notes
    - line items are unique by normalized name
    """

    supplier_category: SupplierCategory | None = None
    supplier_name: str = ""
    supplier_confidence: int = 0
    document_number: str = ""
    document_number_confidence: int = 0
    document_type: DocumentType = DocumentType.INVOICE
    document_date: str | None = None
    date_confidence: int = 0
    total_amount: str | None = None
    total_confidence: int = 0
    credit_card_last4: str | None = None
    credit_card_confidence: int = 0
    notes: str = ""
    line_items: list[LineItem] = Field(
        default_factory=list, validation_alias=AliasChoices("line_items", "products")
    )
    usage: dict[str, Any] | None = None

    @field_validator(
        "supplier_confidence",
        "document_number_confidence",
        "date_confidence",
        "total_confidence",
        "credit_card_confidence",
        mode="before",
    )
    @classmethod
    def _clamp(cls, value: Any) -> int:
        return clamp_confidence(value)

    @field_validator("supplier_category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> SupplierCategory | None:
        if isinstance(value, SupplierCategory):
            return value
        text = str(value).strip()
        try:
            return SupplierCategory(text.lower())
        except ValueError:
            pass
        # resubmitted records carry the Hebrew display name
        if text in CATEGORY_DISPLAY_NAMES.values():
            return category_from_display_name(text)
        return None

    @field_validator("document_type", mode="before")
    @classmethod
    def _document_type(cls, value: Any) -> DocumentType:
        if isinstance(value, DocumentType):
            return value
        try:
            return DocumentType(str(value).strip().lower())
        except ValueError:
            return DocumentType.INVOICE

    @field_validator("supplier_name", "document_number", "notes", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("document_date", "total_amount", "credit_card_last4", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = format(value, "f") if isinstance(value, Decimal) else str(value).strip()
        if not text or text.lower() in ("null", "none"):
            return None
        return text

    @field_validator("line_items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict | LineItem)]

    @field_validator("usage", mode="before")
    @classmethod
    def _usage(cls, value: Any) -> dict[str, Any] | None:
        return value if isinstance(value, dict) else None

    def average_confidence(self) -> int:
        """Average of the supplier, document number, date and total confidences."""
        confidences = [
            self.supplier_confidence,
            self.document_number_confidence,
            self.date_confidence,
            self.total_confidence,
        ]
        return round(sum(confidences) / len(confidences))

    def quality_level(self) -> QualityLevel:
        """Bucket the average confidence into a quality level."""
        average = self.average_confidence()
        if average >= CONFIDENCE_HIGH:
            return QualityLevel.HIGH
        if average >= CONFIDENCE_MEDIUM:
            return QualityLevel.MEDIUM
        if average >= CONFIDENCE_LOW:
            return QualityLevel.LOW
        return QualityLevel.POOR
