"""Supplier name matching against the static registry.

Decides whether a free-text supplier name refers to a known supplier and
with what confidence. Pure functions, no I/O.

Priority matching is a priority-ordered strategy: transliteration alias,
exact, partial (bidirectional containment), then fuzzy. The first tier that
matches wins, even if a later tier would score higher.
"""

import logging
import re
from enum import Enum

from pydantic import BaseModel

from scanner.extraction.schema import SupplierCategory
from scanner.suppliers.registry import DEFAULT_REGISTRY, SupplierRegistry

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE = 95
TRANSLITERATION_CONFIDENCE = 95
PARTIAL_CONFIDENCE = 90
CATEGORY_SUPPLIER_CONFIDENCE = 90
CATEGORY_KEYWORD_CONFIDENCE = 85

# Shortest candidate text allowed to match by being contained in a canonical name
MIN_CONTAINED_LENGTH = 2

_QUOTES_AND_PARENS = re.compile(r"[\"'()׳״“”‘’„]")
_LEGAL_SUFFIXES = re.compile(r"(?<!\S)(?:בעמ|בע מ|ltd\.?|limited|inc\.?)(?!\S)")
_WHITESPACE = re.compile(r"\s+")


class MatchType(str, Enum):
    """Tier of the priority matching strategy that produced a match."""

    TRANSLITERATION = "transliteration"
    EXACT = "exact"
    PARTIAL = "partial"
    FUZZY = "fuzzy"


class PriorityMatch(BaseModel):
    """Result of matching a name against the priority supplier list."""

    matched: bool
    supplier: str | None = None
    confidence: int | None = None
    match_type: MatchType | None = None


class CategoryMatch(BaseModel):
    """Result of matching a name against the generic categories.

    ``supplier_name`` is None for keyword hits; the caller keeps the name it
    already has in that case.
    """

    matched: bool
    category: SupplierCategory | None = None
    supplier_name: str | None = None
    confidence: int | None = None


def normalize(text: str | None) -> str:
    """Normalize a supplier name for comparison.

    Lowercases, strips quote characters and parentheses, removes legal-entity
    suffixes (בע"מ, Ltd, Inc) and collapses whitespace. Idempotent.
    """
    if not text:
        return ""
    out = _QUOTES_AND_PARENS.sub("", text.lower())
    out = _WHITESPACE.sub(" ", out).strip()
    while True:
        stripped = _WHITESPACE.sub(" ", _LEGAL_SUFFIXES.sub("", out)).strip()
        if stripped == out:
            return out
        out = stripped


def levenshtein_distance(a: str, b: str) -> int:
    """Classic dynamic-programming edit distance with unit costs."""
    rows = len(a) + 1
    cols = len(b) + 1
    matrix = [[0] * cols for _ in range(rows)]
    for i in range(rows):
        matrix[i][0] = i
    for j in range(cols):
        matrix[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,  # deletion
                matrix[i][j - 1] + 1,  # insertion
                matrix[i - 1][j - 1] + cost,  # substitution
            )
    return matrix[rows - 1][cols - 1]


def similarity(a: str, b: str) -> float:
    """Similarity in [0, 1] derived from the edit distance.

    Returns 1.0 when both strings are empty.
    """
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(a, b)) / max_len


class SupplierMatcher:
    """Matches free-text supplier names against a :class:`SupplierRegistry`.

    Args:
        registry: Supplier knowledge base (defaults to the built-in registry)
        fuzzy_threshold: Similarity above which a priority name fuzzy-matches
    """

    def __init__(
        self,
        registry: SupplierRegistry = DEFAULT_REGISTRY,
        fuzzy_threshold: float = 0.85,
    ) -> None:
        self.registry = registry
        self.fuzzy_threshold = fuzzy_threshold
        self._priority = [(normalize(name), name) for name in registry.priority]
        self._aliases = [
            (normalize(alias), canonical) for alias, canonical in registry.aliases.items()
        ]
        self._categories = [
            (
                entry.category,
                [(normalize(name), name) for name in entry.suppliers],
                [normalize(keyword) for keyword in entry.keywords],
            )
            for entry in registry.categories
        ]

    def find_priority_match(
        self, text: str | None, fuzzy_threshold: float | None = None
    ) -> PriorityMatch:
        """Match a name against the priority supplier list.

        Args:
            text: Supplier name as read from the document
            fuzzy_threshold: Override of the fuzzy similarity threshold

        Returns:
            PriorityMatch for the first matching tier, or ``matched=False``
        """
        normalized = normalize(text)
        if not normalized:
            return PriorityMatch(matched=False)

        for alias, canonical in self._aliases:
            if alias and alias in normalized:
                return PriorityMatch(
                    matched=True,
                    supplier=canonical,
                    confidence=TRANSLITERATION_CONFIDENCE,
                    match_type=MatchType.TRANSLITERATION,
                )

        for candidate, canonical in self._priority:
            if candidate == normalized:
                return PriorityMatch(
                    matched=True,
                    supplier=canonical,
                    confidence=EXACT_CONFIDENCE,
                    match_type=MatchType.EXACT,
                )

        for candidate, canonical in self._priority:
            if not candidate:
                continue
            contained = len(normalized) >= MIN_CONTAINED_LENGTH and normalized in candidate
            if candidate in normalized or contained:
                return PriorityMatch(
                    matched=True,
                    supplier=canonical,
                    confidence=PARTIAL_CONFIDENCE,
                    match_type=MatchType.PARTIAL,
                )

        threshold = self.fuzzy_threshold if fuzzy_threshold is None else fuzzy_threshold
        for candidate, canonical in self._priority:
            score = similarity(normalized, candidate)
            if score > threshold:
                return PriorityMatch(
                    matched=True,
                    supplier=canonical,
                    confidence=round(score * 100),
                    match_type=MatchType.FUZZY,
                )

        return PriorityMatch(matched=False)

    def find_category_match(self, text: str | None) -> CategoryMatch:
        """Match a name against the generic categories in registry order.

        Known supplier names are checked before keywords within each category.
        """
        normalized = normalize(text)
        if not normalized:
            return CategoryMatch(matched=False)

        for category, suppliers, keywords in self._categories:
            for candidate, name in suppliers:
                if candidate and candidate in normalized:
                    return CategoryMatch(
                        matched=True,
                        category=category,
                        supplier_name=name,
                        confidence=CATEGORY_SUPPLIER_CONFIDENCE,
                    )
            for keyword in keywords:
                if keyword and keyword in normalized:
                    return CategoryMatch(
                        matched=True,
                        category=category,
                        supplier_name=None,
                        confidence=CATEGORY_KEYWORD_CONFIDENCE,
                    )

        return CategoryMatch(matched=False)
