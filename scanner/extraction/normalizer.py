"""Turns the raw AI output into a validated :class:`ExtractedInvoice`.

Pipeline, in order:
1. Strip markdown code fences
2. Extract the JSON span (first ``{`` through last ``}``)
3. Repair output truncated at the token limit
4. Parse (failure is a non-retryable :class:`ResponseParseError`)
5. Deduplicate line items by normalized name and cap the list
6. Apply business rules the model is known to get wrong

Each business rule is a plain ``ExtractedInvoice -> ExtractedInvoice``
transformation so it can be tested on its own.
"""

import json
import logging
import re
import unicodedata
from collections.abc import Callable
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from scanner.extraction.errors import ResponseParseError
from scanner.extraction.schema import (
    CREDIT_NOTE_MARKER,
    DocumentType,
    ExtractedInvoice,
    LineItem,
    SupplierCategory,
)
from scanner.shared.config import Settings
from scanner.suppliers.matcher import SupplierMatcher

logger = logging.getLogger(__name__)

Rule = Callable[[ExtractedInvoice], ExtractedInvoice]

GENERIC_CATEGORIES = frozenset(
    {SupplierCategory.FUEL_STATION, SupplierCategory.SUPERMARKET, SupplierCategory.NURSERY}
)

_FENCE_START = re.compile(r"^\s*```[\w-]*\s*")
_FENCE_END = re.compile(r"\s*```\s*$")
_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """Remove leading/trailing markdown code-fence markers."""
    return _FENCE_END.sub("", _FENCE_START.sub("", text or ""))


def extract_json_span(text: str) -> tuple[str, bool]:
    """Locate the JSON object in the response.

    Args:
        text: Fence-stripped response text

    Returns:
        Tuple of (text from the first ``{`` onwards, truncated flag). The flag
        is set when the text does not end with ``}``.

    Raises:
        ResponseParseError: If the text contains no ``{`` at all
    """
    start = text.find("{")
    if start == -1:
        raise ResponseParseError("boundary", "No JSON object found in response")
    span = text[start:].rstrip()
    return span, not span.endswith("}")


def repair_truncated_json(span: str) -> str:
    """Cut a truncated JSON object back to its last complete element and close it.

    Safe cut points are positions right after a closed object/array that is a
    member of the root object or an element of a root-level array, and
    positions before commas at those depths. Partially generated line items
    (nested deeper) are therefore always dropped whole.

    Args:
        span: JSON text starting with ``{``

    Returns:
        Text with the dangling tail removed and closing brackets appended

    Raises:
        ResponseParseError: If no complete element exists to cut back to
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    cut: tuple[int, tuple[str, ...]] | None = None

    for index, char in enumerate(span):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append(char)
        elif char in "}]":
            if not stack:
                break
            stack.pop()
            if not stack:
                # Root closed: nothing was cut off
                return span[: index + 1]
            if len(stack) <= 2:
                cut = (index + 1, tuple(stack))
        elif char == "," and 1 <= len(stack) <= 2:
            cut = (index, tuple(stack))

    if cut is None:
        raise ResponseParseError("repair", "Truncated response has no complete element")

    position, open_brackets = cut
    closing = "".join(_CLOSERS[bracket] for bracket in reversed(open_brackets))
    return span[:position] + closing


def parse_json_object(text: str) -> dict[str, Any]:
    """Strictly parse a JSON object, keeping numbers as exact decimals.

    Raises:
        ResponseParseError: If the text is not a JSON object
    """
    try:
        value = json.loads(text, parse_float=Decimal)
    except json.JSONDecodeError as e:
        raise ResponseParseError("parse", f"Invalid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ResponseParseError("parse", f"Expected JSON object, got {type(value).__name__}")
    return value


def decode_response(text: str) -> dict[str, Any]:
    """Run fence stripping, boundary extraction, repair and parsing."""
    span, truncated = extract_json_span(strip_code_fences(text))
    greedy = span[: span.rfind("}") + 1]
    if greedy:
        try:
            return parse_json_object(greedy)
        except ResponseParseError:
            if not truncated:
                raise
    repaired = repair_truncated_json(span)
    logger.warning(
        f"Repaired truncated AI response ({len(span)} -> {len(repaired)} characters)"
    )
    return parse_json_object(repaired)


def line_item_key(name: str) -> str:
    """Normalized name used to detect duplicate line items.

    Case-folds, strips punctuation (including typographic quotes and
    Hebrew geresh/gershayim) and collapses whitespace. A decimal separator
    between two digits is kept (as ``.``) so "1.5" and "15" stay distinct.
    """
    text = unicodedata.normalize("NFKC", name or "").casefold()
    kept: list[str] = []
    for index, char in enumerate(text):
        if not unicodedata.category(char).startswith("P"):
            kept.append(char)
        elif (
            char in ".,"
            and 0 < index < len(text) - 1
            and text[index - 1].isdigit()
            and text[index + 1].isdigit()
        ):
            kept.append(".")
    return " ".join("".join(kept).split())


def _add(left: Decimal | None, right: Decimal | None) -> Decimal | None:
    if left is None and right is None:
        return None
    return (left or Decimal(0)) + (right or Decimal(0))


def deduplicate_line_items(items: list[LineItem], max_items: int = 100) -> list[LineItem]:
    """Merge line items sharing a normalized name.

    Quantities and totals of a group are summed; the first-seen name, unit and
    unit price are kept. Items without a name are dropped. The result keeps
    first-seen order and is capped at ``max_items`` entries.
    """
    merged: dict[str, LineItem] = {}
    for item in items:
        key = line_item_key(item.name)
        if not key:
            logger.debug("Dropping line item without a name")
            continue
        existing = merged.get(key)
        if existing is None:
            merged[key] = item
            continue
        merged[key] = existing.model_copy(
            update={
                "quantity": _add(existing.quantity, item.quantity),
                "total_ex_vat": _add(existing.total_ex_vat, item.total_ex_vat),
            }
        )

    result = list(merged.values())
    if len(result) > max_items:
        logger.warning(f"Dropping {len(result) - max_items} line items beyond cap of {max_items}")
        result = result[:max_items]
    return result


def normalize_amount(value: str | None) -> str | None:
    """Normalize an amount to a plain decimal string.

    Handles currency symbols, thousands separators, comma decimals and a
    trailing minus sign (``"150.00-"``). Keeps the original number of decimals.
    """
    if value is None:
        return None
    text = re.sub(r"[^\d.,\-]", "", str(value))
    negative = text.startswith("-") or text.endswith("-")
    text = text.strip("-")
    if not text:
        return None

    has_dot = "." in text
    has_comma = "," in text
    if has_dot and has_comma:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif has_comma:
        if re.search(r",\d{1,2}$", text):
            text = text.replace(",", ".")
        else:
            text = text.replace(",", "")

    match = re.fullmatch(r"\d+(?:\.\d+)?", text)
    if not match:
        return None
    try:
        amount = Decimal(match.group(0))
    except InvalidOperation:
        return None
    return str(-amount if negative and amount else amount)


def normalize_document_date(value: str | None) -> str | None:
    """Normalize a date to strict ``DD/MM/YYYY``.

    Accepts ``/``, ``.`` and ``-`` separators, two-digit years (mapped to
    20xx below 70, else 19xx) and ISO ``YYYY-MM-DD``. Returns None for
    anything that is not a real calendar date.
    """
    if not value:
        return None
    text = value.strip()
    iso = re.fullmatch(r"(\d{4})-(\d{1,2})-(\d{1,2})", text)
    if iso:
        year, month, day = (int(part) for part in iso.groups())
    else:
        local = re.fullmatch(r"(\d{1,2})[./-](\d{1,2})[./-](\d{2}|\d{4})", text)
        if not local:
            return None
        day, month = int(local.group(1)), int(local.group(2))
        year_text = local.group(3)
        year = int(year_text)
        if len(year_text) == 2:
            year += 2000 if year < 70 else 1900
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    return parsed.strftime("%d/%m/%Y")


def normalize_card_last4(value: str | None) -> str | None:
    """Reduce a card reference to its last four digits, or None."""
    if not value:
        return None
    digits = re.sub(r"\D", "", value)
    if len(digits) < 4:
        return None
    return digits[-4:]


class ResponseNormalizer:
    """Repairs, parses and validates raw AI output.

    Args:
        matcher: Supplier matcher backed by the supplier registry
        max_line_items: Cap on the number of line items kept
        fallback_threshold: Fuzzy threshold when re-checking unresolved suppliers
        fallback_min_confidence: Confidence a fallback priority match must exceed
        other_min_confidence: Confidence floor for suppliers finalized as 'other'
    """

    def __init__(
        self,
        matcher: SupplierMatcher,
        *,
        max_line_items: int = 100,
        fallback_threshold: float = 0.80,
        fallback_min_confidence: int = 80,
        other_min_confidence: int = 75,
    ) -> None:
        self.matcher = matcher
        self.max_line_items = max_line_items
        self.fallback_threshold = fallback_threshold
        self.fallback_min_confidence = fallback_min_confidence
        self.other_min_confidence = other_min_confidence
        self.rules: tuple[Rule, ...] = (
            self.normalize_fields,
            self.resolve_supplier,
            self.apply_supermarket_rules,
            self.apply_credit_invoice_rules,
            self.apply_total_sign,
            self.clear_priority_card,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResponseNormalizer":
        """Build a normalizer using the tuned thresholds from settings."""
        return cls(
            SupplierMatcher(fuzzy_threshold=settings.fuzzy_match_threshold),
            max_line_items=settings.max_line_items,
            fallback_threshold=settings.fallback_match_threshold,
            fallback_min_confidence=settings.fallback_min_confidence,
            other_min_confidence=settings.other_min_confidence,
        )

    def normalize(self, raw_text: str, usage: dict[str, Any] | None = None) -> ExtractedInvoice:
        """Turn raw AI output into a validated invoice record.

        Args:
            raw_text: Generated text returned by the analysis call
            usage: Token metering metadata, passed through unmodified

        Returns:
            Normalized ExtractedInvoice

        Raises:
            ResponseParseError: If the output cannot be coerced into JSON
        """
        payload = decode_response(raw_text)
        invoice = self.build_invoice(payload)
        for rule in self.rules:
            invoice = rule(invoice)
        return invoice.model_copy(update={"usage": usage})

    def build_invoice(self, payload: dict[str, Any]) -> ExtractedInvoice:
        """Coerce a parsed payload into a record with deduplicated line items."""
        raw_items = payload.pop("products", None)
        line_items = payload.pop("line_items", None)
        if raw_items is None:
            raw_items = line_items
        payload.pop("usage", None)

        try:
            items = [
                LineItem.model_validate(item)
                for item in (raw_items if isinstance(raw_items, list) else [])
                if isinstance(item, dict)
            ]
            invoice = ExtractedInvoice.model_validate(payload)
        except ValidationError as e:
            raise ResponseParseError("validate", str(e)) from e
        return invoice.model_copy(
            update={"line_items": deduplicate_line_items(items, self.max_line_items)}
        )

    def normalize_fields(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        """Bring date, amount and card reference into their canonical formats."""
        update: dict[str, Any] = {}

        document_date = normalize_document_date(invoice.document_date)
        if document_date != invoice.document_date:
            if document_date is None and invoice.document_date:
                logger.warning(f"Unrecognized document date: {invoice.document_date!r}")
                update["date_confidence"] = 0
            update["document_date"] = document_date

        total = normalize_amount(invoice.total_amount)
        if total != invoice.total_amount:
            if total is None and invoice.total_amount:
                logger.warning(f"Unrecognized total amount: {invoice.total_amount!r}")
                update["total_confidence"] = 0
            update["total_amount"] = total

        card = normalize_card_last4(invoice.credit_card_last4)
        if card != invoice.credit_card_last4:
            if card is None:
                update["credit_card_confidence"] = 0
            update["credit_card_last4"] = card

        return invoice.model_copy(update=update) if update else invoice

    def resolve_supplier(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        """Validate the supplier category and name against the registry."""
        name = invoice.supplier_name
        declared = invoice.supplier_confidence

        priority = self.matcher.find_priority_match(name)
        if priority.matched:
            logger.info(f"Priority supplier matched ({priority.match_type}): {priority.supplier}")
            return invoice.model_copy(
                update={
                    "supplier_category": SupplierCategory.PRIORITY,
                    "supplier_name": priority.supplier,
                    "supplier_confidence": max(declared, priority.confidence or 0),
                }
            )

        if invoice.supplier_category in GENERIC_CATEGORIES:
            category = self.matcher.find_category_match(name)
            if category.matched:
                logger.info(f"Category confirmed: {invoice.supplier_category.value}")
                return invoice.model_copy(
                    update={
                        "supplier_name": category.supplier_name or name,
                        "supplier_confidence": max(declared, category.confidence or 0),
                    }
                )
            return invoice

        return self._resolve_unmatched(invoice)

    def _resolve_unmatched(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        # Reached for 'other', missing categories and unconfirmed 'priority' claims
        name = invoice.supplier_name

        fallback = self.matcher.find_priority_match(name, fuzzy_threshold=self.fallback_threshold)
        if fallback.matched and (fallback.confidence or 0) > self.fallback_min_confidence:
            logger.info(f"Fuzzy matched to priority supplier: {fallback.supplier}")
            return invoice.model_copy(
                update={
                    "supplier_category": SupplierCategory.PRIORITY,
                    "supplier_name": fallback.supplier,
                    "supplier_confidence": fallback.confidence,
                }
            )

        category = self.matcher.find_category_match(name)
        if category.matched:
            logger.info(f"Matched to category: {category.category}")
            return invoice.model_copy(
                update={
                    "supplier_category": category.category,
                    "supplier_name": category.supplier_name or name,
                    "supplier_confidence": category.confidence,
                }
            )

        logger.info(f"No supplier match for {name!r}, categorized as other")
        return invoice.model_copy(
            update={
                "supplier_category": SupplierCategory.OTHER,
                "supplier_confidence": max(
                    invoice.supplier_confidence, self.other_min_confidence
                ),
            }
        )

    def apply_supermarket_rules(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        """Supermarkets never issue delivery notes and usually show a card."""
        if invoice.supplier_category is not SupplierCategory.SUPERMARKET:
            return invoice
        if invoice.credit_card_last4 is None:
            logger.warning(
                f"Supermarket invoice without credit card reference: {invoice.supplier_name}"
            )
        if invoice.document_type is DocumentType.DELIVERY_NOTE:
            logger.info("Supermarket document reclassified from delivery note to invoice")
            return invoice.model_copy(update={"document_type": DocumentType.INVOICE})
        return invoice

    def apply_credit_invoice_rules(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        """Credit invoices carry a negative total and the credit note marker."""
        if invoice.document_type is not DocumentType.CREDIT_INVOICE:
            return invoice
        update: dict[str, Any] = {}
        if invoice.total_amount is not None:
            amount = Decimal(invoice.total_amount)
            if amount > 0:
                update["total_amount"] = str(-amount)
        if CREDIT_NOTE_MARKER not in invoice.notes:
            parts = (invoice.notes, CREDIT_NOTE_MARKER)
            update["notes"] = " | ".join(part for part in parts if part)
        return invoice.model_copy(update=update) if update else invoice

    def apply_total_sign(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        """Totals of invoices and delivery notes are never negative."""
        if invoice.document_type is DocumentType.CREDIT_INVOICE or invoice.total_amount is None:
            return invoice
        amount = Decimal(invoice.total_amount)
        if amount < 0:
            logger.warning(f"Negative total on {invoice.document_type.value}, using magnitude")
            return invoice.model_copy(update={"total_amount": str(-amount)})
        return invoice

    def clear_priority_card(self, invoice: ExtractedInvoice) -> ExtractedInvoice:
        """Priority suppliers are paid on account, never by card."""
        if invoice.supplier_category is SupplierCategory.PRIORITY and (
            invoice.credit_card_last4 is not None
        ):
            return invoice.model_copy(
                update={"credit_card_last4": None, "credit_card_confidence": 0}
            )
        return invoice
