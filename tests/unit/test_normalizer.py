"""Unit tests for the response normalizer.

Tests cover:
- Fence stripping, boundary extraction and truncation repair
- Line-item deduplication
- Field format coercion
- Supplier and document-type business rules
"""

import json
from decimal import Decimal

import pytest

from scanner.extraction.errors import ErrorKind, ResponseParseError
from scanner.extraction.normalizer import (
    ResponseNormalizer,
    decode_response,
    deduplicate_line_items,
    extract_json_span,
    line_item_key,
    normalize_amount,
    normalize_card_last4,
    normalize_document_date,
    repair_truncated_json,
    strip_code_fences,
)
from scanner.extraction.schema import (
    CREDIT_NOTE_MARKER,
    DocumentType,
    LineItem,
    SupplierCategory,
)
from scanner.shared.config import Settings
from scanner.suppliers.matcher import SupplierMatcher


@pytest.fixture
def normalizer() -> ResponseNormalizer:
    """Create normalizer with default thresholds."""
    return ResponseNormalizer(SupplierMatcher())


def make_response(**fields: object) -> str:
    """Build a model response with sensible defaults."""
    payload: dict[str, object] = {
        "supplier_category": "other",
        "supplier_name": "Acme Widgets",
        "supplier_confidence": 70,
        "document_number": "12345",
        "document_number_confidence": 95,
        "document_type": "invoice",
        "document_date": "15/03/2024",
        "date_confidence": 90,
        "total_amount": "150.00",
        "total_confidence": 90,
        "credit_card_last4": None,
        "credit_card_confidence": 0,
        "notes": "",
        "products": [],
    }
    payload.update(fields)
    return json.dumps(payload, ensure_ascii=False)


class TestDecoding:
    """Test the text-to-JSON stages."""

    def test_strip_code_fences(self) -> None:
        """Should remove ```json fences."""
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_strip_code_fences_without_fences(self) -> None:
        """Should leave plain text unchanged."""
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'

    def test_extract_span_skips_preamble(self) -> None:
        """Should start at the first brace."""
        span, truncated = extract_json_span('Here you go: {"a": 1}')

        assert span == '{"a": 1}'
        assert truncated is False

    def test_extract_span_flags_truncation(self) -> None:
        """Should flag text that does not end with a brace."""
        _, truncated = extract_json_span('{"a": 1, "b": [')

        assert truncated is True

    def test_extract_span_without_object(self) -> None:
        """Should fail with a boundary error when no brace exists."""
        with pytest.raises(ResponseParseError) as exc_info:
            extract_json_span("Sorry, I cannot read this image")

        assert exc_info.value.stage == "boundary"
        assert exc_info.value.kind is ErrorKind.PARSE
        assert exc_info.value.retryable is False

    def test_decode_ignores_trailing_text(self) -> None:
        """Should cut everything after the last closing brace."""
        assert decode_response('{"a": 1} hope this helps') == {"a": 1}

    def test_decode_keeps_exact_decimals(self) -> None:
        """Should parse floats as Decimal."""
        assert decode_response('{"total": 10.10}') == {"total": Decimal("10.10")}

    def test_decode_rejects_invalid_json(self) -> None:
        """Should fail on malformed, non-truncated JSON."""
        with pytest.raises(ResponseParseError) as exc_info:
            decode_response('{"a": 1,, "b": 2}')

        assert exc_info.value.stage == "parse"


class TestTruncationRepair:
    """Test recovery of responses cut off at the token limit."""

    def test_drops_partial_line_item(self) -> None:
        """Should keep complete items and drop the one being written."""
        span = (
            '{"supplier_name": "X", "products": ['
            '{"name": "a", "quantity": 1}, {"name": "b", "quantity": 2}, {"name": "c", "qu'
        )

        repaired = repair_truncated_json(span)

        assert json.loads(repaired) == {
            "supplier_name": "X",
            "products": [{"name": "a", "quantity": 1}, {"name": "b", "quantity": 2}],
        }

    def test_cuts_before_partial_root_value(self) -> None:
        """Should drop a root member whose value was cut off."""
        repaired = repair_truncated_json('{"a": 1, "b": "unfinis')

        assert json.loads(repaired) == {"a": 1}

    def test_ignores_brackets_inside_strings(self) -> None:
        """Should not treat brackets in string values as structure."""
        span = '{"notes": "see [1] {x}", "products": [{"name": "a"}, {"name": "b'

        repaired = repair_truncated_json(span)

        assert json.loads(repaired) == {"notes": "see [1] {x}", "products": [{"name": "a"}]}

    def test_complete_object_returned_unchanged(self) -> None:
        """Should return a closed object as is."""
        assert repair_truncated_json('{"a": [1, 2]}') == '{"a": [1, 2]}'

    def test_nothing_to_keep(self) -> None:
        """Should fail when no element was completed."""
        with pytest.raises(ResponseParseError) as exc_info:
            repair_truncated_json('{"supplier_na')

        assert exc_info.value.stage == "repair"

    def test_decode_repairs_fenced_truncated_response(self) -> None:
        """Should go through fences, boundary and repair end to end."""
        text = '```json\n{"supplier_name": "X", "products": [{"name": "a"}, {"name": "b", "q'

        assert decode_response(text) == {"supplier_name": "X", "products": [{"name": "a"}]}


class TestLineItems:
    """Test line-item deduplication."""

    def test_key_ignores_case_punctuation_and_spacing(self) -> None:
        """Should produce the same key for cosmetic variants."""
        assert line_item_key('  Milk  "3%" ') == line_item_key("milk 3%")
        assert line_item_key('חלב 3%') == line_item_key('חלב  "3%"')

    def test_key_keeps_decimal_separator(self) -> None:
        """Should keep sizes like 1.5 and 15 apart while unifying the separator."""
        assert line_item_key('קמח 1.5 ק"ג') != line_item_key('קמח 15 ק"ג')
        assert line_item_key("Flour 1,5kg") == line_item_key("flour 1.5kg")
        assert line_item_key("Milk. 3%") == line_item_key("milk 3%")

    def test_different_sizes_not_merged(self) -> None:
        """Should not merge products that differ only by a decimal size."""
        items = [
            LineItem(name="Flour 1.5kg", quantity=Decimal("2")),
            LineItem(name="Flour 15kg", quantity=Decimal("1")),
        ]

        result = deduplicate_line_items(items)

        assert [item.name for item in result] == ["Flour 1.5kg", "Flour 15kg"]

    def test_merges_duplicates(self) -> None:
        """Should sum quantities and totals and keep first-seen fields."""
        items = [
            LineItem(name="Milk 3%", quantity=Decimal("2"), unit="unit",
                     unit_price_ex_vat=Decimal("5"), total_ex_vat=Decimal("10")),
            LineItem(name="Bread", quantity=Decimal("1"), total_ex_vat=Decimal("8")),
            LineItem(name="milk  3%", quantity=Decimal("3"), unit="box",
                     unit_price_ex_vat=Decimal("6"), total_ex_vat=Decimal("15")),
        ]

        result = deduplicate_line_items(items)

        assert [item.name for item in result] == ["Milk 3%", "Bread"]
        milk = result[0]
        assert milk.quantity == Decimal("5")
        assert milk.total_ex_vat == Decimal("25")
        assert milk.unit == "unit"
        assert milk.unit_price_ex_vat == Decimal("5")

    def test_missing_values_count_as_zero(self) -> None:
        """Should sum with None treated as zero."""
        items = [LineItem(name="a", quantity=Decimal("1")), LineItem(name="A", quantity=None)]

        assert deduplicate_line_items(items)[0].quantity == Decimal("1")

    def test_drops_nameless_items(self) -> None:
        """Should drop items whose name is empty after normalization."""
        items = [LineItem(name=""), LineItem(name=" - "), LineItem(name="a")]

        assert [item.name for item in deduplicate_line_items(items)] == ["a"]

    def test_caps_item_count(self) -> None:
        """Should keep at most max_items entries."""
        items = [LineItem(name=f"item {i}") for i in range(150)]

        result = deduplicate_line_items(items, max_items=100)

        assert len(result) == 100
        assert result[-1].name == "item 99"


class TestFieldFormats:
    """Test amount, date and card coercion."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("150.00", "150.00"),
            ("₪1,234.50", "1234.50"),
            ("1.234,50", "1234.50"),
            ("1,234", "1234"),
            ("12,5", "12.5"),
            ("150.00-", "-150.00"),
            ("-42", "-42"),
            ("abc", None),
            (None, None),
        ],
    )
    def test_normalize_amount(self, raw: str | None, expected: str | None) -> None:
        """Should produce a plain decimal string."""
        assert normalize_amount(raw) == expected

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("15/03/2024", "15/03/2024"),
            ("5.3.2024", "05/03/2024"),
            ("15-03-24", "15/03/2024"),
            ("2024-03-15", "15/03/2024"),
            ("31/02/2024", None),
            ("March 15", None),
            (None, None),
        ],
    )
    def test_normalize_document_date(self, raw: str | None, expected: str | None) -> None:
        """Should produce DD/MM/YYYY or None."""
        assert normalize_document_date(raw) == expected

    def test_normalize_card_last4(self) -> None:
        """Should keep the last four digits."""
        assert normalize_card_last4("**** **** **** 4321") == "4321"
        assert normalize_card_last4("12") is None
        assert normalize_card_last4(None) is None


class TestNormalize:
    """Test the full normalization pipeline and business rules."""

    def test_plain_invoice(self, normalizer: ResponseNormalizer) -> None:
        """Should build a record from a well-formed response."""
        invoice = normalizer.normalize(make_response(), usage={"totalTokenCount": 10})

        assert invoice.document_number == "12345"
        assert invoice.document_date == "15/03/2024"
        assert invoice.total_amount == "150.00"
        assert invoice.usage == {"totalTokenCount": 10}

    def test_numeric_total_keeps_decimals(self, normalizer: ResponseNormalizer) -> None:
        """Should not lose trailing zeros of a JSON number."""
        text = make_response().replace('"150.00"', "150.00")

        assert normalizer.normalize(text).total_amount == "150.00"

    def test_priority_transliteration_clears_card(self, normalizer: ResponseNormalizer) -> None:
        """Should force priority, canonical name and drop the card."""
        invoice = normalizer.normalize(
            make_response(
                supplier_name="MECCANO LTD",
                supplier_confidence=60,
                credit_card_last4="1234",
                credit_card_confidence=90,
            )
        )

        assert invoice.supplier_category is SupplierCategory.PRIORITY
        assert invoice.supplier_name == "מקאנו"
        assert invoice.supplier_confidence == 95
        assert invoice.credit_card_last4 is None
        assert invoice.credit_card_confidence == 0

    def test_priority_keeps_higher_declared_confidence(
        self, normalizer: ResponseNormalizer
    ) -> None:
        """Should keep the model's confidence if it exceeds the match confidence."""
        invoice = normalizer.normalize(
            make_response(supplier_category="supermarket", supplier_name="בזק",
                          supplier_confidence=99)
        )

        assert invoice.supplier_category is SupplierCategory.PRIORITY
        assert invoice.supplier_confidence == 99

    def test_supermarket_delivery_note_becomes_invoice(
        self, normalizer: ResponseNormalizer
    ) -> None:
        """Should confirm the chain and reclassify the document."""
        invoice = normalizer.normalize(
            make_response(
                supplier_category="supermarket",
                supplier_name="שופרסל דיל",
                supplier_confidence=70,
                document_type="delivery_note",
                credit_card_last4="5678",
            )
        )

        assert invoice.supplier_category is SupplierCategory.SUPERMARKET
        assert invoice.supplier_name == "שופרסל"
        assert invoice.supplier_confidence == 90
        assert invoice.document_type is DocumentType.INVOICE
        assert invoice.credit_card_last4 == "5678"

    def test_unconfirmed_generic_category_kept(self, normalizer: ResponseNormalizer) -> None:
        """Should keep a declared generic category the registry cannot confirm."""
        invoice = normalizer.normalize(
            make_response(supplier_category="fuel_station", supplier_name="Acme Widgets",
                          supplier_confidence=65)
        )

        assert invoice.supplier_category is SupplierCategory.FUEL_STATION
        assert invoice.supplier_confidence == 65

    def test_credit_invoice(self, normalizer: ResponseNormalizer) -> None:
        """Should negate the total and add the credit marker to notes."""
        invoice = normalizer.normalize(
            make_response(document_type="credit_invoice", total_amount="150.00",
                          notes="returned goods")
        )

        assert invoice.total_amount == "-150.00"
        assert invoice.notes == f"returned goods | {CREDIT_NOTE_MARKER}"

    def test_credit_invoice_already_negative(self, normalizer: ResponseNormalizer) -> None:
        """Should not flip a total that is already negative or repeat the marker."""
        invoice = normalizer.normalize(
            make_response(document_type="credit_invoice", total_amount="-80",
                          notes=CREDIT_NOTE_MARKER)
        )

        assert invoice.total_amount == "-80"
        assert invoice.notes == CREDIT_NOTE_MARKER

    def test_negative_invoice_total_made_positive(self, normalizer: ResponseNormalizer) -> None:
        """Should use the magnitude for non-credit documents."""
        invoice = normalizer.normalize(make_response(total_amount="-99.90"))

        assert invoice.total_amount == "99.90"

    def test_fallback_fuzzy_priority(self, normalizer: ResponseNormalizer) -> None:
        """Should promote an 'other' supplier close to a priority name."""
        invoice = normalizer.normalize(
            make_response(supplier_category="other", supplier_name="פפירוז",
                          supplier_confidence=40)
        )

        assert invoice.supplier_category is SupplierCategory.PRIORITY
        assert invoice.supplier_name == "פפירוס"
        assert invoice.supplier_confidence == 83

    def test_other_recategorized_by_keyword(self, normalizer: ResponseNormalizer) -> None:
        """Should move an 'other' supplier into a matching category."""
        invoice = normalizer.normalize(
            make_response(supplier_category="other", supplier_name="משתלת הדקל")
        )

        assert invoice.supplier_category is SupplierCategory.NURSERY
        assert invoice.supplier_name == "משתלת הדקל"
        assert invoice.supplier_confidence == 85

    def test_other_confidence_floor(self, normalizer: ResponseNormalizer) -> None:
        """Should raise the confidence of an unmatched supplier to the floor."""
        invoice = normalizer.normalize(make_response(supplier_confidence=40))

        assert invoice.supplier_category is SupplierCategory.OTHER
        assert invoice.supplier_confidence == 75

    def test_unknown_category_treated_as_other(self, normalizer: ResponseNormalizer) -> None:
        """Should resolve an unrecognized category through the fallback path."""
        invoice = normalizer.normalize(make_response(supplier_category="restaurant"))

        assert invoice.supplier_category is SupplierCategory.OTHER

    def test_duplicate_products_merged(self, normalizer: ResponseNormalizer) -> None:
        """Should merge duplicates coming from the products list."""
        invoice = normalizer.normalize(
            make_response(
                products=[
                    {"name": "Tomatoes", "quantity": 2, "total_ex_vat": "10.00"},
                    {"name": "tomatoes", "qty": 3, "total": "15.00"},
                ]
            )
        )

        assert len(invoice.line_items) == 1
        assert invoice.line_items[0].quantity == Decimal("5")
        assert invoice.line_items[0].total_ex_vat == Decimal("25.00")

    def test_unrecognized_date_zeroes_confidence(self, normalizer: ResponseNormalizer) -> None:
        """Should drop an unparseable date and its confidence."""
        invoice = normalizer.normalize(make_response(document_date="sometime in March"))

        assert invoice.document_date is None
        assert invoice.date_confidence == 0

    def test_confidences_clamped(self, normalizer: ResponseNormalizer) -> None:
        """Should clamp confidences into 0..100."""
        invoice = normalizer.normalize(
            make_response(document_number_confidence=140, date_confidence=-5)
        )

        assert invoice.document_number_confidence == 100
        assert invoice.date_confidence == 0

    def test_truncated_response_recovered(self, normalizer: ResponseNormalizer) -> None:
        """Should recover the complete part of a response cut at the token limit."""
        full = make_response(
            products=[{"name": "a", "quantity": 1}, {"name": "b", "quantity": 2}]
        )
        truncated = full[: full.rindex('"b"') + 5]

        invoice = normalizer.normalize(truncated)

        assert [item.name for item in invoice.line_items] == ["a"]
        assert invoice.document_number == "12345"

    def test_non_finite_numbers_dropped(self, normalizer: ResponseNormalizer) -> None:
        """Should treat NaN and Infinity amounts as missing instead of failing."""
        raw = make_response(
            products=[{"name": "A", "qty": "NaN", "total_ex_vat": "Infinity"}]
        ).replace('"products": [', '"products": [{"name": "B", "quantity": NaN}, ')

        invoice = normalizer.normalize(raw)

        assert [item.name for item in invoice.line_items] == ["B", "A"]
        assert all(item.quantity is None for item in invoice.line_items)
        assert invoice.line_items[1].total_ex_vat is None

    def test_non_json_response_fails(self, normalizer: ResponseNormalizer) -> None:
        """Should raise a parse error for text without JSON."""
        with pytest.raises(ResponseParseError):
            normalizer.normalize("I could not find an invoice in this image.")

    def test_from_settings(self) -> None:
        """Should take thresholds from settings."""
        settings = Settings(_env_file=None, max_line_items=5, other_min_confidence=60)

        normalizer = ResponseNormalizer.from_settings(settings)

        assert normalizer.max_line_items == 5
        assert normalizer.other_min_confidence == 60
        assert normalizer.matcher.fuzzy_threshold == 0.85
