"""Prompt text for the structured-extraction call.

The prompt is an opaque payload as far as the pipeline is concerned; it is
built from the supplier registry so the model sees the same vocabulary the
normalizer validates against.
"""

from scanner.extraction.schema import CATEGORY_DISPLAY_NAMES, CREDIT_NOTE_MARKER
from scanner.suppliers.registry import DEFAULT_REGISTRY, SupplierRegistry

RESPONSE_SHAPE = """{
  "supplier_category": "priority|fuel_station|supermarket|nursery|other",
  "supplier_name": "string",
  "supplier_confidence": 0-100,
  "document_number": "string, full length, up to 15 digits",
  "document_number_confidence": 0-100,
  "document_type": "invoice|delivery_note|credit_invoice",
  "document_date": "DD/MM/YYYY",
  "date_confidence": 0-100,
  "total_amount": "decimal string",
  "total_confidence": 0-100,
  "credit_card_last4": "4 digits or null",
  "credit_card_confidence": 0-100,
  "notes": "string",
  "products": [
    {"name": "string", "quantity": number, "unit": "string",
     "unit_price_ex_vat": number, "total_ex_vat": number}
  ]
}"""


def build_prompt(registry: SupplierRegistry = DEFAULT_REGISTRY) -> str:
    """Build the extraction prompt for one document image.

    Args:
        registry: Supplier registry whose names and keywords are listed

    Returns:
        Prompt text
    """
    priority = ", ".join(f'"{name}"' for name in registry.priority)
    category_lines = []
    for entry in registry.categories:
        line = f"- {entry.category.value} ({CATEGORY_DISPLAY_NAMES[entry.category]})"
        if entry.suppliers:
            line += f": suppliers {', '.join(entry.suppliers)}"
        if entry.keywords:
            line += f"; keywords {', '.join(entry.keywords)}"
        category_lines.append(line)
    categories = "\n".join(category_lines)

    return f"""You extract data from Hebrew invoices, delivery notes and credit invoices.

SUPPLIER CLASSIFICATION (in this order):
1. Priority suppliers: {priority}
   If the logo or name matches one of them, use supplier_category "priority" and the exact
   name from the list. Priority suppliers are never fuel stations, supermarkets or other.
2. Otherwise one of:
{categories}
3. Otherwise "other" with the name as printed.

FIELDS:
- document_number may be 10-15 digits, often near the barcode. Never shorten it.
- document_date is the issue date of the document, not a payment date.
- credit_card_last4 only when a card is printed (mostly supermarkets), else null.
- A credit invoice ({CREDIT_NOTE_MARKER}) has document_type "credit_invoice".
- List every product row in "products".
- Give high confidence only for clearly readable values. Never invent data.

Reply with JSON only, in this shape:
{RESPONSE_SHAPE}"""
