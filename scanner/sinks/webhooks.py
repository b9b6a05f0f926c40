"""Spreadsheet webhook sinks.

Two endpoints receive each submitted record: a ledger summary and a
product breakdown. Both are treated as fire-and-forget: only a request-level
failure (connection, timeout, redirect loop) counts as a failed delivery,
since the spreadsheet endpoint does not return a meaningful body. Each
POST is retried independently with a linear delay (attempt N waits
N x base delay).
"""

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from prometheus_client import Counter
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from scanner.extraction.errors import SinkDeliveryError
from scanner.extraction.schema import (
    DOCUMENT_TYPE_DISPLAY_NAMES,
    ExtractedInvoice,
    category_display_name,
)
from scanner.shared.config import Settings

logger = logging.getLogger(__name__)

INVOICE_SINK = "invoice"
PRODUCTS_SINK = "products"

sink_deliveries_total = Counter(
    "sink_deliveries_total",
    "Total webhook deliveries",
    ["sink", "status"],  # success, failed
)


class SubmissionResult(BaseModel):
    """Outcome of submitting one record to the spreadsheet sinks.

    The record is always returned so a failed submission can be retried
    without scanning the document again.

    Attributes:
        success: Whether every enabled sink accepted the record
        invoice: The submitted record
        invoice_delivered: Ledger summary delivered
        products_delivered: Product breakdown delivered (None if not attempted)
        error: Error message if a delivery failed
    """

    success: bool
    invoice: ExtractedInvoice
    invoice_delivered: bool = False
    products_delivered: bool | None = None
    error: str | None = None


def _amount(value: Any) -> str:
    return "" if value is None else str(value)


def build_invoice_payload(
    invoice: ExtractedInvoice, timestamp: datetime | None = None
) -> dict[str, Any]:
    """Ledger row for one document."""
    return {
        "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
        "supplier_category": category_display_name(invoice.supplier_category),
        "supplier_name": invoice.supplier_name,
        "document_number": invoice.document_number,
        "document_type": DOCUMENT_TYPE_DISPLAY_NAMES[invoice.document_type],
        "document_date": invoice.document_date or "",
        "total_amount": _amount(invoice.total_amount),
        "credit_card_last4": invoice.credit_card_last4 or "",
        "notes": invoice.notes,
        "confidences": {
            "supplier": invoice.supplier_confidence,
            "document": invoice.document_number_confidence,
            "date": invoice.date_confidence,
            "amount": invoice.total_confidence,
            "credit_card": invoice.credit_card_confidence,
        },
    }


def build_products_payload(
    invoice: ExtractedInvoice, timestamp: datetime | None = None
) -> dict[str, Any]:
    """Line-item breakdown for one document."""
    return {
        "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
        "supplier_name": invoice.supplier_name,
        "document_number": invoice.document_number,
        "document_date": invoice.document_date or "",
        "products": [
            {
                "name": item.name,
                "quantity": _amount(item.quantity),
                "unit": item.unit or "",
                "unit_price_ex_vat": _amount(item.unit_price_ex_vat),
                "total_ex_vat": _amount(item.total_ex_vat),
            }
            for item in invoice.line_items
        ],
    }


class WebhookSink:
    """Posts normalized records to the spreadsheet webhooks.

    Args:
        settings: Application settings with webhook URLs and retry policy
        http_client: Optional pre-built client, mainly for tests
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.sink_timeout_seconds, follow_redirects=True
        )

    def is_available(self) -> bool:
        """Check if the ledger webhook is configured."""
        return bool(self.settings.invoice_webhook_url)

    async def submit(self, invoice: ExtractedInvoice) -> SubmissionResult:
        """Deliver a record to the ledger and, if it has line items, the product sink.

        Never raises for delivery failures; they are reported in the result.
        """
        if not self.is_available():
            return SubmissionResult(
                success=False,
                invoice=invoice,
                error="Invoice webhook not configured. Set APP_INVOICE_WEBHOOK_URL.",
            )

        timestamp = datetime.now(UTC)
        try:
            await self.post(
                INVOICE_SINK,
                self.settings.invoice_webhook_url,
                build_invoice_payload(invoice, timestamp),
            )
        except SinkDeliveryError as e:
            return SubmissionResult(success=False, invoice=invoice, error=str(e))

        if not invoice.line_items or not self.settings.products_webhook_url:
            return SubmissionResult(success=True, invoice=invoice, invoice_delivered=True)

        try:
            await self.post(
                PRODUCTS_SINK,
                self.settings.products_webhook_url,
                build_products_payload(invoice, timestamp),
            )
        except SinkDeliveryError as e:
            return SubmissionResult(
                success=False,
                invoice=invoice,
                invoice_delivered=True,
                products_delivered=False,
                error=str(e),
            )
        return SubmissionResult(
            success=True, invoice=invoice, invoice_delivered=True, products_delivered=True
        )

    async def post(self, sink: str, url: str, payload: dict[str, Any]) -> None:
        """POST a payload, retrying network-level failures.

        Raises:
            SinkDeliveryError: If every attempt failed at the network level
        """
        attempts = self.settings.sink_max_attempts
        delay = self.settings.sink_retry_base_delay_seconds
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.RequestError),
            wait=wait_incrementing(start=delay, increment=delay),
            stop=stop_after_attempt(attempts),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.post(url, json=payload)
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            f"Delivered to {sink} sink on attempt "
                            f"{attempt.retry_state.attempt_number}"
                        )
        except RetryError as e:
            sink_deliveries_total.labels(sink=sink, status="failed").inc()
            last_error = e.last_attempt.exception()
            logger.error(f"Delivery to {sink} sink failed after {attempts} attempts: {last_error}")
            raise SinkDeliveryError(sink, attempts, str(last_error)) from last_error

        if response.is_error:
            # Body and status are not part of the sink contract
            logger.warning(f"{sink} sink answered HTTP {response.status_code}")
        sink_deliveries_total.labels(sink=sink, status="success").inc()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
