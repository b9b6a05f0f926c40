"""FastAPI application for invoice scanning.

Endpoints:
- Health and readiness checks
- Single document analysis with optional submission to the spreadsheet
- Resubmission of a previously analyzed record
- Sequential batch analysis
- Request queue status
- Prometheus metrics

All analyses in the process share one request queue, so concurrent HTTP
requests are still dispatched one at a time upstream.
"""

import logging
import time

from fastapi import FastAPI, File, HTTPException, Query, Request, Response, UploadFile, status
from pydantic import BaseModel

from scanner.api import metrics
from scanner.batch.processor import BulkProcessor, BulkResult, DocumentInput
from scanner.extraction.errors import ErrorKind, RetriesExhaustedError, ScannerError
from scanner.extraction.factory import create_analysis_service
from scanner.extraction.schema import ExtractedInvoice, QualityLevel
from scanner.queue.request_queue import QueueStatus
from scanner.shared.config import get_settings
from scanner.sinks.webhooks import SubmissionResult, WebhookSink

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Scanner",
    description="Invoice image analysis and spreadsheet submission API",
    version=settings.service_version,
)

analysis_service = create_analysis_service(settings)
webhook_sink = WebhookSink(settings)
bulk_processor = BulkProcessor(analysis_service, webhook_sink)

_STATUS_BY_KIND = {
    ErrorKind.PARSE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.SINK: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CONFIGURATION: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for_error(error: ScannerError) -> int:
    """HTTP status code for a pipeline error.

    Exhausted retries are reported by the kind of their final failure.
    """
    kind = error.kind
    if isinstance(error, RetriesExhaustedError):
        kind = error.last_kind or ErrorKind.UPSTREAM
    return _STATUS_BY_KIND.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request count and duration metrics."""
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()
    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    provider: str
    sink_configured: bool


class AnalyzeResponse(BaseModel):
    """Single document analysis response."""

    success: bool
    filename: str
    invoice: ExtractedInvoice
    average_confidence: float
    quality: QualityLevel
    submission: SubmissionResult | None = None


async def _read_image(file: UploadFile, endpoint: str) -> DocumentInput:
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type: {file.content_type}. Only images are supported.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    metrics.documents_uploaded_total.labels(endpoint=endpoint).inc()
    metrics.document_upload_size_bytes.observe(len(content))
    return DocumentInput(filename=file.filename, content=content, mime_type=file.content_type)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check: the analysis provider must be configured."""
    return ReadinessResponse(
        ready=analysis_service.provider.is_available(),
        provider=analysis_service.provider.provider_name,
        sink_configured=webhook_sink.is_available(),
    )


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post("/api/v1/invoices/analyze", response_model=AnalyzeResponse, tags=["Invoices"])
async def analyze_invoice(
    file: UploadFile = File(..., description="Invoice image (JPEG, PNG, WebP, HEIC)"),  # noqa: B008
    submit: bool = Query(False, description="Submit the record to the spreadsheet webhooks"),
) -> AnalyzeResponse:
    """Analyze one invoice image.

    The request waits for its turn in the shared request queue. Rate-limited
    calls are retried with exponential backoff and timed-out calls are
    retried in place before an error is returned.

    ## Error Handling

    - 400 if the file is missing, empty or not an image
    - 422 if the model response could not be parsed
    - 429 if rate limiting persisted through every retry
    - 502 for other upstream API failures
    - 503 if no API key is configured
    - 504 if the call kept timing out

    A failed submission does not fail the request: the record is returned
    with ``submission.success = false`` and can be sent again through
    ``/api/v1/invoices/submit``.
    """
    document = await _read_image(file, "analyze")
    try:
        invoice = await analysis_service.analyze(document.content, document.mime_type)
    except ScannerError as e:
        raise HTTPException(status_code=status_for_error(e), detail=str(e)) from e

    submission = await webhook_sink.submit(invoice) if submit else None
    return AnalyzeResponse(
        success=True,
        filename=document.filename,
        invoice=invoice,
        average_confidence=invoice.average_confidence(),
        quality=invoice.quality_level(),
        submission=submission,
    )


@app.post("/api/v1/invoices/submit", response_model=SubmissionResult, tags=["Invoices"])
async def submit_invoice(invoice: ExtractedInvoice) -> SubmissionResult:
    """Submit a (possibly user-edited) record to the spreadsheet webhooks."""
    if not webhook_sink.is_available():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Invoice webhook not configured",
        )
    return await webhook_sink.submit(invoice)


@app.post("/api/v1/invoices/batch", response_model=BulkResult, tags=["Invoices"])
async def analyze_batch(
    files: list[UploadFile] = File(..., description="Invoice images"),  # noqa: B008
    submit: bool = Query(True, description="Submit each record after analysis"),
) -> BulkResult:
    """Analyze several images one after another.

    Files are processed in upload order; a failing file is reported in its
    item and does not stop the batch.
    """
    documents = [await _read_image(file, "batch") for file in files]
    return await bulk_processor.process_documents(documents, submit=submit)


@app.get("/api/v1/queue/status", response_model=QueueStatus, tags=["Queue"])
def queue_status() -> QueueStatus:
    """Current state of the shared request queue."""
    return analysis_service.queue.status()
