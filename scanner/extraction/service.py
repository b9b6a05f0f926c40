"""Invoice analysis service.

Orchestrates one document through the pipeline:

    prompt -> RequestQueue.enqueue(call with timeout retries)
           -> ResponseNormalizer.normalize -> ExtractedInvoice

Rate-limit retries belong to the request queue; timeout retries happen
inside the queued task and never leave the queue slot.
"""

import logging
import time

from prometheus_client import Counter, Histogram
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from scanner.extraction.base import AnalysisProvider, AnalysisResponse
from scanner.extraction.errors import (
    RetriesExhaustedError,
    ScannerError,
    is_rate_limited,
    is_retryable,
)
from scanner.extraction.normalizer import ResponseNormalizer
from scanner.extraction.prompt import build_prompt
from scanner.extraction.schema import ExtractedInvoice
from scanner.queue.request_queue import RequestQueue
from scanner.shared.config import Settings
from scanner.shared.progress import ProgressCallback, ProgressStatus, ProgressUpdate, notify

logger = logging.getLogger(__name__)

analysis_requests_total = Counter(
    "analysis_requests_total",
    "Total document analyses",
    ["status"],  # success, failed
)

analysis_errors_total = Counter(
    "analysis_errors_total",
    "Total failed document analyses by error kind",
    ["kind"],
)

analysis_duration_seconds = Histogram(
    "analysis_duration_seconds",
    "End-to-end analysis duration in seconds (queue wait included)",
    buckets=(1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
)


def _retry_in_place(error: BaseException) -> bool:
    # rate limits are left to the request queue
    return is_retryable(error) and not is_rate_limited(error)


class InvoiceAnalysisService:
    """Analyzes document images into normalized invoice records.

    Args:
        settings: Application settings
        provider: Analysis provider performing single upstream calls
        queue: Shared request queue (one per process)
        normalizer: Response normalizer
        prompt: Prompt text (built from the default registry if omitted)
    """

    def __init__(
        self,
        settings: Settings,
        provider: AnalysisProvider,
        queue: RequestQueue,
        normalizer: ResponseNormalizer,
        prompt: str | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.queue = queue
        self.normalizer = normalizer
        self.prompt = prompt or build_prompt(normalizer.matcher.registry)

    async def analyze(
        self,
        image: bytes,
        mime_type: str = "image/jpeg",
        on_progress: ProgressCallback | None = None,
    ) -> ExtractedInvoice:
        """Analyze one document image.

        Args:
            image: Raw image bytes
            mime_type: Declared MIME type of the image
            on_progress: Optional observer of pipeline transitions

        Returns:
            Normalized ExtractedInvoice (with usage metadata attached)

        Raises:
            ScannerError: Any terminal failure (parse, upstream, exhausted retries)
        """
        start = time.time()

        async def task() -> AnalysisResponse:
            return await self._call_with_timeout_retry(image, mime_type, on_progress)

        try:
            response = await self.queue.enqueue(task, on_progress=on_progress)
            notify(
                on_progress,
                ProgressUpdate(status=ProgressStatus.PROCESSING, message="Validating response"),
            )
            invoice = self.normalizer.normalize(response.text, usage=response.usage)
        except ScannerError as e:
            analysis_requests_total.labels(status="failed").inc()
            analysis_errors_total.labels(kind=e.kind.value).inc()
            logger.error(f"Analysis failed ({e.kind.value}): {e}")
            notify(
                on_progress,
                ProgressUpdate(
                    status=ProgressStatus.FAILED, attempt=e.attempt or 1, message=str(e)
                ),
            )
            raise
        finally:
            analysis_duration_seconds.observe(time.time() - start)

        analysis_requests_total.labels(status="success").inc()
        logger.info(
            f"Analyzed document from {invoice.supplier_name or 'unknown supplier'} "
            f"({invoice.supplier_category.value if invoice.supplier_category else 'other'}, "
            f"{len(invoice.line_items)} line items)"
        )
        notify(
            on_progress,
            ProgressUpdate(status=ProgressStatus.SUCCESS, message="Analysis complete"),
        )
        return invoice

    async def _call_with_timeout_retry(
        self,
        image: bytes,
        mime_type: str,
        on_progress: ProgressCallback | None,
    ) -> AnalysisResponse:
        """Call the provider, retrying retryable errors other than rate limits.

        In practice that means timeouts. Rate-limit and fatal errors propagate
        on the first occurrence so the queue can apply its own policy.
        """
        attempts = self.settings.timeout_attempts

        def before_sleep(retry_state: RetryCallState) -> None:
            notify(
                on_progress,
                ProgressUpdate(
                    status=ProgressStatus.TIMEOUT,
                    attempt=retry_state.attempt_number,
                    total=attempts,
                    message="Request timed out, retrying",
                ),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_retry_in_place),
            wait=wait_exponential_jitter(
                initial=self.settings.timeout_retry_delay_seconds,
                max=self.settings.queue_backoff_cap_seconds,
                jitter=self.settings.timeout_retry_delay_seconds,
            ),
            stop=stop_after_attempt(attempts),
            before_sleep=before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    notify(
                        on_progress,
                        ProgressUpdate(
                            status=ProgressStatus.ANALYZING,
                            attempt=attempt.retry_state.attempt_number,
                            total=attempts,
                            message=f"Analyzing with {self.provider.provider_name}",
                        ),
                    )
                    return await self.provider.call(
                        image,
                        self.prompt,
                        self.settings.generation_config,
                        mime_type,
                    )
        except RetryError as e:
            last_error = e.last_attempt.exception() or e
            raise RetriesExhaustedError(attempts, last_error) from last_error
        raise AssertionError("unreachable")  # pragma: no cover
