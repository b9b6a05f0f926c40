"""Bulk processing of multiple document images.

Files are processed strictly one after another: each file is read, analyzed
and submitted before the next one starts. This keeps the sink's row order
equal to the input order and avoids concurrent writes to the spreadsheet.
A failing file is recorded and the batch continues.
"""

import logging
import mimetypes
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from scanner.extraction.errors import ScannerError
from scanner.extraction.schema import ExtractedInvoice
from scanner.extraction.service import InvoiceAnalysisService
from scanner.shared.progress import ProgressCallback
from scanner.sinks.webhooks import WebhookSink

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = frozenset({".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif"})


@dataclass
class DocumentInput:
    """One document image to process."""

    filename: str
    content: bytes
    mime_type: str = "image/jpeg"


class BulkItemResult(BaseModel):
    """Result of processing one file of a batch.

    Attributes:
        filename: Original filename
        status: completed, failed or submit_failed
        invoice: Extracted record (kept even when submission failed)
        submitted: Whether the record reached the sinks
        error: Error message if processing or submission failed
        completed_at: Completion timestamp
    """

    filename: str
    status: str
    invoice: ExtractedInvoice | None = None
    submitted: bool = False
    error: str | None = None
    completed_at: str


class BulkResult(BaseModel):
    """Aggregate result of a batch."""

    total: int
    succeeded: int
    failed: int
    items: list[BulkItemResult]


def guess_mime_type(filename: str) -> str:
    """MIME type from the file extension, defaulting to JPEG."""
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type if mime_type and mime_type.startswith("image/") else "image/jpeg"


def find_images(directory: Path) -> list[Path]:
    """Image files directly inside a directory, sorted by name."""
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
    )


class BulkProcessor:
    """Runs many documents through analysis and submission sequentially.

    Args:
        service: Analysis service (shares the process-wide request queue)
        sink: Webhook sink, or None to analyze without submitting
    """

    def __init__(self, service: InvoiceAnalysisService, sink: WebhookSink | None = None) -> None:
        self.service = service
        self.sink = sink

    async def process_documents(
        self,
        documents: Iterable[DocumentInput],
        submit: bool = True,
        progress_factory: Callable[[int, str], ProgressCallback | None] | None = None,
    ) -> BulkResult:
        """Analyze (and optionally submit) documents one at a time.

        Args:
            documents: Documents in processing order
            submit: Push each record to the sinks after analysis
            progress_factory: Builds a progress callback per ``(index, filename)``

        Returns:
            BulkResult with one item per document, in input order
        """
        return await self._run(
            ((doc.filename, lambda doc=doc: doc) for doc in documents),
            submit,
            progress_factory,
        )

    async def process_paths(
        self,
        paths: Iterable[Path],
        submit: bool = True,
        progress_factory: Callable[[int, str], ProgressCallback | None] | None = None,
    ) -> BulkResult:
        """Like :meth:`process_documents`, reading each file just before analysis."""

        def loader(path: Path) -> Callable[[], DocumentInput]:
            return lambda: DocumentInput(
                filename=path.name,
                content=path.read_bytes(),
                mime_type=guess_mime_type(path.name),
            )

        return await self._run(
            ((path.name, loader(path)) for path in paths), submit, progress_factory
        )

    async def _run(
        self,
        entries: Iterable[tuple[str, Callable[[], DocumentInput]]],
        submit: bool,
        progress_factory: Callable[[int, str], ProgressCallback | None] | None,
    ) -> BulkResult:
        items: list[BulkItemResult] = []
        for index, (filename, load) in enumerate(entries):
            on_progress = progress_factory(index, filename) if progress_factory else None
            logger.info(f"Processing file {index + 1}: {filename}")
            items.append(await self._process_one(filename, load, submit, on_progress))

        succeeded = sum(1 for item in items if item.status == "completed")
        logger.info(f"Batch finished: {succeeded}/{len(items)} succeeded")
        return BulkResult(
            total=len(items),
            succeeded=succeeded,
            failed=len(items) - succeeded,
            items=items,
        )

    async def _process_one(
        self,
        filename: str,
        load: Callable[[], DocumentInput],
        submit: bool,
        on_progress: ProgressCallback | None,
    ) -> BulkItemResult:
        try:
            document = load()
            invoice = await self.service.analyze(
                document.content, document.mime_type, on_progress=on_progress
            )
        except (ScannerError, OSError) as e:
            logger.error(f"File {filename} failed: {e}")
            return BulkItemResult(
                filename=filename,
                status="failed",
                error=str(e),
                completed_at=datetime.now(UTC).isoformat(),
            )

        if not submit or self.sink is None:
            return BulkItemResult(
                filename=filename,
                status="completed",
                invoice=invoice,
                completed_at=datetime.now(UTC).isoformat(),
            )

        submission = await self.sink.submit(invoice)
        return BulkItemResult(
            filename=filename,
            status="completed" if submission.success else "submit_failed",
            invoice=invoice,
            submitted=submission.success,
            error=submission.error,
            completed_at=datetime.now(UTC).isoformat(),
        )
