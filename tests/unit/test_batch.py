"""Unit tests for sequential bulk processing."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from scanner.batch.processor import (
    BulkProcessor,
    DocumentInput,
    find_images,
    guess_mime_type,
)
from scanner.extraction.errors import ResponseParseError
from scanner.extraction.schema import ExtractedInvoice
from scanner.shared.progress import ProgressUpdate
from scanner.sinks.webhooks import SubmissionResult


@pytest.fixture
def mock_service() -> MagicMock:
    """Create analysis service returning one record per call."""
    service = MagicMock()
    service.analyze = AsyncMock(
        side_effect=lambda content, mime_type, on_progress=None: ExtractedInvoice(
            supplier_name=content.decode()
        )
    )
    return service


@pytest.fixture
def mock_sink() -> MagicMock:
    """Create sink accepting every record."""
    sink = MagicMock()
    sink.submit = AsyncMock(
        side_effect=lambda invoice: SubmissionResult(
            success=True, invoice=invoice, invoice_delivered=True
        )
    )
    return sink


def documents(*names: str) -> list[DocumentInput]:
    return [DocumentInput(filename=f"{name}.jpg", content=name.encode()) for name in names]


class TestBulkProcessor:
    """Test sequential batch processing."""

    @pytest.mark.asyncio
    async def test_processes_in_order(
        self, mock_service: MagicMock, mock_sink: MagicMock
    ) -> None:
        """Should analyze and submit each file in input order."""
        processor = BulkProcessor(mock_service, mock_sink)

        result = await processor.process_documents(documents("a", "b", "c"))

        assert result.total == 3
        assert result.succeeded == 3
        assert [item.filename for item in result.items] == ["a.jpg", "b.jpg", "c.jpg"]
        submitted = [call.args[0].supplier_name for call in mock_sink.submit.call_args_list]
        assert submitted == ["a", "b", "c"]
        assert all(item.submitted for item in result.items)

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(
        self, mock_service: MagicMock, mock_sink: MagicMock
    ) -> None:
        """Should record a failing file and continue with the rest."""

        def analyze(
            content: bytes, mime_type: str, on_progress: object = None
        ) -> ExtractedInvoice:
            if content == b"bad":
                raise ResponseParseError("boundary", "No JSON object found in response")
            return ExtractedInvoice(supplier_name=content.decode())

        mock_service.analyze = AsyncMock(side_effect=analyze)
        processor = BulkProcessor(mock_service, mock_sink)

        result = await processor.process_documents(documents("a", "bad", "c"))

        assert [item.status for item in result.items] == ["completed", "failed", "completed"]
        assert result.failed == 1
        assert "No JSON" in (result.items[1].error or "")
        assert mock_sink.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_submit_failure_keeps_record(
        self, mock_service: MagicMock, mock_sink: MagicMock
    ) -> None:
        """Should mark the item and keep the record when submission fails."""
        mock_sink.submit = AsyncMock(
            side_effect=lambda invoice: SubmissionResult(
                success=False, invoice=invoice, error="Delivery to invoice failed"
            )
        )
        processor = BulkProcessor(mock_service, mock_sink)

        result = await processor.process_documents(documents("a"))

        item = result.items[0]
        assert item.status == "submit_failed"
        assert item.submitted is False
        assert item.invoice is not None
        assert result.succeeded == 0

    @pytest.mark.asyncio
    async def test_analyze_only(self, mock_service: MagicMock, mock_sink: MagicMock) -> None:
        """Should not submit when submission is disabled."""
        processor = BulkProcessor(mock_service, mock_sink)

        result = await processor.process_documents(documents("a"), submit=False)

        assert result.items[0].status == "completed"
        mock_sink.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_progress_factory(self, mock_service: MagicMock) -> None:
        """Should hand each file its own progress callback."""
        seen: list[tuple[int, str]] = []

        def factory(index: int, filename: str):  # type: ignore[no-untyped-def]
            seen.append((index, filename))

            def callback(update: ProgressUpdate) -> None:
                return None

            return callback

        processor = BulkProcessor(mock_service)
        await processor.process_documents(documents("a", "b"), progress_factory=factory)

        assert seen == [(0, "a.jpg"), (1, "b.jpg")]

    @pytest.mark.asyncio
    async def test_process_paths(self, tmp_path: Path, mock_service: MagicMock) -> None:
        """Should read image files from disk with their MIME types."""
        (tmp_path / "b.png").write_bytes(b"b")
        (tmp_path / "a.jpg").write_bytes(b"a")
        (tmp_path / "notes.txt").write_text("skip me")

        processor = BulkProcessor(mock_service)
        result = await processor.process_paths(find_images(tmp_path), submit=False)

        assert [item.filename for item in result.items] == ["a.jpg", "b.png"]
        mime_types = [call.args[1] for call in mock_service.analyze.call_args_list]
        assert mime_types == ["image/jpeg", "image/png"]

    @pytest.mark.asyncio
    async def test_unreadable_path_recorded(self, tmp_path: Path, mock_service: MagicMock) -> None:
        """Should record a file that cannot be read."""
        processor = BulkProcessor(mock_service)

        result = await processor.process_paths([tmp_path / "missing.jpg"], submit=False)

        assert result.items[0].status == "failed"
        mock_service.analyze.assert_not_awaited()


def test_guess_mime_type() -> None:
    """Should fall back to JPEG for unknown extensions."""
    assert guess_mime_type("scan.png") == "image/png"
    assert guess_mime_type("scan.JPG") == "image/jpeg"
    assert guess_mime_type("scan.unknown") == "image/jpeg"
