#!/usr/bin/env python3
"""Scan every invoice image in a folder and submit the results.

Files are processed one at a time in name order through the same request
queue the API uses, so the upstream rate limits are respected.

Usage:
    python scripts/process_folder.py invoices/ --no-submit --output results.json

Requirements:
    - APP_GEMINI_API_KEY environment variable set
    - APP_INVOICE_WEBHOOK_URL (and optionally APP_PRODUCTS_WEBHOOK_URL) to submit
"""

import asyncio
import json
import logging
from pathlib import Path

from scanner.batch.processor import BulkProcessor, BulkResult, find_images
from scanner.extraction.factory import create_analysis_service
from scanner.shared.config import get_settings
from scanner.shared.progress import ProgressCallback, ProgressUpdate
from scanner.sinks.webhooks import WebhookSink

logger = logging.getLogger(__name__)


def progress_printer(index: int, filename: str) -> ProgressCallback:
    """Progress callback that logs each pipeline transition of one file."""

    def callback(update: ProgressUpdate) -> None:
        attempt = f" [{update.attempt}/{update.total}]" if update.total else ""
        logger.info(f"#{index + 1} {filename}: {update.status.value}{attempt} {update.message}")

    return callback


async def process_folder(directory: Path, submit: bool = True) -> BulkResult:
    """Analyze all images in ``directory`` and optionally submit each record."""
    settings = get_settings()
    service = create_analysis_service(settings)
    sink = WebhookSink(settings) if submit else None
    if sink is not None and not sink.is_available():
        logger.warning("Invoice webhook not configured, records will not be submitted")

    paths = find_images(directory)
    logger.info(f"Found {len(paths)} image(s) in {directory}")
    try:
        return await BulkProcessor(service, sink).process_paths(
            paths, submit=submit, progress_factory=progress_printer
        )
    finally:
        await service.provider.aclose()
        if sink is not None:
            await sink.aclose()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Scan a folder of invoice images")
    parser.add_argument("directory", type=Path, help="Folder containing invoice images")
    parser.add_argument(
        "--no-submit",
        action="store_true",
        help="Analyze only, do not post records to the webhooks",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write the batch result to this JSON file",
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    result = asyncio.run(process_folder(args.directory, submit=not args.no_submit))

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(result.model_dump_json(indent=2), encoding="utf-8")
        logger.info(f"Saved results to {args.output}")
    else:
        print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))

    logger.info(f"{result.succeeded} succeeded, {result.failed} failed")
