"""Progress notifications for long-running analysis requests.

Progress callbacks are purely observational: a failing callback is logged
and never changes the outcome of the request it reports on.
"""

import logging
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProgressStatus(str, Enum):
    """Transitions reported while a document moves through the pipeline."""

    QUEUED = "queued"
    THROTTLING = "throttling"
    ANALYZING = "analyzing"
    RETRYING = "retrying"
    TIMEOUT = "timeout"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class ProgressUpdate(BaseModel):
    """One progress event.

    Attributes:
        status: Pipeline transition
        attempt: Attempt number the event refers to (1-based)
        total: Attempt ceiling or item count, when meaningful
        message: Human-readable description
    """

    status: ProgressStatus
    attempt: int = 1
    total: int | None = None
    message: str = ""


ProgressCallback = Callable[[ProgressUpdate], None]


def notify(callback: ProgressCallback | None, update: ProgressUpdate) -> None:
    """Deliver a progress update if a callback was supplied."""
    if callback is None:
        return
    try:
        callback(update)
    except Exception:
        logger.exception(f"Progress callback failed for status {update.status.value}")
