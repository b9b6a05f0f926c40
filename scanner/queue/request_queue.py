"""Serialized request queue for the rate-limited analysis API.

All upstream calls go through one queue instance so that concurrent callers
behave as a single well-behaved client:

- at most one request in flight at any time
- a minimum spacing between dispatches
- rate-limited requests retried with exponential backoff and jitter, ahead
  of newly enqueued work
- every other failure rejected immediately

The pending list and the last dispatch time are only touched from the drain
loop, which never runs twice concurrently (guarded by ``_draining``).
"""

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from prometheus_client import Counter, Gauge
from pydantic import BaseModel

from scanner.extraction.errors import RetriesExhaustedError, is_rate_limited
from scanner.shared.progress import ProgressCallback, ProgressStatus, ProgressUpdate, notify

logger = logging.getLogger(__name__)

T = TypeVar("T")

queue_dispatches_total = Counter(
    "analysis_queue_dispatches_total",
    "Total requests dispatched by the analysis queue",
)

queue_retries_total = Counter(
    "analysis_queue_retries_total",
    "Total rate-limit retries scheduled by the analysis queue",
)

queue_rejections_total = Counter(
    "analysis_queue_rejections_total",
    "Total requests rejected by the analysis queue",
    ["reason"],  # exhausted, fatal
)

queue_depth = Gauge(
    "analysis_queue_depth",
    "Number of requests waiting in the analysis queue",
)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 16.0) -> float:
    """Backoff before retry number ``attempt``, without jitter.

    ``min(base * 2**attempt, cap)``: 2s, 4s, 8s, 16s, 16s... with defaults.
    """
    return min(base * (2**attempt), cap)


@dataclass
class QueueItem:
    """One pending request and the future its caller is awaiting."""

    task: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    max_attempts: int = 5
    attempt: int = 0
    on_progress: ProgressCallback | None = field(default=None, repr=False)


class QueueStatus(BaseModel):
    """Snapshot of the queue state."""

    queue_length: int
    is_processing: bool
    current_requests: int


class RequestQueue:
    """Single-concurrency request queue with throttling and backoff.

    Args:
        min_delay: Minimum seconds between two dispatches
        max_attempts: Attempt ceiling for rate-limited requests
        backoff_base: Base of the exponential backoff in seconds
        backoff_cap: Upper bound of the backoff (before jitter)
        max_jitter: Upper bound of the random jitter added to each backoff
        sleep: Awaitable sleep function (injectable for tests)
        clock: Monotonic clock in seconds (injectable for tests)
        jitter: ``(low, high) -> float`` random source (injectable for tests)
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 16.0,
        max_jitter: float = 1.0,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.min_delay = min_delay
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_jitter = max_jitter
        self._sleep = sleep
        self._clock = clock
        self._jitter = jitter

        self._pending: deque[QueueItem] = deque()
        self._draining = False
        self._drain_task: asyncio.Task[None] | None = None
        self._current: QueueItem | None = None
        self._last_dispatch: float | None = None

    async def enqueue(
        self,
        task: Callable[[], Awaitable[T]],
        on_progress: ProgressCallback | None = None,
    ) -> T:
        """Queue a request and wait for its outcome.

        Args:
            task: Zero-argument coroutine function performing one attempt
            on_progress: Optional observer for throttling/retry events

        Returns:
            The task's result

        Raises:
            RetriesExhaustedError: If rate limiting persisted through every attempt
            Exception: Any non-rate-limit error raised by the task, unchanged
        """
        loop = asyncio.get_running_loop()
        item = QueueItem(
            task=task,
            future=loop.create_future(),
            max_attempts=self.max_attempts,
            on_progress=on_progress,
        )
        self._pending.append(item)
        queue_depth.set(len(self._pending))
        notify(
            on_progress,
            ProgressUpdate(
                status=ProgressStatus.QUEUED,
                total=self.max_attempts,
                message=f"Queued behind {len(self._pending) - 1} request(s)",
            ),
        )

        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain())

        return await item.future

    def status(self) -> QueueStatus:
        """Get a snapshot of the queue state."""
        return QueueStatus(
            queue_length=len(self._pending),
            is_processing=self._draining,
            current_requests=1 if self._current is not None else 0,
        )

    def clear(self) -> int:
        """Cancel every pending request that has not been dispatched yet.

        Returns:
            Number of requests cancelled
        """
        cancelled = 0
        while self._pending:
            item = self._pending.popleft()
            if item.future.cancel():
                cancelled += 1
        queue_depth.set(0)
        if cancelled:
            logger.info(f"Cleared {cancelled} pending request(s)")
        return cancelled

    async def _drain(self) -> None:
        try:
            while self._pending:
                item = self._pending.popleft()
                queue_depth.set(len(self._pending))
                if item.future.done():
                    # Caller stopped waiting
                    continue

                await self._throttle(item)
                if item.future.done():
                    continue

                self._last_dispatch = self._clock()
                self._current = item
                queue_dispatches_total.inc()
                try:
                    result = await item.task()
                except Exception as e:
                    self._current = None
                    await self._handle_failure(item, e)
                else:
                    self._current = None
                    if not item.future.done():
                        item.future.set_result(result)
        except asyncio.CancelledError:
            if self._current is not None:
                self._current.future.cancel()
            self.clear()
            raise
        finally:
            self._current = None
            self._draining = False
            self._drain_task = None

    async def _throttle(self, item: QueueItem) -> None:
        if self._last_dispatch is None:
            return
        elapsed = self._clock() - self._last_dispatch
        if elapsed >= self.min_delay:
            return
        wait = self.min_delay - elapsed
        logger.info(f"Throttling: waiting {wait:.3f}s before next request")
        notify(
            item.on_progress,
            ProgressUpdate(
                status=ProgressStatus.THROTTLING,
                attempt=item.attempt + 1,
                total=item.max_attempts,
                message=f"Waiting {wait:.1f}s before sending",
            ),
        )
        await self._sleep(wait)

    async def _handle_failure(self, item: QueueItem, error: Exception) -> None:
        item.attempt += 1

        if is_rate_limited(error) and item.attempt < item.max_attempts:
            delay = backoff_delay(item.attempt, self.backoff_base, self.backoff_cap)
            delay += self._jitter(0, self.max_jitter)
            logger.warning(
                f"Rate limit hit (attempt {item.attempt}/{item.max_attempts}). "
                f"Retrying in {delay:.2f}s"
            )
            queue_retries_total.inc()
            notify(
                item.on_progress,
                ProgressUpdate(
                    status=ProgressStatus.RETRYING,
                    attempt=item.attempt,
                    total=item.max_attempts,
                    message=f"Rate limited, retrying in {delay:.1f}s",
                ),
            )
            await self._sleep(delay)
            # Front of the queue: retries go ahead of newer work
            self._pending.appendleft(item)
            queue_depth.set(len(self._pending))
            return

        if is_rate_limited(error):
            queue_rejections_total.labels(reason="exhausted").inc()
            error = RetriesExhaustedError(item.attempt, error)
        else:
            queue_rejections_total.labels(reason="fatal").inc()

        logger.error(f"Request failed after {item.attempt} attempt(s): {error}")
        if not item.future.done():
            item.future.set_exception(error)
