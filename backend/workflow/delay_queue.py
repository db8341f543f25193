"""Delayed re-enqueue of work units.

One heap and one timer task serve every pending retry, so a retry waiting
out its delay holds neither a worker nor a dedicated task or thread.
"""

import asyncio
import heapq
import itertools
import time
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class DelayQueue:
    """Min-heap of (due time, item) released to ``on_ready`` when due.

    Args:
        on_ready: Called with each item once its delay has elapsed
        clock: Monotonic clock, injectable for tests
    """

    def __init__(self, on_ready: Callable[[Any], None], clock: Callable[[], float] = time.monotonic):
        self._on_ready = on_ready
        self._clock = clock
        self._heap: list[tuple[float, int, Any]] = []
        self._counter = itertools.count()
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._heap)

    def put(self, item: Any, delay: float) -> None:
        """Schedule ``item`` for release after ``delay`` seconds."""
        due = self._clock() + max(0.0, float(delay))
        heapq.heappush(self._heap, (due, next(self._counter), item))
        if self._wakeup is not None:
            self._wakeup.set()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._wakeup = asyncio.Event()
            self._task = asyncio.get_running_loop().create_task(self._run(), name="workflow-delay-queue")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._wakeup = None

    def release_due(self) -> int:
        """Hand every due item to ``on_ready``. Returns how many were released."""
        released = 0
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            _, _, item = heapq.heappop(self._heap)
            try:
                self._on_ready(item)
            except Exception as e:
                logger.error("Delayed item could not be released", item=repr(item), error=str(e), exc_info=True)
            released += 1
        return released

    async def _run(self) -> None:
        while True:
            self.release_due()
            self._wakeup.clear()
            timeout = None
            if self._heap:
                timeout = max(0.0, self._heap[0][0] - self._clock())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
