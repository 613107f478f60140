"""In-memory job store and the TTL reclaimer for unclaimed results."""

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from services.conversion_pipeline import ConversionArtifact
from services.job_state import ConversionJob

logger = logging.getLogger(__name__)


@dataclass
class JobRecord:
    """A job snapshot plus the resources only the manager may touch."""

    job: ConversionJob
    artifact: ConversionArtifact | None = None
    task: asyncio.Task[Any] | None = None
    frame_path: Path | None = None


class JobRegistry:
    """
    Jobs keyed by id.

    Each record is written only by its own job continuation or by the
    reclaimer, both on the event loop thread, so no locking is needed.
    """

    def __init__(self) -> None:
        self._records: dict[str, JobRecord] = {}

    def add(self, record: JobRecord) -> None:
        self._records[record.job.job_id] = record

    def get(self, job_id: str) -> JobRecord | None:
        return self._records.get(job_id)

    def remove(self, job_id: str) -> JobRecord | None:
        return self._records.pop(job_id, None)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[JobRecord]:
        return iter(list(self._records.values()))


class TtlReclaimer:
    """
    Single background task that expires keys from a deadline heap.

    ``schedule`` replaces any earlier deadline for the same key; ``cancel``
    drops it. Stale heap entries are skipped when popped. The clock is
    injectable so tests can drive expiry with :meth:`reap_expired`.
    """

    def __init__(
        self,
        on_expire: Callable[[str], Awaitable[None]],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_expire = on_expire
        self._clock = clock
        self._heap: list[tuple[float, int, str]] = []
        self._deadlines: dict[str, float] = {}
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def schedule(self, key: str, delay: float) -> float:
        deadline = self._clock() + delay
        self._deadlines[key] = deadline
        heapq.heappush(self._heap, (deadline, next(self._sequence), key))
        self._wakeup.set()
        return deadline

    def cancel(self, key: str) -> bool:
        return self._deadlines.pop(key, None) is not None

    def __contains__(self, key: object) -> bool:
        return key in self._deadlines

    @property
    def pending(self) -> int:
        return len(self._deadlines)

    def due(self, now: float | None = None) -> list[str]:
        """Pop and return every key whose deadline has passed."""
        now = self._clock() if now is None else now
        expired: list[str] = []
        while self._heap and self._heap[0][0] <= now:
            deadline, _, key = heapq.heappop(self._heap)
            if self._deadlines.get(key) != deadline:
                continue
            del self._deadlines[key]
            expired.append(key)
        return expired

    def next_delay(self) -> float | None:
        """Seconds until the earliest live deadline, or None when idle."""
        while self._heap and self._deadlines.get(self._heap[0][2]) != self._heap[0][0]:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self._clock())

    async def reap_expired(self, now: float | None = None) -> list[str]:
        expired = self.due(now)
        for key in expired:
            try:
                await self._on_expire(key)
            except Exception:
                logger.exception("TTL reclaim failed for %s", key)
        return expired

    async def run(self) -> None:
        while True:
            await self.reap_expired()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="ttl-reclaimer")
            logger.info("TTL reclaimer started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("TTL reclaimer stopped")
