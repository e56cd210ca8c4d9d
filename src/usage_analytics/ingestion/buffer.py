"""
Per-project in-memory event buffers.
"""

import asyncio
from typing import Dict, List, Optional, Sequence

from ..events.schema import EnrichedEvent
from ..storage.adapters import StorageAdapter
from ..utils.logging import get_logger
from ..utils.metrics import MetricsCollector, get_metrics_collector

logger = get_logger("usage-analytics.ingestion.buffer")


class BufferManager:
    """Owns ``project -> pending events`` with one lock per project.

    A flush swaps the project's list out under its lock and writes it. If the
    write fails the events go back in front of anything appended meanwhile
    and the error propagates to the caller.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        buffer_size: int = 500,
        metrics: Optional[MetricsCollector] = None
    ):
        self.storage = storage
        self.buffer_size = buffer_size
        self.metrics = metrics or get_metrics_collector()
        self._buffers: Dict[str, List[EnrichedEvent]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    async def append(self, project_id: str, events: Sequence[EnrichedEvent]) -> int:
        """Buffer events; returns how many were flushed as a result (0 if none)."""
        if not events:
            return 0
        async with self._lock_for(project_id):
            buffer = self._buffers.setdefault(project_id, [])
            buffer.extend(events)
            if len(buffer) < self.buffer_size:
                return 0
            return await self._flush_locked(project_id)

    async def flush(self, project_id: str) -> int:
        """Write one project's buffer to storage; returns the event count."""
        async with self._lock_for(project_id):
            return await self._flush_locked(project_id)

    async def flush_all(self) -> int:
        """Flush every project concurrently; the first failure is re-raised."""
        project_ids = list(self._buffers)
        results = await asyncio.gather(
            *(self.flush(pid) for pid in project_ids),
            return_exceptions=True,
        )
        total = 0
        failures = []
        for project_id, result in zip(project_ids, results):
            if isinstance(result, BaseException):
                failures.append(result)
                logger.error("buffer_flush_failed", project_id=project_id, error=str(result))
            else:
                total += result
        if failures:
            raise failures[0]
        return total

    async def _flush_locked(self, project_id: str) -> int:
        events = self._buffers.get(project_id) or []
        if not events:
            return 0
        self._buffers[project_id] = []

        try:
            with self.metrics.timing("buffer_flush", {"project_id": project_id}):
                await self.storage.write_events(events)
        except Exception:
            self._buffers[project_id] = events + self._buffers[project_id]
            self.metrics.counter("buffer_flush_failures", tags={"project_id": project_id})
            raise

        self.metrics.counter("events_flushed", len(events))
        logger.info("buffer_flushed", project_id=project_id, count=len(events))
        return len(events)

    def size(self, project_id: str) -> int:
        return len(self._buffers.get(project_id, ()))

    def stats(self) -> Dict[str, int]:
        """Buffered event count per project."""
        return {pid: len(events) for pid, events in self._buffers.items() if events}

    def pending(self, project_id: str) -> List[EnrichedEvent]:
        """Snapshot of a project's buffered events."""
        return list(self._buffers.get(project_id, ()))
