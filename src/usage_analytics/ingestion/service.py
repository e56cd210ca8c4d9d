"""
Ingestion pipeline: validate, rate limit, enrich, buffer, flush.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from ..events.schema import validate_event, validate_batch_envelope
from ..storage.adapters import StorageAdapter
from ..storage.cache import CacheStore
from ..utils.config import IngestionConfig
from ..utils.errors import ValidationError
from ..utils.logging import get_logger
from ..utils.metrics import MetricsCollector, get_metrics_collector
from .buffer import BufferManager
from .enrichment import Enricher, GeoResolver
from .rate_limiter import RateLimiter, RateLimitInfo

logger = get_logger("usage-analytics.ingestion")

BATCH_ERROR_ID = "batch"


@dataclass
class IngestionError:
    """Per-event rejection reason."""
    event_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"eventId": self.event_id, "error": self.error}


@dataclass
class IngestionResult:
    """Outcome of one batch."""
    success: bool
    accepted: int
    rejected: int
    rate_limit: RateLimitInfo
    errors: List[IngestionError] = field(default_factory=list)

    @property
    def batch_rejected(self) -> bool:
        """True when the envelope or batch size was refused; rate limiting is reported separately."""
        return not self.rate_limit.exceeded and any(e.event_id == BATCH_ERROR_ID for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "rateLimit": self.rate_limit.to_dict(),
        }
        if self.errors:
            result["errors"] = [e.to_dict() for e in self.errors]
        return result


class IngestionService:
    """Entry point for client telemetry."""

    def __init__(
        self,
        storage: StorageAdapter,
        cache: CacheStore,
        config: Optional[IngestionConfig] = None,
        geo_resolver: Optional[GeoResolver] = None,
        rate_limiter: Optional[RateLimiter] = None,
        enricher: Optional[Enricher] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or IngestionConfig()
        self.storage = storage
        self.metrics = metrics or get_metrics_collector()
        self.rate_limiter = rate_limiter or RateLimiter(
            cache, limit_per_minute=self.config.rate_limit_per_minute
        )
        self.enricher = enricher or Enricher(
            geo_resolver=geo_resolver,
            enable_geo=self.config.enable_geo_enrichment,
        )
        self.buffers = BufferManager(storage, self.config.buffer_size, metrics=self.metrics)

    async def ingest_batch(self, raw_batch: Any, client_ip: Optional[str] = None) -> IngestionResult:
        """
        Ingest a batch of events.

        Args:
            raw_batch: Batch mapping as received from the client
            client_ip: Client address used for geo enrichment

        Returns:
            Accepted/rejected counts, per-event errors and rate limit state
        """
        raw_events = raw_batch.get("events") if isinstance(raw_batch, dict) else None
        total = len(raw_events) if isinstance(raw_events, list) else 0

        try:
            batch = validate_batch_envelope(raw_batch)
        except ValidationError as e:
            logger.warning("batch_rejected_invalid", error=e.message)
            return await self._reject_batch(raw_batch, total, f"Invalid batch: {e.message}")

        total = len(batch.events)
        if total > self.config.max_batch_size:
            logger.warning(
                "batch_rejected_too_large",
                project_id=batch.project_id,
                size=total,
                max_batch_size=self.config.max_batch_size,
            )
            return await self._reject_batch(
                raw_batch,
                total,
                f"Batch size {total} exceeds maximum of {self.config.max_batch_size}",
            )

        rate_limit = await self.rate_limiter.check_limit(batch.project_id, total)
        if rate_limit.exceeded:
            self.metrics.counter("events_rate_limited", total, {"project_id": batch.project_id})
            logger.warning(
                "batch_rate_limited",
                project_id=batch.project_id,
                size=total,
                count=rate_limit.count,
                limit=rate_limit.limit,
            )
            return IngestionResult(
                success=False,
                accepted=0,
                rejected=total,
                rate_limit=rate_limit,
                errors=[IngestionError(
                    event_id=BATCH_ERROR_ID,
                    error=f"Rate limit exceeded: {rate_limit.count}/{rate_limit.limit} events per minute",
                )],
            )

        errors: List[IngestionError] = []
        valid = []
        for raw in batch.events:
            event_id = raw.get("eventId") if isinstance(raw, dict) else None
            try:
                event = validate_event(raw)
            except ValidationError as e:
                errors.append(IngestionError(event_id=str(event_id or "unknown"), error=e.message))
                continue
            if event.project_id != batch.project_id:
                errors.append(IngestionError(
                    event_id=event.event_id,
                    error=f"Event project {event.project_id} does not match batch project",
                ))
                continue
            valid.append(event)

        enriched = await asyncio.gather(*(self.enricher.enrich(e, client_ip) for e in valid))

        if enriched:
            try:
                await self.buffers.append(batch.project_id, enriched)
            except Exception as e:
                # Events stay buffered for the next flush attempt
                logger.error(
                    "buffer_flush_deferred",
                    project_id=batch.project_id,
                    buffered=self.buffers.size(batch.project_id),
                    error=str(e),
                )
            await self.rate_limiter.increment(batch.project_id, len(enriched))

        accepted = len(enriched)
        self.metrics.counter("events_accepted", accepted)
        self.metrics.counter("events_rejected", len(errors))
        logger.info(
            "batch_ingested",
            project_id=batch.project_id,
            batch_id=batch.batch_id,
            accepted=accepted,
            rejected=len(errors),
        )

        rate_limit.count += accepted
        return IngestionResult(
            success=accepted > 0 or total == 0,
            accepted=accepted,
            rejected=len(errors),
            rate_limit=rate_limit,
            errors=errors,
        )

    async def ingest_event(self, raw_event: Any, client_ip: Optional[str] = None) -> IngestionResult:
        """Ingest a single event by wrapping it in a one-event batch."""
        if not isinstance(raw_event, dict):
            raw_event = {}
        batch = {
            "batchId": f"single-{raw_event.get('eventId', 'unknown')}",
            "projectId": raw_event.get("projectId", ""),
            "events": [raw_event],
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        return await self.ingest_batch(batch, client_ip)

    async def _reject_batch(self, raw_batch: Any, total: int, message: str) -> IngestionResult:
        project_id = raw_batch.get("projectId") if isinstance(raw_batch, dict) else None
        if isinstance(project_id, str) and project_id:
            rate_limit = await self.rate_limiter.check_limit(project_id, 0)
        else:
            now = datetime.now(timezone.utc)
            rate_limit = RateLimitInfo(
                count=0,
                limit=self.rate_limiter.limit,
                window_seconds=self.rate_limiter.window_seconds,
                reset_at=now.replace(second=0, microsecond=0) + timedelta(minutes=1),
                exceeded=False,
            )
        self.metrics.counter("events_rejected", total)
        return IngestionResult(
            success=False,
            accepted=0,
            rejected=total,
            rate_limit=rate_limit,
            errors=[IngestionError(event_id=BATCH_ERROR_ID, error=message)],
        )

    async def flush_buffer(self, project_id: Optional[str] = None) -> int:
        """Flush one project's buffer, or every buffer when no project is given."""
        if project_id is not None:
            return await self.buffers.flush(project_id)
        return await self.buffers.flush_all()

    def get_buffer_stats(self) -> Dict[str, int]:
        return self.buffers.stats()

    async def shutdown(self) -> None:
        """Flush everything before the process exits."""
        flushed = await self.buffers.flush_all()
        logger.info("ingestion_shutdown", flushed=flushed)
