"""
Export job pipeline.

State machine::

    pending -> processing -> completed
                          -> failed

``expired`` is derived from the record's ``expires_at`` and never stored.
Jobs run as background tasks owned by the service; the only admission
control is the per-project cap on pending/processing jobs, counted when a
job is created.
"""

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Callable, Set, Union

from pydantic import ValidationError as PydanticValidationError

from ..analytics.aggregations import AggregationEngine
from ..storage.cache import CacheStore
from ..utils.config import ExportConfig
from ..utils.errors import (
    ExportLimitExceededError,
    ExportNotFoundError,
    ExportTooLargeError,
    InvalidExportFormatError,
    ProjectNotFoundError,
    ValidationError,
    error_messages,
)
from ..utils.logging import get_logger
from ..utils.metrics import MetricsCollector, get_metrics_collector
from ..utils.notifications import EventBus, EventCategory, EventPriority, get_event_bus
from .models import (
    ExportFile,
    ExportFormat,
    ExportRecord,
    ExportRequest,
    ExportStatus,
)
from .object_store import ObjectStore
from .renderers import render, row_count
from .templates import get_template

logger = get_logger("usage-analytics.export")

RECORD_PREFIX = "export"

CONTENT_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.PDF: "application/pdf",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

# Records outlive their expiry by a day so cleanup can still find the file
RECORD_GRACE = timedelta(days=1)


class ExportService:
    """Creates, runs and tracks export jobs."""

    def __init__(
        self,
        engine: AggregationEngine,
        cache: CacheStore,
        object_store: ObjectStore,
        config: Optional[ExportConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.engine = engine
        self.cache = cache
        self.object_store = object_store
        self.config = config or ExportConfig()
        self.event_bus = event_bus or get_event_bus()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.metrics = metrics or get_metrics_collector()
        self._tasks: Dict[str, asyncio.Task] = {}
        # Ids deleted while their job still runs, so the job cannot write them back
        self._deleted: Set[str] = set()

    # Record persistence

    @staticmethod
    def record_key(project_id: str, export_id: str) -> str:
        return f"{RECORD_PREFIX}:{project_id}:{export_id}"

    async def _save(self, record: ExportRecord) -> None:
        if record.id in self._deleted:
            return
        ttl = int((record.expires_at + RECORD_GRACE - self.clock()).total_seconds())
        await self.cache.setex(
            self.record_key(record.project_id, record.id),
            max(ttl, 1),
            json.dumps(record.to_wire()),
        )

    async def _update(self, record: ExportRecord, **changes) -> ExportRecord:
        changes["updated_at"] = self.clock()
        updated = record.model_copy(update=changes)
        await self._save(updated)
        return updated

    async def _load(self, key: str) -> Optional[ExportRecord]:
        raw = await self.cache.get(key)
        if raw is None:
            return None
        return ExportRecord.model_validate(json.loads(raw))

    async def _project_records(self, project_id: str) -> List[ExportRecord]:
        keys = await self.cache.keys(f"{RECORD_PREFIX}:{project_id}:*")
        records = []
        for key in keys:
            record = await self._load(key)
            if record is not None:
                records.append(record)
        return records

    # Public API

    async def create_export(
        self,
        project_id: str,
        user_id: str,
        request: Union[ExportRequest, Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Queue a new export.

        Args:
            project_id: Project to export from
            user_id: Requesting user
            request: Report type, format, date range and options

        Returns:
            ``{"exportId": ..., "status": "pending"}``

        Raises:
            ProjectNotFoundError: Unknown project
            ExportLimitExceededError: Too many pending/processing jobs
            InvalidExportFormatError: Unsupported format
            InvalidParameterError: Unsupported report type
        """
        if not isinstance(request, ExportRequest):
            try:
                request = ExportRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(field="body", value=None, constraint=error_messages(e.errors())) from e

        if not await self.engine.store.project_exists(project_id):
            raise ProjectNotFoundError(project_id)

        now = self.clock()
        active = [
            r for r in await self._project_records(project_id)
            if r.effective_status(now) in (ExportStatus.PENDING, ExportStatus.PROCESSING)
        ]
        if len(active) >= self.config.max_concurrent_exports:
            self.metrics.counter("exports_rejected", tags={"reason": "limit"})
            raise ExportLimitExceededError(self.config.max_concurrent_exports)

        try:
            export_format = ExportFormat(request.format)
        except ValueError:
            raise InvalidExportFormatError(request.format) from None

        get_template(request.report_type)

        record = ExportRecord(
            id=str(uuid.uuid4()),
            project_id=project_id,
            user_id=user_id,
            report_type=request.report_type,
            format=export_format,
            status=ExportStatus.PENDING,
            date_range=request.date_range,
            filters=request.filters,
            options=request.options,
            steps=request.steps,
            time_window_hours=request.time_window_hours,
            retention_days=request.retention_days,
            progress=0,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=self.config.retention_days),
        )
        await self._save(record)

        task = asyncio.create_task(self._process(record))
        self._tasks[record.id] = task
        task.add_done_callback(lambda _, export_id=record.id: self._forget(export_id))

        self.metrics.counter("exports_created", tags={"format": export_format.value})
        logger.info(
            "export_created",
            export_id=record.id,
            project_id=project_id,
            report_type=record.report_type.value,
            format=export_format.value,
        )
        return {"exportId": record.id, "status": ExportStatus.PENDING.value}

    async def _process(self, record: ExportRecord) -> None:
        uploaded_key: Optional[str] = None
        try:
            record = await self._update(record, status=ExportStatus.PROCESSING, progress=10)
            template = get_template(record.report_type)

            with self.metrics.timing("export_fetch", {"report_type": record.report_type.value}):
                data = await template.fetch(self.engine, record, self.config.max_rows)
            record = await self._update(record, progress=50)

            rows = row_count(template, data)
            if rows > self.config.max_rows:
                raise ExportTooLargeError(
                    f"Export has {rows} rows, exceeding the maximum of {self.config.max_rows}"
                )

            loop = asyncio.get_running_loop()
            content = await loop.run_in_executor(None, render, record.format, template, data, record)
            if len(content) > self.config.max_file_size:
                raise ExportTooLargeError(
                    f"Export size {len(content)} bytes exceeds the maximum of "
                    f"{self.config.max_file_size} bytes"
                )

            key = f"{self.config.storage_prefix}{record.project_id}/{record.id}.{record.format.value}"
            await self.object_store.upload(key, content, CONTENT_TYPES[record.format])
            uploaded_key = key

            ttl = self.config.download_url_expiry_hours * 3600
            url = await self.object_store.generate_signed_url(key, ttl)
            now = self.clock()
            record = await self._update(
                record,
                status=ExportStatus.COMPLETED,
                progress=100,
                actual_rows=rows,
                completed_at=now,
                file=ExportFile(
                    key=key,
                    size=len(content),
                    download_url=url,
                    expires_at=now + timedelta(seconds=ttl),
                ),
            )
        except asyncio.CancelledError as e:
            await self._fail(record, e, uploaded_key, message="Export interrupted by shutdown")
            raise
        except Exception as e:
            await self._fail(record, e, uploaded_key)
            return

        if record.id in self._deleted:
            # Deleted mid-run; the record was never written back, drop the file too
            await self.object_store.delete(uploaded_key)
            logger.info("export_discarded", export_id=record.id, project_id=record.project_id)
            return

        self.metrics.counter("exports_completed", tags={"format": record.format.value})
        logger.info(
            "export_completed",
            export_id=record.id,
            project_id=record.project_id,
            size=record.file.size,
            rows=record.actual_rows,
        )
        await self.event_bus.emit(
            "export_completed",
            EventCategory.EXPORT,
            record.status_view(),
            source="export_service",
        )

    async def _fail(
        self,
        record: ExportRecord,
        error: BaseException,
        uploaded_key: Optional[str],
        message: Optional[str] = None,
    ) -> None:
        message = message or getattr(error, "message", None) or str(error) or type(error).__name__
        logger.error(
            "export_failed",
            export_id=record.id,
            project_id=record.project_id,
            error=message,
            error_type=type(error).__name__,
        )
        self.metrics.counter("exports_failed", tags={"error_type": type(error).__name__})

        if uploaded_key is not None:
            try:
                await self.object_store.delete(uploaded_key)
            except Exception as e:
                logger.warning("export_cleanup_failed", key=uploaded_key, error=str(e))

        try:
            record = await self._update(record, status=ExportStatus.FAILED, error=message, file=None)
        except Exception as e:
            logger.error("export_record_update_failed", export_id=record.id, error=str(e))

        await self.event_bus.emit(
            "export_failed",
            EventCategory.EXPORT,
            {"exportId": record.id, "projectId": record.project_id, "error": message},
            priority=EventPriority.HIGH,
            source="export_service",
        )

    async def get_export(self, project_id: str, export_id: str) -> ExportRecord:
        record = await self._load(self.record_key(project_id, export_id))
        if record is None:
            raise ExportNotFoundError(export_id)
        return record

    async def get_export_status(self, project_id: str, export_id: str) -> Dict[str, Any]:
        record = await self.get_export(project_id, export_id)
        return record.status_view(self.clock())

    async def list_exports(
        self,
        project_id: str,
        limit: int = 20,
        offset: int = 0,
        include_expired: bool = False
    ) -> Dict[str, Any]:
        """Project exports, newest first."""
        now = self.clock()
        records = [
            r for r in await self._project_records(project_id)
            if include_expired or not r.is_expired(now)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return {
            "exports": [r.view(now) for r in records[offset:offset + limit]],
            "total": len(records),
            "limit": limit,
            "offset": offset,
        }

    async def delete_export(self, project_id: str, export_id: str) -> None:
        """Remove the export's file and record."""
        record = await self.get_export(project_id, export_id)
        if export_id in self._tasks:
            self._deleted.add(export_id)
        if record.file is not None:
            await self.object_store.delete(record.file.key)
        await self.cache.delete(self.record_key(project_id, export_id))
        logger.info("export_deleted", export_id=export_id, project_id=project_id)

    async def cleanup_expired(self) -> int:
        """Delete files and records past their retention window."""
        now = self.clock()
        removed = 0
        for key in await self.cache.keys(f"{RECORD_PREFIX}:*"):
            record = await self._load(key)
            if record is None or not record.is_expired(now):
                continue
            try:
                if record.file is not None:
                    await self.object_store.delete(record.file.key)
                await self.cache.delete(key)
                removed += 1
            except Exception as e:
                logger.error("export_expiry_failed", export_id=record.id, error=str(e))
        logger.info("expired_exports_cleaned", removed=removed)
        return removed

    @property
    def pending_jobs(self) -> int:
        return len(self._tasks)

    def _forget(self, export_id: str) -> None:
        self._tasks.pop(export_id, None)
        self._deleted.discard(export_id)

    async def wait_for_pending(self, timeout: Optional[float] = None) -> None:
        """Wait until every background job has finished."""
        if not self._tasks:
            return
        await asyncio.wait_for(
            asyncio.gather(*list(self._tasks.values()), return_exceptions=True),
            timeout=timeout,
        )

    async def shutdown(self, timeout: Optional[float] = 30) -> None:
        logger.info("export_service_draining", pending=self.pending_jobs)
        try:
            await self.wait_for_pending(timeout)
        except asyncio.TimeoutError:
            logger.warning("export_drain_timeout", pending=self.pending_jobs, timeout=timeout)
            # Cancelled jobs record themselves as failed before exiting
            remaining = list(self._tasks.values())
            for task in remaining:
                task.cancel()
            await asyncio.gather(*remaining, return_exceptions=True)
