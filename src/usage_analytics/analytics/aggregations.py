"""
Aggregation Engine for dashboard metrics.

Every metric follows the same cache-aside contract: build a deterministic key
from the metric, project and range, return the cached copy when present,
otherwise compute from the durable event store and write it back with a
metric-specific TTL. The cache is an optimisation only; a cache outage is
logged and the value is recomputed.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Callable, Awaitable, Sequence

from ..storage.adapters import EventQueryStore
from ..storage.cache import CacheStore
from ..utils.errors import (
    ErrorSeverity,
    InvalidParameterError,
    ProjectNotFoundError,
    handle_errors,
)
from ..utils.logging import get_logger
from ..utils.metrics import MetricsCollector, get_metrics_collector
from . import algorithms
from .cache_policy import CachePolicy
from .models import (
    AggregationResult,
    DateRange,
    Granularity,
    as_utc,
    bucket_label,
    floor_to,
    iso,
    next_bucket,
    percent_change,
    round2,
)

logger = get_logger("usage-analytics.analytics.aggregations")

DEFAULT_RETENTION_DAYS = [1, 7, 14, 30]
MAU_WINDOW = timedelta(days=30)


class AggregationEngine:
    """Computes dashboard metrics from raw events."""

    def __init__(
        self,
        store: EventQueryStore,
        cache: CacheStore,
        policy: Optional[CachePolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        default_retention_days: Optional[Sequence[int]] = None
    ):
        self.store = store
        self.cache = cache
        self.policy = policy or CachePolicy()
        self.metrics = metrics or get_metrics_collector()
        self.default_retention_days = list(default_retention_days or DEFAULT_RETENTION_DAYS)

    # Cache helpers

    @handle_errors(Exception, reraise=False, log_level=ErrorSeverity.WARNING)
    async def _cache_read(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.cache.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    @handle_errors(Exception, reraise=False, log_level=ErrorSeverity.WARNING)
    async def _cache_write(self, key: str, ttl: int, payload: Dict[str, Any]) -> None:
        await self.cache.setex(key, ttl, json.dumps(payload))

    async def _cached(
        self,
        metric: str,
        project_id: str,
        date_range: DateRange,
        compute: Callable[[], Awaitable[Any]],
        params: Optional[Dict[str, Any]] = None
    ) -> AggregationResult:
        key = self.policy.key(metric, project_id, date_range, params)

        payload = await self._cache_read(key)
        if payload is not None:
            self.metrics.counter("cache_hits", tags={"metric": metric})
            computed_at = payload.get("computedAt")
            return AggregationResult(
                data=payload.get("data"),
                cached=True,
                computed_at=(
                    as_utc(datetime.fromisoformat(computed_at))
                    if computed_at else datetime.now(timezone.utc)
                ),
            )

        self.metrics.counter("cache_misses", tags={"metric": metric})
        await self._require_project(project_id)

        with self.metrics.timing("aggregation", {"metric": metric}):
            data = await compute()

        result = AggregationResult(data=data, cached=False)
        await self._cache_write(
            key,
            self.policy.ttl(metric),
            {"data": data, "computedAt": result.computed_at.isoformat()},
        )
        logger.debug("metric_computed", metric=metric, project_id=project_id, key=key)
        return result

    async def _require_project(self, project_id: str) -> None:
        if not await self.store.project_exists(project_id):
            raise ProjectNotFoundError(project_id)

    async def invalidate(self, project_id: str) -> int:
        """Drop every cached metric for a project."""
        try:
            keys = await self.cache.keys(f"{self.policy.prefix}:*:{project_id}:*")
            return await self.cache.delete(*keys)
        except Exception as e:
            logger.warning("cache_invalidate_failed", project_id=project_id, error=str(e))
            return 0

    # Overview

    async def get_overview(self, project_id: str, date_range: DateRange) -> AggregationResult:
        """Headline numbers with period-over-period trends."""

        async def compute() -> Dict[str, Any]:
            previous = date_range.previous()
            (current, prior, events, retention7, retention30) = await asyncio.gather(
                self._period_stats(project_id, date_range),
                self._period_stats(project_id, previous),
                self.store.find_events(project_id, date_range.start, date_range.end),
                self._retention_rate(project_id, date_range.end, 7),
                self._retention_rate(project_id, date_range.end, 30),
            )
            durations = algorithms.session_durations(events)
            return {
                "summary": {
                    "dailyActiveUsers": current["dau"],
                    "monthlyActiveUsers": current["mau"],
                    "totalSessions": current["sessions"],
                    "totalScreenViews": current["screen_views"],
                    "avgSessionDuration": algorithms.mean(durations),
                    "retentionRate7Day": retention7,
                    "retentionRate30Day": retention30,
                },
                "trends": {
                    "dauChange": percent_change(current["dau"], prior["dau"]),
                    "mauChange": percent_change(current["mau"], prior["mau"]),
                    "sessionsChange": percent_change(current["sessions"], prior["sessions"]),
                    "screenViewsChange": percent_change(current["screen_views"], prior["screen_views"]),
                },
                "insights": {
                    "topScreens": algorithms.top_screens(events, 5),
                    "topEvents": algorithms.top_events(events, 5),
                    "activeDevices": algorithms.device_counts(events),
                },
            }

        return await self._cached("overview", project_id, date_range, compute)

    async def _period_stats(self, project_id: str, date_range: DateRange) -> Dict[str, int]:
        start, end = date_range.start, date_range.end
        dau, mau, sessions, screen_views = await asyncio.gather(
            self.store.count_distinct_users(project_id, start, end),
            self.store.count_distinct_users(project_id, end - MAU_WINDOW, end),
            self.store.count_events(project_id, start, end, algorithms.SESSION_START),
            self.store.count_events(project_id, start, end, algorithms.SCREEN_VIEW),
        )
        return {"dau": dau, "mau": mau, "sessions": sessions, "screen_views": screen_views}

    async def _retention_rate(self, project_id: str, anchor: datetime, days: int) -> float:
        """Share of users active in ``[anchor-2d, anchor-d)`` who returned in ``[anchor-d, anchor)``."""
        period = timedelta(days=days)
        cohort, returning = await asyncio.gather(
            self.store.active_users(project_id, anchor - 2 * period, anchor - period),
            self.store.active_users(project_id, anchor - period, anchor),
        )
        if not cohort:
            return 0.0
        return round2(len(cohort & returning) / len(cohort) * 100)

    # Time series

    async def _active_user_series(
        self,
        project_id: str,
        date_range: DateRange,
        granularity: Granularity
    ) -> List[Dict[str, Any]]:
        buckets = []
        bucket = floor_to(date_range.start, granularity)
        while bucket < date_range.end:
            buckets.append(bucket)
            bucket = next_bucket(bucket, granularity)

        counts = await asyncio.gather(*(
            self.store.count_distinct_users(project_id, b, next_bucket(b, granularity))
            for b in buckets
        ))
        return [
            {"timestamp": bucket_label(b, granularity), "value": count}
            for b, count in zip(buckets, counts)
        ]

    async def get_daily_active_users(self, project_id: str, date_range: DateRange) -> AggregationResult:
        """Distinct users per day."""
        return await self._cached(
            "dau", project_id, date_range,
            lambda: self._active_user_series(project_id, date_range, Granularity.DAY),
        )

    async def get_monthly_active_users(self, project_id: str, date_range: DateRange) -> AggregationResult:
        """Distinct users per calendar month."""
        return await self._cached(
            "mau", project_id, date_range,
            lambda: self._active_user_series(project_id, date_range, Granularity.MONTH),
        )

    async def get_event_counts(
        self,
        project_id: str,
        date_range: DateRange,
        event_type: Optional[str] = None
    ) -> AggregationResult:
        """Event totals per bucket of ``date_range.granularity``."""

        async def compute() -> Dict[str, Any]:
            events = await self.store.find_events(
                project_id,
                date_range.start,
                date_range.end,
                event_types=[event_type] if event_type else None,
            )
            return {
                "eventType": event_type,
                "granularity": date_range.granularity.value,
                "total": len(events),
                "series": algorithms.group_by_granularity(events, date_range.granularity),
            }

        params = {"eventType": event_type} if event_type else None
        return await self._cached("events", project_id, date_range, compute, params)

    # Sessions and screens

    async def get_session_metrics(self, project_id: str, date_range: DateRange) -> AggregationResult:
        async def compute() -> Dict[str, Any]:
            events = await self.store.find_events(
                project_id, date_range.start, date_range.end,
                event_types=[algorithms.SESSION_START],
            )
            return algorithms.session_metrics(events)

        return await self._cached("sessions", project_id, date_range, compute)

    async def get_screen_metrics(self, project_id: str, date_range: DateRange) -> AggregationResult:
        async def compute() -> Dict[str, Any]:
            events = await self.store.find_events(
                project_id, date_range.start, date_range.end,
                event_types=[algorithms.SCREEN_VIEW],
            )
            return algorithms.screen_metrics(events)

        return await self._cached("screens", project_id, date_range, compute)

    # Retention and funnels

    async def get_retention_cohorts(
        self,
        project_id: str,
        cohort_range: DateRange,
        days: Optional[Sequence[int]] = None
    ) -> AggregationResult:
        """
        Day-N retention for each daily cohort in ``cohort_range``.

        A cohort is the users whose first event falls on the cohort day, and a
        user is retained on day N when they have any event during that whole
        day. Empty cohorts are left out of the result and of the averages.
        """
        offsets = sorted({int(d) for d in (days or self.default_retention_days)})
        if any(d <= 0 for d in offsets):
            raise InvalidParameterError("Retention days must be positive")

        async def compute() -> Dict[str, Any]:
            first_day = floor_to(cohort_range.start, Granularity.DAY)
            one_day = timedelta(days=1)

            cohorts = []
            day = first_day
            while day < cohort_range.end:
                first_seen = await self.store.first_seen_users(project_id, day, day + one_day)
                if first_seen:
                    active = await asyncio.gather(*(
                        self.store.active_users(
                            project_id,
                            day + timedelta(days=offset),
                            day + timedelta(days=offset + 1),
                        )
                        for offset in offsets
                    ))
                    cohort = algorithms.cohort_retention(
                        day.strftime("%Y-%m-%d"),
                        set(first_seen),
                        dict(zip(offsets, active)),
                        offsets,
                    )
                    if cohort is not None:
                        cohorts.append(cohort)
                day += one_day

            return {
                "cohorts": [c.to_dict() for c in cohorts],
                "overallRetention": algorithms.overall_retention(cohorts, offsets),
                "retentionDays": offsets,
            }

        return await self._cached(
            "retention", project_id, cohort_range, compute, {"days": offsets}
        )

    async def get_funnel(
        self,
        project_id: str,
        date_range: DateRange,
        steps: Sequence[str],
        time_window_hours: float = 24
    ) -> AggregationResult:
        """Ordered conversion funnel over ``steps``."""
        steps = [s for s in steps if s]
        if len(steps) < 2:
            raise InvalidParameterError("A funnel needs at least two steps")
        if time_window_hours <= 0:
            raise InvalidParameterError("timeWindow must be positive")

        async def compute() -> Dict[str, Any]:
            events = await self.store.find_events(
                project_id, date_range.start, date_range.end, event_types=steps
            )
            return algorithms.funnel_analysis(events, steps, time_window_hours).to_dict()

        params = {"steps": list(steps), "timeWindowHours": time_window_hours}
        return await self._cached("funnel", project_id, date_range, compute, params)

    # Raw listing

    async def get_events(
        self,
        project_id: str,
        date_range: DateRange,
        event_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> AggregationResult:
        """Page of raw events; never cached."""
        if limit <= 0 or offset < 0:
            raise InvalidParameterError("limit must be positive and offset non-negative")
        await self._require_project(project_id)

        events = await self.store.find_events(
            project_id,
            date_range.start,
            date_range.end,
            event_types=[event_type] if event_type else None,
            user_id=user_id,
            limit=limit,
            offset=offset,
        )
        data = {
            "events": [e.to_wire() for e in events],
            "limit": limit,
            "offset": offset,
            "range": {"start": iso(date_range.start), "end": iso(date_range.end)},
        }
        return AggregationResult(data=data, cached=False)
