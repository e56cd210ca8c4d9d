"""
Scheduled roll-ups of raw events into per-project metric hashes.

Nothing in here schedules itself. An external scheduler calls
``aggregate_hourly`` every hour, ``aggregate_daily`` once a day,
``generate_weekly_reports`` once a week and ``cleanup_old_data`` as often
as retention requires. A failure on one project is logged and the run
moves on to the next.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List, Any, Callable

from ..storage.adapters import EventQueryStore
from ..storage.cache import CacheStore
from ..utils.errors import InvalidParameterError
from ..utils.logging import get_logger
from ..utils.notifications import EventBus, EventCategory, get_event_bus
from .algorithms import SCREEN_VIEW, SESSION_START, top_events
from .models import Granularity, as_utc, floor_to, next_bucket, percent_change

logger = get_logger("usage-analytics.analytics.rollups")

METRICS_PREFIX = "analytics:metrics"
HOUR_TTL = 7 * 24 * 60 * 60
DAY_TTL = 90 * 24 * 60 * 60
WEEK_TTL = 90 * 24 * 60 * 60

_FIELDS = ("events", "users", "sessions", "screenViews")


@dataclass
class RollupResult:
    """Outcome of one scheduled run."""
    job: str
    period: str
    processed: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "period": self.period,
            "processed": self.processed,
            "failed": self.failed,
            "errors": dict(self.errors),
        }


def hour_label(value: datetime) -> str:
    return value.strftime("%Y-%m-%d-%H")


def day_label(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def week_label(value: datetime) -> str:
    year, week, _ = value.isocalendar()
    return f"{year}-W{week:02d}"


class MetricsAggregator:
    """Builds hourly, daily and weekly metric snapshots."""

    def __init__(
        self,
        store: EventQueryStore,
        cache: CacheStore,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.cache = cache
        self.event_bus = event_bus or get_event_bus()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) if now is not None else as_utc(self.clock())

    @staticmethod
    def key(granularity: str, project_id: str, label: str) -> str:
        return f"{METRICS_PREFIX}:{granularity}:{project_id}:{label}"

    async def _snapshot(self, project_id: str, start: datetime, end: datetime) -> Dict[str, int]:
        events, users, sessions, screen_views = await asyncio.gather(
            self.store.count_events(project_id, start, end),
            self.store.count_distinct_users(project_id, start, end),
            self.store.count_events(project_id, start, end, SESSION_START),
            self.store.count_events(project_id, start, end, SCREEN_VIEW),
        )
        return {
            "events": events,
            "users": users,
            "sessions": sessions,
            "screenViews": screen_views,
        }

    async def _for_each_project(self, result: RollupResult, handler) -> RollupResult:
        for project_id in await self.store.list_projects():
            try:
                await handler(project_id)
                result.processed += 1
            except Exception as e:
                result.failed += 1
                result.errors[project_id] = str(e)
                logger.error(
                    "rollup_project_failed",
                    job=result.job,
                    period=result.period,
                    project_id=project_id,
                    error=str(e),
                )
        logger.info(
            "rollup_complete",
            job=result.job,
            period=result.period,
            processed=result.processed,
            failed=result.failed,
        )
        return result

    async def aggregate_hourly(self, now: Optional[datetime] = None) -> RollupResult:
        """Roll up the previous full hour for every project."""
        end = floor_to(self._now(now), Granularity.HOUR)
        start = end - timedelta(hours=1)
        label = hour_label(start)

        async def handler(project_id: str) -> None:
            snapshot = await self._snapshot(project_id, start, end)
            key = self.key("hour", project_id, label)
            await self.cache.hset(key, snapshot)
            await self.cache.expire(key, HOUR_TTL)
            if snapshot["events"]:
                await self.cache.incrby(f"{METRICS_PREFIX}:total:events", snapshot["events"])

        return await self._for_each_project(RollupResult(job="hourly", period=label), handler)

    async def aggregate_daily(self, now: Optional[datetime] = None) -> RollupResult:
        """Roll up the previous full day, including that day's spend."""
        end = floor_to(self._now(now), Granularity.DAY)
        start = end - timedelta(days=1)
        label = day_label(start)

        async def handler(project_id: str) -> None:
            snapshot: Dict[str, Any] = await self._snapshot(project_id, start, end)
            costs = await self.cache.hgetall(f"analytics:costs:project:{project_id}:{label}")
            snapshot["costCents"] = int(costs.get("totalCents", 0))
            key = self.key("day", project_id, label)
            await self.cache.hset(key, snapshot)
            await self.cache.expire(key, DAY_TTL)

        return await self._for_each_project(RollupResult(job="daily", period=label), handler)

    async def generate_weekly_reports(self, now: Optional[datetime] = None) -> RollupResult:
        """Summarise the previous ISO week (Monday to Monday) per project."""
        today = floor_to(self._now(now), Granularity.DAY)
        end = today - timedelta(days=today.weekday())
        start = end - timedelta(days=7)
        label = week_label(start)

        async def handler(project_id: str) -> None:
            snapshot = await self._snapshot(project_id, start, end)
            key = self.key("week", project_id, label)
            await self.cache.hset(key, snapshot)
            await self.cache.expire(key, WEEK_TTL)

            events = await self.store.find_events(project_id, start, end)
            await self.event_bus.emit(
                "weekly_report_generated",
                EventCategory.ANALYTICS,
                {
                    "projectId": project_id,
                    "week": label,
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                    "metrics": snapshot,
                    "topEvents": top_events(events, 5),
                },
                source="metrics_aggregator",
            )

        return await self._for_each_project(RollupResult(job="weekly", period=label), handler)

    async def cleanup_old_data(self, days: int = 90, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Delete raw events older than ``days`` and the roll-ups for the cutoff day."""
        if days <= 0:
            raise InvalidParameterError("days must be positive")
        cutoff = self._now(now) - timedelta(days=days)

        deleted_events = await self.store.delete_events_before(cutoff)
        stale_keys = await self.cache.keys(f"{METRICS_PREFIX}:*:{day_label(cutoff)}*")
        deleted_keys = await self.cache.delete(*stale_keys) if stale_keys else 0

        logger.info(
            "old_data_cleaned",
            cutoff=cutoff.isoformat(),
            deleted_events=deleted_events,
            deleted_keys=deleted_keys,
        )
        return {
            "cutoff": cutoff.isoformat(),
            "deletedEvents": deleted_events,
            "deletedKeys": deleted_keys,
        }

    async def get_metrics_range(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
        interval: str = "day"
    ) -> List[Dict[str, Any]]:
        """Stored roll-ups for every hour or day in ``[start, end)``; missing ones read as zero."""
        if interval not in ("hour", "day"):
            raise InvalidParameterError("interval must be 'hour' or 'day'")
        granularity = Granularity(interval)
        label_for = hour_label if interval == "hour" else day_label

        points = []
        bucket = floor_to(start, granularity)
        end = as_utc(end)
        while bucket < end:
            label = label_for(bucket)
            data = await self.cache.hgetall(self.key(interval, project_id, label))
            point: Dict[str, Any] = {"timestamp": label}
            point.update({name: int(data.get(name, 0)) for name in _FIELDS})
            if interval == "day":
                point["costCents"] = int(data.get("costCents", 0))
            points.append(point)
            bucket = next_bucket(bucket, granularity)
        return points

    async def get_dashboard_metrics(self, project_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Last 24 hours against the 24 hours before, from hourly roll-ups."""
        end = floor_to(self._now(now), Granularity.HOUR)
        last_day = await self.get_metrics_range(project_id, end - timedelta(hours=24), end, "hour")
        previous_day = await self.get_metrics_range(
            project_id, end - timedelta(hours=48), end - timedelta(hours=24), "hour"
        )

        recent = {name: sum(p[name] for p in last_day) for name in ("events", "sessions", "screenViews")}
        prior = {name: sum(p[name] for p in previous_day) for name in ("events", "sessions", "screenViews")}
        users_recent, users_prior = await asyncio.gather(
            self.store.count_distinct_users(project_id, end - timedelta(hours=24), end),
            self.store.count_distinct_users(
                project_id, end - timedelta(hours=48), end - timedelta(hours=24)
            ),
        )
        total_events = await self.cache.get(f"{METRICS_PREFIX}:total:events")

        return {
            "projectId": project_id,
            "overview": {"totalEventsAllProjects": int(total_events or 0)},
            "recentActivity": dict(recent, users=users_recent),
            "trends": {
                "eventsChange": percent_change(recent["events"], prior["events"]),
                "sessionsChange": percent_change(recent["sessions"], prior["sessions"]),
                "screenViewsChange": percent_change(recent["screenViews"], prior["screenViews"]),
                "usersChange": percent_change(users_recent, users_prior),
            },
            "hourly": last_day,
        }
