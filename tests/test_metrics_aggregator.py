"""
Tests for scheduled metric roll-ups.
"""

import pytest
from datetime import datetime, timedelta, timezone

from usage_analytics.analytics.metrics_aggregator import MetricsAggregator, week_label
from usage_analytics.utils.errors import InvalidParameterError
from usage_analytics.utils.notifications import EventCategory

from tests.fixtures.event_fixtures import EventFixtures, FIXED_NOW, PROJECT_ID

HOUR_START = datetime(2024, 3, 15, 11, tzinfo=timezone.utc)


class FailingProjectStore:
    """Wraps a store and fails every query for one project."""

    def __init__(self, inner, bad_project):
        self.inner = inner
        self.bad_project = bad_project

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        async def call(*args, **kwargs):
            if args and args[0] == self.bad_project:
                raise RuntimeError("query failed")
            return await attr(*args, **kwargs)
        return call


@pytest.fixture
def aggregator(project_storage, cache, event_bus, clock):
    return MetricsAggregator(project_storage, cache, event_bus=event_bus, clock=clock)


class TestHourly:
    async def test_previous_hour_rollup(self, aggregator, project_storage, cache):
        await project_storage.write_events([
            EventFixtures.create_event("session_start", "u1", timestamp=HOUR_START),
            EventFixtures.create_event("screen_view", "u1", timestamp=HOUR_START + timedelta(minutes=5)),
            EventFixtures.create_event("screen_view", "u2", timestamp=HOUR_START + timedelta(minutes=59)),
            # Current hour is not rolled up yet
            EventFixtures.create_event("screen_view", "u3", timestamp=FIXED_NOW),
        ])

        result = await aggregator.aggregate_hourly()

        assert result.period == "2024-03-15-11"
        assert result.processed == 1
        assert result.failed == 0
        key = "analytics:metrics:hour:proj-1:2024-03-15-11"
        assert await cache.hgetall(key) == {
            "events": "3", "users": "2", "sessions": "1", "screenViews": "2"
        }
        assert await cache.get("analytics:metrics:total:events") == "3"
        assert cache.ttl(key) is not None

    async def test_one_failing_project_does_not_stop_the_run(self, project_storage, cache, event_bus):
        await project_storage.register_project("proj-2")
        aggregator = MetricsAggregator(
            FailingProjectStore(project_storage, "proj-2"), cache, event_bus=event_bus,
        )

        result = await aggregator.aggregate_hourly(FIXED_NOW)

        assert result.processed == 1
        assert result.failed == 1
        assert "proj-2" in result.errors
        assert result.to_dict()["job"] == "hourly"


class TestDailyAndWeekly:
    async def test_daily_includes_costs(self, aggregator, project_storage, cache):
        yesterday = datetime(2024, 3, 14, 10, tzinfo=timezone.utc)
        await project_storage.write_events([EventFixtures.create_event(timestamp=yesterday)])
        await cache.hincrby("analytics:costs:project:proj-1:2024-03-14", "totalCents", 250)

        result = await aggregator.aggregate_daily()

        assert result.period == "2024-03-14"
        values = await cache.hgetall("analytics:metrics:day:proj-1:2024-03-14")
        assert values["events"] == "1"
        assert values["costCents"] == "250"

    def test_week_label_is_iso(self):
        assert week_label(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-W01"
        assert week_label(datetime(2024, 12, 30, tzinfo=timezone.utc)) == "2025-W01"

    async def test_weekly_report(self, aggregator, project_storage, cache, event_bus):
        # FIXED_NOW is Friday 2024-03-15; the previous ISO week is Mar 4 to Mar 11
        await project_storage.write_events([
            EventFixtures.create_event("purchase", timestamp=datetime(2024, 3, 5, tzinfo=timezone.utc)),
            EventFixtures.create_event("purchase", timestamp=datetime(2024, 3, 10, 23, tzinfo=timezone.utc)),
            EventFixtures.create_event("purchase", timestamp=datetime(2024, 3, 11, 1, tzinfo=timezone.utc)),
        ])

        result = await aggregator.generate_weekly_reports()

        assert result.period == "2024-W10"
        values = await cache.hgetall("analytics:metrics:week:proj-1:2024-W10")
        assert values["events"] == "2"

        reports = event_bus.get_history(EventCategory.ANALYTICS, "weekly_report_generated")
        assert len(reports) == 1
        assert reports[0].data["projectId"] == PROJECT_ID
        assert reports[0].data["topEvents"] == [{"event": "purchase", "count": 2}]


class TestCleanupAndQueries:
    async def test_cleanup_old_data(self, aggregator, project_storage, cache):
        old = FIXED_NOW - timedelta(days=91)
        await project_storage.write_events([
            EventFixtures.create_event(timestamp=old),
            EventFixtures.create_event(timestamp=FIXED_NOW),
        ])
        cutoff_label = (FIXED_NOW - timedelta(days=90)).strftime("%Y-%m-%d")
        await cache.hset(f"analytics:metrics:day:proj-1:{cutoff_label}", {"events": 1})
        await cache.hset(f"analytics:metrics:hour:proj-1:{cutoff_label}-05", {"events": 1})

        result = await aggregator.cleanup_old_data(90)

        assert result["deletedEvents"] == 1
        assert result["deletedKeys"] == 2
        assert len(project_storage.get_events()) == 1

    async def test_cleanup_requires_positive_days(self, aggregator):
        with pytest.raises(InvalidParameterError):
            await aggregator.cleanup_old_data(0)

    async def test_metrics_range_fills_gaps(self, aggregator, cache):
        await cache.hset("analytics:metrics:day:proj-1:2024-03-02", {"events": 7, "costCents": 12})

        points = await aggregator.get_metrics_range(
            PROJECT_ID,
            datetime(2024, 3, 1, tzinfo=timezone.utc),
            datetime(2024, 3, 4, tzinfo=timezone.utc),
        )

        assert [p["timestamp"] for p in points] == ["2024-03-01", "2024-03-02", "2024-03-03"]
        assert points[0]["events"] == 0
        assert points[1]["events"] == 7
        assert points[1]["costCents"] == 12

    async def test_metrics_range_interval(self, aggregator):
        with pytest.raises(InvalidParameterError):
            await aggregator.get_metrics_range(PROJECT_ID, FIXED_NOW, FIXED_NOW, "week")

    async def test_dashboard_metrics(self, aggregator, project_storage):
        await project_storage.write_events([
            EventFixtures.create_event(user_id="u1", timestamp=HOUR_START),
            EventFixtures.create_event(user_id="u2", timestamp=HOUR_START - timedelta(hours=30)),
        ])
        await aggregator.aggregate_hourly()

        dashboard = await aggregator.get_dashboard_metrics(PROJECT_ID)

        assert dashboard["recentActivity"]["events"] == 1
        assert dashboard["recentActivity"]["users"] == 1
        assert dashboard["trends"]["eventsChange"] == 100.0
        assert dashboard["trends"]["usersChange"] == 0.0
        assert dashboard["overview"]["totalEventsAllProjects"] == 1
        assert len(dashboard["hourly"]) == 24
