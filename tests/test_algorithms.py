"""
Tests for pure metric computations.
"""

import pytest
from datetime import datetime, timedelta, timezone

from usage_analytics.analytics.algorithms import (
    cohort_retention,
    device_counts,
    funnel_analysis,
    group_by_granularity,
    overall_retention,
    screen_metrics,
    session_metrics,
    top_events,
    top_screens,
)
from usage_analytics.analytics.models import (
    DateRange,
    Granularity,
    bucket_label,
    floor_to,
    iso,
    next_bucket,
    parse_datetime,
    percent_change,
    round2,
)
from usage_analytics.events.schema import Platform
from usage_analytics.utils.errors import InvalidDateRangeError, InvalidParameterError

from tests.fixtures.event_fixtures import EventFixtures, FIXED_NOW

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestModels:
    """Date ranges, buckets and rounding."""

    def test_range_must_be_ordered(self):
        with pytest.raises(InvalidDateRangeError) as exc_info:
            DateRange(T0, T0)
        assert exc_info.value.message == "Start date must be before end date"

    def test_naive_bounds_are_utc(self):
        r = DateRange(datetime(2024, 3, 1), datetime(2024, 3, 2))
        assert r.start.tzinfo is not None
        assert r.duration == timedelta(days=1)

    def test_previous_range(self):
        r = DateRange(T0, T0 + timedelta(days=7))
        prev = r.previous()
        assert prev.end == r.start
        assert prev.duration == r.duration

    def test_range_key_is_stable(self):
        r = DateRange(T0, T0 + timedelta(days=1), Granularity.HOUR)
        assert r.key() == "2024-03-01T09:00:00.000Z_2024-03-02T09:00:00.000Z_hour"
        assert iso(T0) == "2024-03-01T09:00:00.000Z"

    @pytest.mark.parametrize("value,expected", [
        (1.005, 1.01),
        (2.675, 2.68),
        (-1.005, -1.01),
        (33.333333, 33.33),
    ])
    def test_round_half_away_from_zero(self, value, expected):
        assert round2(value) == expected

    def test_percent_change(self):
        assert percent_change(150, 100) == 50.0
        assert percent_change(50, 100) == -50.0
        assert percent_change(5, 0) == 100.0
        assert percent_change(0, 0) == 0.0

    def test_week_starts_sunday(self):
        # 2024-03-13 is a Wednesday
        wednesday = datetime(2024, 3, 13, 15, tzinfo=timezone.utc)
        assert floor_to(wednesday, Granularity.WEEK) == datetime(2024, 3, 10, tzinfo=timezone.utc)

    def test_month_rollover(self):
        december = floor_to(datetime(2023, 12, 20, tzinfo=timezone.utc), Granularity.MONTH)
        assert next_bucket(december, Granularity.MONTH) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_bucket_labels(self):
        assert bucket_label(T0, Granularity.HOUR) == "2024-03-01T09"
        assert bucket_label(T0, Granularity.DAY) == "2024-03-01"
        assert bucket_label(T0, Granularity.MONTH) == "2024-03"

    def test_parse_datetime(self):
        assert parse_datetime("2024-03-01T09:00:00Z", "start") == T0
        with pytest.raises(InvalidParameterError):
            parse_datetime("yesterday", "start")
        with pytest.raises(InvalidParameterError):
            parse_datetime(None, "start")


class TestRetention:
    """Cohort retention math."""

    def test_cohort_retention(self):
        cohort = {f"u{i}" for i in range(10)}
        active = {1: {"u0", "u1", "u2", "u3", "stranger"}, 7: {"u0"}}
        result = cohort_retention("2024-03-01", cohort, active, [1, 7, 30])

        assert result.cohort_size == 10
        assert result.retention == {"day0": 100.0, "day1": 40.0, "day7": 10.0, "day30": 0.0}
        assert result.to_dict()["cohortDate"] == "2024-03-01"

    def test_empty_cohort_is_skipped(self):
        assert cohort_retention("2024-03-01", set(), {}, [1]) is None

    def test_overall_is_mean_of_cohorts(self):
        a = cohort_retention("2024-03-01", {"a", "b"}, {1: {"a"}}, [1])
        b = cohort_retention("2024-03-02", {"c", "d", "e"}, {1: set()}, [1])
        assert overall_retention([a, b], [1]) == {"day1": 25.0}
        assert overall_retention([], [1, 7]) == {"day1": 0.0, "day7": 0.0}


class TestFunnel:
    """Ordered funnel with a time window."""

    def _events(self):
        return [
            EventFixtures.create_event("app_open", "u1", timestamp=T0),
            EventFixtures.create_event("signup", "u1", timestamp=T0 + timedelta(hours=1)),
            EventFixtures.create_event("app_open", "u2", timestamp=T0),
            EventFixtures.create_event("signup", "u2", timestamp=T0 + timedelta(minutes=10)),
            EventFixtures.create_event("app_open", "u3", timestamp=T0),
            # Signup without the entry step does not count
            EventFixtures.create_event("signup", "u4", timestamp=T0),
            EventFixtures.create_event("signup", None, timestamp=T0),
        ]

    def test_funnel_within_window(self):
        report = funnel_analysis(self._events(), ["app_open", "signup"], 24)
        payload = report.to_dict()

        assert [s["users"] for s in payload["funnel"]] == [3, 2]
        assert payload["funnel"][0]["conversionRate"] == 100.0
        assert payload["funnel"][1]["conversionRate"] == 66.67
        assert payload["funnel"][1]["dropoffRate"] == 33.33
        assert payload["funnel"][1]["avgTimeFromPrevious"] == 2100
        assert payload["totalEntries"] == 3
        assert payload["conversionRate"] == 66.67
        assert payload["dropoffPoints"] == [
            {"fromStep": "app_open", "toStep": "signup", "dropoffRate": 33.33}
        ]

    def test_window_excludes_slow_users(self):
        report = funnel_analysis(self._events(), ["app_open", "signup"], 0.5)
        assert report.steps[1].users == 1
        assert report.conversion_rate == 33.33

    def test_first_occurrence_is_used(self):
        events = [
            EventFixtures.create_event("app_open", "u1", timestamp=T0),
            EventFixtures.create_event("app_open", "u1", timestamp=T0 + timedelta(days=2)),
            EventFixtures.create_event("signup", "u1", timestamp=T0 + timedelta(days=2, minutes=1)),
        ]
        assert funnel_analysis(events, ["app_open", "signup"], 24).steps[1].users == 0

    def test_empty_funnel(self):
        report = funnel_analysis([], ["a", "b"])
        assert report.total_entries == 0
        assert report.conversion_rate == 0.0
        assert [s.users for s in report.steps] == [0, 0]


class TestSessions:
    def test_session_metrics(self):
        events = [
            EventFixtures.create_event("session_start", "u1", properties={"duration": 10},
                                       timestamp=T0),
            EventFixtures.create_event("session_start", "u1", properties={"duration": 30},
                                       timestamp=T0 + timedelta(hours=1)),
            EventFixtures.create_event("session_start", "u2", properties={"duration": 20},
                                       timestamp=T0 + timedelta(days=1)),
            EventFixtures.create_event("session_start", "u2", properties={"duration": 0},
                                       timestamp=T0 + timedelta(days=1)),
            EventFixtures.create_event("screen_view", "u3", timestamp=T0),
        ]
        metrics = session_metrics(events)

        assert metrics["totalSessions"] == 4
        assert metrics["avgSessionDuration"] == 20.0
        assert metrics["medianSessionDuration"] == 20
        assert metrics["sessionsPerUser"] == 2.0
        assert metrics["sessionsByHour"][9] == {"hour": 9, "count": 3}
        assert metrics["sessionsByDay"] == [
            {"day": "2024-03-01", "count": 2},
            {"day": "2024-03-02", "count": 2},
        ]

    def test_no_sessions(self):
        metrics = session_metrics([])
        assert metrics["medianSessionDuration"] == 0
        assert metrics["sessionsPerUser"] == 0


class TestScreens:
    def test_screen_metrics(self):
        events = [
            EventFixtures.create_event("screen_view", "u1", "s1", T0,
                                       properties={"screen": "home", "timeOnScreen": 4}),
            EventFixtures.create_event("screen_view", "u1", "s1", T0 + timedelta(seconds=5),
                                       properties={"screen": "detail", "timeOnScreen": 10}),
            EventFixtures.create_event("screen_view", "u2", "s2", T0,
                                       properties={"screen": "home", "timeOnScreen": 2}),
        ]
        result = screen_metrics(events)
        home, detail = result["screens"]

        assert result["totalViews"] == 3
        assert result["uniqueScreens"] == 2
        assert home["screen"] == "home"
        assert home["entrances"] == 2
        assert home["bounceRate"] == 50.0
        assert home["avgTimeOnScreen"] == 3.0
        assert home["uniqueUsers"] == 2
        assert detail["exits"] == 1
        assert detail["bounceRate"] == 0.0

    def test_top_lists(self):
        events = [
            EventFixtures.create_event("screen_view", properties={"screen": "home"}),
            EventFixtures.create_event("screen_view", properties={"screen": "home"}),
            EventFixtures.create_event("screen_view", properties={"screen": "cart"}),
            EventFixtures.create_event("purchase"),
        ]
        assert top_screens(events) == [
            {"screen": "home", "views": 2},
            {"screen": "cart", "views": 1},
        ]
        assert top_events(events, limit=1) == [{"event": "screen_view", "count": 3}]


class TestDevicesAndGrouping:
    def test_device_counts_by_first_event(self):
        events = [
            EventFixtures.create_event(user_id="u1", timestamp=T0, platform=Platform.IOS),
            EventFixtures.create_event(user_id="u1", timestamp=T0 + timedelta(hours=1),
                                       platform=Platform.WEB),
            EventFixtures.create_event(user_id="u2", timestamp=T0, platform=Platform.ANDROID),
            EventFixtures.create_event(user_id="u3", timestamp=T0),
        ]
        assert device_counts(events) == {"ios": 1, "android": 1, "web": 0}

    def test_group_by_day(self):
        events = [
            EventFixtures.create_event(timestamp=T0),
            EventFixtures.create_event(timestamp=T0 + timedelta(hours=2)),
            EventFixtures.create_event(timestamp=FIXED_NOW),
        ]
        assert group_by_granularity(events, Granularity.DAY) == [
            {"timestamp": "2024-03-01", "value": 2},
            {"timestamp": "2024-03-15", "value": 1},
        ]
