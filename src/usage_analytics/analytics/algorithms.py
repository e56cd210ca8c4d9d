"""
Pure metric computations over event lists.

Nothing here touches storage or the cache, so every result can be
recomputed from raw events at any time and compared against a cached copy.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Iterable, Sequence, Set, Any, Optional

from ..events.schema import EnrichedEvent
from .models import round2, round_int, Granularity, floor_to, bucket_label

SESSION_START = "session_start"
SCREEN_VIEW = "screen_view"


@dataclass
class RetentionCohort:
    """Retention of the users first seen on one day."""
    cohort_date: str
    cohort_size: int
    retention: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cohortDate": self.cohort_date,
            "cohortSize": self.cohort_size,
            "retention": dict(self.retention),
        }


def cohort_retention(
    cohort_date: str,
    cohort: Set[str],
    active_by_offset: Dict[int, Set[str]],
    days: Sequence[int]
) -> Optional[RetentionCohort]:
    """Retention percentages for one cohort; None for an empty cohort."""
    if not cohort:
        return None
    retention: Dict[str, float] = {"day0": 100.0}
    for day in days:
        returned = cohort & active_by_offset.get(day, set())
        retention[f"day{day}"] = round2(len(returned) / len(cohort) * 100)
    return RetentionCohort(cohort_date=cohort_date, cohort_size=len(cohort), retention=retention)


def overall_retention(cohorts: Sequence[RetentionCohort], days: Sequence[int]) -> Dict[str, float]:
    """Arithmetic mean per offset across the included cohorts."""
    overall: Dict[str, float] = {}
    for day in days:
        key = f"day{day}"
        if cohorts:
            overall[key] = round2(sum(c.retention[key] for c in cohorts) / len(cohorts))
        else:
            overall[key] = 0.0
    return overall


@dataclass
class FunnelStep:
    """One ordered funnel step."""
    step: str
    event_name: str
    users: int
    conversion_rate: float
    dropoff_rate: float
    avg_time_from_previous: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "eventName": self.event_name,
            "users": self.users,
            "conversionRate": self.conversion_rate,
            "dropoffRate": self.dropoff_rate,
            "avgTimeFromPrevious": self.avg_time_from_previous,
        }


@dataclass
class FunnelReport:
    steps: List[FunnelStep] = field(default_factory=list)
    total_entries: int = 0
    conversion_rate: float = 0.0
    avg_time_to_complete: int = 0
    dropoff_points: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "funnel": [s.to_dict() for s in self.steps],
            "totalEntries": self.total_entries,
            "conversionRate": self.conversion_rate,
            "avgTimeToComplete": self.avg_time_to_complete,
            "dropoffPoints": list(self.dropoff_points),
        }


def funnel_analysis(
    events: Iterable[EnrichedEvent],
    steps: Sequence[str],
    time_window_hours: float = 24
) -> FunnelReport:
    """
    Compute a funnel over ``steps`` from raw events.

    Each user's first occurrence of every step event is used. For step i > 0
    the user counts when both the step i and step i-1 events exist and the
    step i-1 event happened no more than ``time_window_hours`` before the
    step i event. Rates are relative to the previous step's user count.
    """
    first_seen: Dict[str, Dict[str, datetime]] = defaultdict(dict)
    step_names = set(steps)
    for event in sorted(events, key=lambda e: (e.timestamp, e.event_id)):
        if not event.user_id or event.type not in step_names:
            continue
        first_seen[event.user_id].setdefault(event.type, event.timestamp)

    window_seconds = time_window_hours * 3600
    report = FunnelReport()
    previous_users = 0

    for index, step_event in enumerate(steps):
        users_in_step: Set[str] = set()
        latencies: List[float] = []

        for user_id, times in first_seen.items():
            if step_event not in times:
                continue
            if index > 0:
                prev_time = times.get(steps[index - 1])
                if prev_time is None:
                    continue
                elapsed = (times[step_event] - prev_time).total_seconds()
                if elapsed < 0 or elapsed > window_seconds:
                    continue
                latencies.append(elapsed)
            users_in_step.add(user_id)

        users = len(users_in_step)
        base = users if index == 0 else previous_users
        conversion = users / base * 100 if base > 0 else 0.0
        dropoff = (base - users) / base * 100 if base > 0 else 0.0
        avg_latency = sum(latencies) / len(latencies) if latencies else 0.0

        report.steps.append(FunnelStep(
            step=f"Step {index + 1}",
            event_name=step_event,
            users=users,
            conversion_rate=round2(conversion),
            dropoff_rate=round2(dropoff),
            avg_time_from_previous=round_int(avg_latency),
        ))
        previous_users = users

    if report.steps:
        report.total_entries = report.steps[0].users
        final_users = report.steps[-1].users
        report.conversion_rate = (
            round2(final_users / report.total_entries * 100) if report.total_entries else 0.0
        )
        report.avg_time_to_complete = sum(s.avg_time_from_previous for s in report.steps)
        report.dropoff_points = [
            {
                "fromStep": step.event_name,
                "toStep": report.steps[i + 1].event_name,
                "dropoffRate": report.steps[i + 1].dropoff_rate,
            }
            for i, step in enumerate(report.steps[:-1])
        ]
    return report


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def session_durations(events: Iterable[EnrichedEvent]) -> List[float]:
    """Positive ``duration`` values carried by session_start events."""
    return [
        d for d in (_number(e.properties.get("duration")) for e in events if e.type == SESSION_START)
        if d > 0
    ]


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def session_metrics(events: Sequence[EnrichedEvent]) -> Dict[str, Any]:
    """Session statistics from session_start events."""
    sessions = [e for e in events if e.type == SESSION_START]
    durations = sorted(session_durations(sessions))
    users = {e.user_id for e in sessions if e.user_id}

    by_hour = [0] * 24
    by_day: Dict[str, int] = defaultdict(int)
    for event in sessions:
        by_hour[event.timestamp.hour] += 1
        by_day[event.timestamp.strftime("%Y-%m-%d")] += 1

    return {
        "totalSessions": len(sessions),
        "avgSessionDuration": mean(durations),
        "medianSessionDuration": durations[len(durations) // 2] if durations else 0,
        "sessionsPerUser": len(sessions) / len(users) if users else 0,
        "sessionsByHour": [{"hour": h, "count": c} for h, c in enumerate(by_hour)],
        "sessionsByDay": [{"day": d, "count": by_day[d]} for d in sorted(by_day)],
    }


def screen_name(event: EnrichedEvent) -> str:
    return str(event.properties.get("screen") or "unknown")


def screen_metrics(events: Sequence[EnrichedEvent]) -> Dict[str, Any]:
    """
    Per-screen statistics from screen_view events.

    Within a session, the first screen viewed is an entrance, the last is an
    exit, and a session with a single screen view bounces on that screen.
    ``bounceRate`` is bounces over entrances, in percent.
    """
    views = [e for e in events if e.type == SCREEN_VIEW]
    stats: Dict[str, Dict[str, Any]] = {}
    for event in views:
        name = screen_name(event)
        entry = stats.setdefault(name, {
            "views": 0, "users": set(), "total_time": 0.0,
            "entrances": 0, "exits": 0, "bounces": 0,
        })
        entry["views"] += 1
        if event.user_id:
            entry["users"].add(event.user_id)
        entry["total_time"] += _number(event.properties.get("timeOnScreen"))

    by_session: Dict[str, List[EnrichedEvent]] = defaultdict(list)
    for event in views:
        by_session[event.session_id].append(event)
    for session_views in by_session.values():
        session_views.sort(key=lambda e: (e.timestamp, e.event_id))
        stats[screen_name(session_views[0])]["entrances"] += 1
        stats[screen_name(session_views[-1])]["exits"] += 1
        if len(session_views) == 1:
            stats[screen_name(session_views[0])]["bounces"] += 1

    screens = [
        {
            "screen": name,
            "views": entry["views"],
            "uniqueUsers": len(entry["users"]),
            "avgTimeOnScreen": entry["total_time"] / entry["views"] if entry["views"] else 0,
            "bounceRate": round2(entry["bounces"] / entry["entrances"] * 100) if entry["entrances"] else 0.0,
            "entrances": entry["entrances"],
            "exits": entry["exits"],
        }
        for name, entry in stats.items()
    ]
    screens.sort(key=lambda s: (-s["views"], s["screen"]))
    return {
        "screens": screens,
        "totalViews": len(views),
        "uniqueScreens": len(stats),
    }


def top_screens(events: Sequence[EnrichedEvent], limit: int = 5) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = defaultdict(int)
    for event in events:
        if event.type == SCREEN_VIEW:
            counts[screen_name(event)] += 1
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [{"screen": name, "views": views} for name, views in ranked[:limit]]


def top_events(events: Sequence[EnrichedEvent], limit: int = 5) -> List[Dict[str, Any]]:
    counts: Dict[str, int] = defaultdict(int)
    for event in events:
        counts[event.type] += 1
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [{"event": name, "count": count} for name, count in ranked[:limit]]


def device_counts(events: Sequence[EnrichedEvent]) -> Dict[str, int]:
    """Distinct users per device platform, by each user's first event with a device."""
    platforms: Dict[str, str] = {}
    for event in sorted(events, key=lambda e: (e.timestamp, e.event_id)):
        if event.user_id and event.device and event.user_id not in platforms:
            platforms[event.user_id] = event.device.platform.value
    counts = {"ios": 0, "android": 0, "web": 0}
    for platform in platforms.values():
        counts[platform] = counts.get(platform, 0) + 1
    return counts


def group_by_granularity(events: Iterable[EnrichedEvent], granularity: Granularity) -> List[Dict[str, Any]]:
    """Event counts per bucket, sorted by bucket label."""
    grouped: Dict[str, int] = defaultdict(int)
    for event in events:
        grouped[bucket_label(floor_to(event.timestamp, granularity), granularity)] += 1
    return [{"timestamp": key, "value": grouped[key]} for key in sorted(grouped)]
