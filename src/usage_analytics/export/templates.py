"""
Report templates.

Each supported report type registers three functions: a data fetch against
the aggregation engine, a tabular layout (CSV/XLSX) and a document layout
(PDF). Adding a report type means adding one ``ReportTemplate`` here; the
export state machine never changes.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..analytics.aggregations import AggregationEngine
from ..analytics.models import DateRange, Granularity
from ..utils.errors import ExportTooLargeError, InvalidParameterError
from .models import ExportRecord, ReportType


@dataclass
class TabularData:
    """Rows keyed by header."""
    headers: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class DocumentSection:
    """One titled block of a document; ``kind`` is metrics, table or text."""
    title: str
    kind: str
    content: Any


@dataclass
class Document:
    title: str
    subtitle: str
    sections: List[DocumentSection] = field(default_factory=list)
    footer: Optional[str] = None


Fetch = Callable[[AggregationEngine, ExportRecord, int], Awaitable[Dict[str, Any]]]


@dataclass
class ReportTemplate:
    report_type: ReportType
    fetch: Fetch
    tabular: Callable[[Dict[str, Any]], TabularData]
    document: Callable[[Dict[str, Any], ExportRecord], Document]


def _range(record: ExportRecord, granularity: Granularity = Granularity.DAY) -> DateRange:
    return DateRange(record.date_range.start, record.date_range.end, granularity)


def _subtitle(record: ExportRecord) -> str:
    return (
        f"{record.date_range.start.strftime('%Y-%m-%d')} - "
        f"{record.date_range.end.strftime('%Y-%m-%d')}"
    )


def _footer(extra: Optional[str] = None) -> str:
    generated = f"Generated on {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}"
    return f"{generated} | {extra}" if extra else generated


def _change(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value:.2f}%"


# Overview

async def fetch_overview(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    return (await engine.get_overview(record.project_id, _range(record))).data


def overview_tabular(data: Dict[str, Any]) -> TabularData:
    summary, trends, insights = data["summary"], data["trends"], data["insights"]
    table = TabularData(headers=["Metric", "Value", "Change"])
    table.rows = [
        {"Metric": "Daily Active Users", "Value": summary["dailyActiveUsers"], "Change": _change(trends["dauChange"])},
        {"Metric": "Monthly Active Users", "Value": summary["monthlyActiveUsers"], "Change": _change(trends["mauChange"])},
        {"Metric": "Total Sessions", "Value": summary["totalSessions"], "Change": _change(trends["sessionsChange"])},
        {"Metric": "Total Screen Views", "Value": summary["totalScreenViews"], "Change": _change(trends["screenViewsChange"])},
        {"Metric": "Avg Session Duration (seconds)", "Value": f"{summary['avgSessionDuration']:.2f}", "Change": "-"},
        {"Metric": "7-Day Retention Rate", "Value": f"{summary['retentionRate7Day']:.2f}%", "Change": "-"},
        {"Metric": "30-Day Retention Rate", "Value": f"{summary['retentionRate30Day']:.2f}%", "Change": "-"},
    ]
    table.rows.append({"Metric": "Top Screens", "Value": "", "Change": ""})
    for i, screen in enumerate(insights["topScreens"], 1):
        table.rows.append({"Metric": f"{i}. {screen['screen']}", "Value": screen["views"], "Change": ""})
    table.rows.append({"Metric": "Top Events", "Value": "", "Change": ""})
    for i, event in enumerate(insights["topEvents"], 1):
        table.rows.append({"Metric": f"{i}. {event['event']}", "Value": event["count"], "Change": ""})
    table.rows.append({"Metric": "Device Distribution", "Value": "", "Change": ""})
    for platform, count in insights["activeDevices"].items():
        table.rows.append({"Metric": f"{platform} users", "Value": count, "Change": ""})
    return table


def overview_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    summary, trends, insights = data["summary"], data["trends"], data["insights"]
    return Document(
        title="Analytics Overview Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Summary Metrics", "metrics", [
                {"label": "Daily Active Users", "value": summary["dailyActiveUsers"], "change": trends["dauChange"]},
                {"label": "Monthly Active Users", "value": summary["monthlyActiveUsers"], "change": trends["mauChange"]},
                {"label": "Total Sessions", "value": summary["totalSessions"], "change": trends["sessionsChange"]},
                {"label": "Total Screen Views", "value": summary["totalScreenViews"], "change": trends["screenViewsChange"]},
            ]),
            DocumentSection("Engagement Metrics", "table", {
                "headers": ["Metric", "Value"],
                "rows": [
                    ["Avg Session Duration", f"{summary['avgSessionDuration']:.2f}s"],
                    ["7-Day Retention", f"{summary['retentionRate7Day']:.2f}%"],
                    ["30-Day Retention", f"{summary['retentionRate30Day']:.2f}%"],
                ],
            }),
            DocumentSection("Top Screens", "table", {
                "headers": ["Screen", "Views"],
                "rows": [[s["screen"], str(s["views"])] for s in insights["topScreens"]],
            }),
            DocumentSection("Top Events", "table", {
                "headers": ["Event", "Count"],
                "rows": [[e["event"], str(e["count"])] for e in insights["topEvents"]],
            }),
        ],
        footer=_footer(),
    )


# Events

async def fetch_events(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    filters = record.filters
    event_types = filters.event_types if filters else None
    user_id = filters.user_id if filters else None

    events = await engine.store.find_events(
        record.project_id,
        record.date_range.start,
        record.date_range.end,
        event_types=event_types,
        user_id=user_id,
        limit=max_rows + 1,
    )
    if len(events) > max_rows:
        raise ExportTooLargeError(f"Export exceeds the maximum of {max_rows} rows")
    return {
        "events": [e.to_wire() for e in events],
        "totalCount": len(events),
        "uniqueUsers": len({e.user_id for e in events if e.user_id}),
    }


def events_tabular(data: Dict[str, Any]) -> TabularData:
    return TabularData(
        headers=["Event ID", "Event", "User ID", "Session ID", "Timestamp", "Properties"],
        rows=[
            {
                "Event ID": e["eventId"],
                "Event": e["type"],
                "User ID": e.get("userId") or "Anonymous",
                "Session ID": e["sessionId"],
                "Timestamp": e["timestamp"],
                "Properties": json.dumps(e.get("properties", {}), sort_keys=True),
            }
            for e in data["events"]
        ],
    )


def events_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    return Document(
        title="Events Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Summary", "metrics", [
                {"label": "Total Events", "value": data["totalCount"]},
                {"label": "Unique Users", "value": data["uniqueUsers"]},
            ]),
            DocumentSection("Event List", "table", {
                "headers": ["Event", "User ID", "Timestamp"],
                "rows": [
                    [e["type"], e.get("userId") or "Anonymous", e["timestamp"]]
                    for e in data["events"][:100]
                ],
            }),
        ],
        footer=_footer("Showing first 100 events"),
    )


# Screens

async def fetch_screens(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    return (await engine.get_screen_metrics(record.project_id, _range(record))).data


_SCREEN_HEADERS = ["Screen", "Views", "Unique Users", "Avg Time on Screen", "Bounce Rate", "Entrances", "Exits"]


def screens_tabular(data: Dict[str, Any]) -> TabularData:
    return TabularData(
        headers=list(_SCREEN_HEADERS),
        rows=[
            dict(zip(_SCREEN_HEADERS, [
                s["screen"], s["views"], s["uniqueUsers"], f"{s['avgTimeOnScreen']:.2f}",
                f"{s['bounceRate']:.2f}%", s["entrances"], s["exits"],
            ]))
            for s in data["screens"]
        ],
    )


def screens_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    return Document(
        title="Screen Analytics Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Summary", "metrics", [
                {"label": "Total Screen Views", "value": data["totalViews"]},
                {"label": "Unique Screens", "value": data["uniqueScreens"]},
            ]),
            DocumentSection("Screens", "table", {
                "headers": ["Screen", "Views", "Unique Users", "Avg Time", "Bounce Rate"],
                "rows": [
                    [s["screen"], str(s["views"]), str(s["uniqueUsers"]),
                     f"{s['avgTimeOnScreen']:.2f}s", f"{s['bounceRate']:.2f}%"]
                    for s in data["screens"]
                ],
            }),
        ],
        footer=_footer(),
    )


# Users

async def fetch_users(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    date_range = _range(record)
    overview = await engine.get_overview(record.project_id, date_range)
    daily = await engine.get_daily_active_users(record.project_id, date_range)
    summary = overview.data["summary"]
    return {
        "activeUsers": summary["dailyActiveUsers"],
        "monthlyActiveUsers": summary["monthlyActiveUsers"],
        "dailyActiveUsers": daily.data,
        "deviceDistribution": overview.data["insights"]["activeDevices"],
    }


def users_tabular(data: Dict[str, Any]) -> TabularData:
    return TabularData(
        headers=["Date", "Active Users"],
        rows=[{"Date": p["timestamp"], "Active Users": p["value"]} for p in data["dailyActiveUsers"]],
    )


def users_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    devices = data["deviceDistribution"]
    total = sum(devices.values())
    return Document(
        title="User Analytics Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Summary", "metrics", [
                {"label": "Active Users", "value": data["activeUsers"]},
                {"label": "Monthly Active Users", "value": data["monthlyActiveUsers"]},
            ]),
            DocumentSection("Daily Active Users", "table", {
                "headers": ["Period", "Count"],
                "rows": [[p["timestamp"], str(p["value"])] for p in data["dailyActiveUsers"]],
            }),
            DocumentSection("Device Distribution", "table", {
                "headers": ["Platform", "Count", "Percentage"],
                "rows": [
                    [platform, str(count), f"{(count / total * 100) if total else 0:.2f}%"]
                    for platform, count in devices.items()
                ],
            }),
        ],
        footer=_footer(),
    )


# Retention

async def fetch_retention(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    result = await engine.get_retention_cohorts(
        record.project_id, _range(record), record.retention_days
    )
    return result.data


def retention_tabular(data: Dict[str, Any]) -> TabularData:
    offsets = [f"day{d}" for d in data["retentionDays"]]
    headers = ["Cohort Date", "Cohort Size"] + [f"Day {d}" for d in data["retentionDays"]]
    rows = []
    for cohort in data["cohorts"]:
        row = {"Cohort Date": cohort["cohortDate"], "Cohort Size": cohort["cohortSize"]}
        for key, header in zip(offsets, headers[2:]):
            row[header] = f"{cohort['retention'][key]:.2f}%"
        rows.append(row)
    return TabularData(headers=headers, rows=rows)


def retention_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    table = retention_tabular(data)
    return Document(
        title="Retention Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Overall Retention", "metrics", [
                {"label": key.replace("day", "Day "), "value": f"{value:.2f}%"}
                for key, value in data["overallRetention"].items()
            ]),
            DocumentSection("Cohorts", "table", {
                "headers": table.headers,
                "rows": [[str(row[h]) for h in table.headers] for row in table.rows],
            }),
        ],
        footer=_footer(),
    )


# Funnel

async def fetch_funnel(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    if not record.steps or len(record.steps) < 2:
        raise InvalidParameterError("Funnel exports need at least two steps")
    result = await engine.get_funnel(
        record.project_id, _range(record), record.steps, record.time_window_hours
    )
    return result.data


def funnel_tabular(data: Dict[str, Any]) -> TabularData:
    headers = ["Step", "Event", "Users", "Conversion Rate", "Dropoff Rate", "Avg Time From Previous (s)"]
    return TabularData(
        headers=headers,
        rows=[
            dict(zip(headers, [
                s["step"], s["eventName"], s["users"], f"{s['conversionRate']:.2f}%",
                f"{s['dropoffRate']:.2f}%", s["avgTimeFromPrevious"],
            ]))
            for s in data["funnel"]
        ],
    )


def funnel_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    return Document(
        title="Funnel Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Summary", "metrics", [
                {"label": "Total Entries", "value": data["totalEntries"]},
                {"label": "Conversion Rate", "value": f"{data['conversionRate']:.2f}%"},
                {"label": "Avg Time To Complete", "value": f"{data['avgTimeToComplete']}s"},
            ]),
            DocumentSection("Steps", "table", {
                "headers": ["Step", "Users", "Conversion", "Dropoff"],
                "rows": [
                    [s["eventName"], str(s["users"]), f"{s['conversionRate']:.2f}%", f"{s['dropoffRate']:.2f}%"]
                    for s in data["funnel"]
                ],
            }),
            DocumentSection("Dropoff Points", "table", {
                "headers": ["From Step", "To Step", "Dropoff Rate"],
                "rows": [
                    [p["fromStep"], p["toStep"], f"{p['dropoffRate']:.2f}%"]
                    for p in data["dropoffPoints"]
                ],
            }),
        ],
        footer=_footer(),
    )


# Sessions

async def fetch_sessions(engine: AggregationEngine, record: ExportRecord, max_rows: int) -> Dict[str, Any]:
    return (await engine.get_session_metrics(record.project_id, _range(record))).data


def sessions_tabular(data: Dict[str, Any]) -> TabularData:
    return TabularData(
        headers=["Hour", "Sessions"],
        rows=[{"Hour": f"{b['hour']:02d}:00", "Sessions": b["count"]} for b in data["sessionsByHour"]],
    )


def sessions_document(data: Dict[str, Any], record: ExportRecord) -> Document:
    return Document(
        title="Session Report",
        subtitle=_subtitle(record),
        sections=[
            DocumentSection("Summary", "metrics", [
                {"label": "Total Sessions", "value": data["totalSessions"]},
                {"label": "Avg Session Duration", "value": f"{data['avgSessionDuration']:.2f}s"},
                {"label": "Median Session Duration", "value": f"{data['medianSessionDuration']}s"},
                {"label": "Sessions per User", "value": f"{data['sessionsPerUser']:.2f}"},
            ]),
            DocumentSection("Sessions by Day", "table", {
                "headers": ["Day", "Sessions"],
                "rows": [[d["day"], str(d["count"])] for d in data["sessionsByDay"]],
            }),
            DocumentSection("Sessions by Hour (UTC)", "table", {
                "headers": ["Hour", "Sessions"],
                "rows": [[f"{b['hour']:02d}:00", str(b["count"])] for b in data["sessionsByHour"]],
            }),
        ],
        footer=_footer(),
    )


TEMPLATES: Dict[ReportType, ReportTemplate] = {
    t.report_type: t for t in (
        ReportTemplate(ReportType.OVERVIEW, fetch_overview, overview_tabular, overview_document),
        ReportTemplate(ReportType.EVENTS, fetch_events, events_tabular, events_document),
        ReportTemplate(ReportType.SCREENS, fetch_screens, screens_tabular, screens_document),
        ReportTemplate(ReportType.USERS, fetch_users, users_tabular, users_document),
        ReportTemplate(ReportType.RETENTION, fetch_retention, retention_tabular, retention_document),
        ReportTemplate(ReportType.FUNNEL, fetch_funnel, funnel_tabular, funnel_document),
        ReportTemplate(ReportType.SESSIONS, fetch_sessions, sessions_tabular, sessions_document),
    )
}


def get_template(report_type: ReportType) -> ReportTemplate:
    """Template for a report type; unsupported types raise InvalidParameterError."""
    template = TEMPLATES.get(report_type)
    if template is None:
        raise InvalidParameterError(f"Unsupported report type: {report_type.value}")
    return template
