"""
Durable event storage adapters.

Two contracts live here:
- StorageAdapter: the write side used by the ingestion buffer flush
- EventQueryStore: the read side used by the aggregation engine and the
  scheduled roll-ups

Both are implemented by an in-memory adapter (tests, local runs) and an
SQLite adapter. Writes are keyed on event id so a retried flush cannot
double count.
"""

import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Set, Iterable, Sequence

from ..events.schema import EnrichedEvent
from ..utils.logging import get_logger
from ..utils.errors import StorageError
from .database import Database

logger = get_logger("usage-analytics.storage")


class StorageAdapter(ABC):
    """Sink for enriched events."""

    @abstractmethod
    async def write_events(self, events: Sequence[EnrichedEvent]) -> None:
        """Persist events; duplicates by event id are ignored."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the backend is reachable."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""


class EventQueryStore(ABC):
    """Read interface over persisted events. Ranges are half-open ``[start, end)``."""

    @abstractmethod
    async def register_project(self, project_id: str, name: Optional[str] = None) -> None:
        """Make a project known even before it has events."""

    @abstractmethod
    async def project_exists(self, project_id: str) -> bool:
        """Check whether the project is known."""

    @abstractmethod
    async def list_projects(self) -> List[str]:
        """Every known project id."""

    @abstractmethod
    async def count_distinct_users(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
        event_type: Optional[str] = None
    ) -> int:
        """Distinct non-null user ids with an event in the range."""

    @abstractmethod
    async def count_events(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
        event_type: Optional[str] = None
    ) -> int:
        """Number of events in the range."""

    @abstractmethod
    async def find_events(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
        event_types: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[EnrichedEvent]:
        """Events in the range ordered by timestamp, then event id."""

    @abstractmethod
    async def first_seen_users(
        self,
        project_id: str,
        start: datetime,
        end: datetime
    ) -> Dict[str, datetime]:
        """Users whose first ever event falls in the range, with that timestamp."""

    @abstractmethod
    async def active_users(self, project_id: str, start: datetime, end: datetime) -> Set[str]:
        """Distinct user ids with any event in the range."""

    @abstractmethod
    async def delete_events_before(self, cutoff: datetime) -> int:
        """Delete events older than the cutoff; returns the number removed."""


def _in_range(event: EnrichedEvent, start: datetime, end: datetime) -> bool:
    return start <= event.timestamp < end


class InMemoryAdapter(StorageAdapter, EventQueryStore):
    """Keeps the most recent ``max_size`` events in memory."""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._events: "OrderedDict[str, EnrichedEvent]" = OrderedDict()
        self._projects: Set[str] = set()
        self.write_calls = 0

    async def write_events(self, events: Sequence[EnrichedEvent]) -> None:
        self.write_calls += 1
        for event in events:
            if event.event_id in self._events:
                continue
            self._events[event.event_id] = event
            self._projects.add(event.project_id)
        while len(self._events) > self.max_size:
            self._events.popitem(last=False)
        logger.debug("events_written", count=len(events), stored=len(self._events))

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    def get_events(self) -> List[EnrichedEvent]:
        """Every stored event in insertion order."""
        return list(self._events.values())

    def get_project_events(self, project_id: str) -> List[EnrichedEvent]:
        return [e for e in self._events.values() if e.project_id == project_id]

    def clear(self) -> None:
        self._events.clear()

    def _select(
        self,
        project_id: str,
        start: datetime,
        end: datetime,
        event_types: Optional[Iterable[str]] = None
    ) -> List[EnrichedEvent]:
        types = set(event_types) if event_types is not None else None
        return [
            e for e in self._events.values()
            if e.project_id == project_id
            and _in_range(e, start, end)
            and (types is None or e.type in types)
        ]

    async def register_project(self, project_id: str, name: Optional[str] = None) -> None:
        self._projects.add(project_id)

    async def project_exists(self, project_id: str) -> bool:
        return project_id in self._projects

    async def list_projects(self) -> List[str]:
        return sorted(self._projects)

    async def count_distinct_users(self, project_id, start, end, event_type=None) -> int:
        events = self._select(project_id, start, end, [event_type] if event_type else None)
        return len({e.user_id for e in events if e.user_id})

    async def count_events(self, project_id, start, end, event_type=None) -> int:
        return len(self._select(project_id, start, end, [event_type] if event_type else None))

    async def find_events(
        self,
        project_id,
        start,
        end,
        event_types=None,
        user_id=None,
        limit=None,
        offset=0
    ) -> List[EnrichedEvent]:
        events = [
            e for e in self._select(project_id, start, end, event_types)
            if user_id is None or e.user_id == user_id
        ]
        events.sort(key=lambda e: (e.timestamp, e.event_id))
        events = events[offset:]
        return events[:limit] if limit is not None else events

    async def first_seen_users(self, project_id, start, end) -> Dict[str, datetime]:
        first: Dict[str, datetime] = {}
        for event in self._events.values():
            if event.project_id != project_id or not event.user_id:
                continue
            seen = first.get(event.user_id)
            if seen is None or event.timestamp < seen:
                first[event.user_id] = event.timestamp
        return {uid: ts for uid, ts in first.items() if start <= ts < end}

    async def active_users(self, project_id, start, end) -> Set[str]:
        return {e.user_id for e in self._select(project_id, start, end) if e.user_id}

    async def delete_events_before(self, cutoff: datetime) -> int:
        stale = [eid for eid, e in self._events.items() if e.timestamp < cutoff]
        for eid in stale:
            del self._events[eid]
        return len(stale)


SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    type TEXT NOT NULL,
    user_id TEXT,
    session_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    received_at TEXT NOT NULL,
    properties TEXT NOT NULL,
    device TEXT,
    geo TEXT,
    meta TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_project_time ON events(project_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_project_user ON events(project_id, user_id);
CREATE INDEX IF NOT EXISTS idx_events_project_type ON events(project_id, type, timestamp);
"""


def _ts(value: datetime) -> str:
    """Fixed-width UTC text so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f").replace(tzinfo=timezone.utc)


class SQLiteAdapter(StorageAdapter, EventQueryStore):
    """Event store on SQLite through aiosqlite."""

    def __init__(self, db: Database):
        self.db = db
        self._initialized = False

    async def initialize(self) -> None:
        if not self._initialized:
            await self.db.executescript(SCHEMA)
            self._initialized = True

    async def write_events(self, events: Sequence[EnrichedEvent]) -> None:
        if not events:
            return
        await self.initialize()
        rows = []
        for e in events:
            rows.append((
                e.event_id,
                e.project_id,
                e.type,
                e.user_id,
                e.session_id,
                _ts(e.timestamp),
                _ts(e.received_at),
                json.dumps(e.properties, default=str),
                json.dumps(e.device.to_wire()) if e.device else None,
                json.dumps(e.geo.to_wire()),
                json.dumps(e.meta.to_wire()),
            ))
        now = _ts(datetime.now(timezone.utc))
        projects = {(e.project_id, now) for e in events}
        try:
            async with self.db.transaction() as conn:
                await conn.executemany(
                    "INSERT OR IGNORE INTO projects (id, created_at) VALUES (?, ?)",
                    list(projects),
                )
                await conn.executemany(
                    """
                    INSERT OR IGNORE INTO events (
                        event_id, project_id, type, user_id, session_id, timestamp,
                        received_at, properties, device, geo, meta
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        except Exception as e:
            raise StorageError(f"Failed to write {len(rows)} events: {e}", cause=e) from e
        logger.debug("events_written", count=len(rows))

    async def health_check(self) -> bool:
        try:
            row = await self.db.fetchone("SELECT 1")
            return row is not None
        except Exception as e:
            logger.warning("storage_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.db.close()

    async def register_project(self, project_id: str, name: Optional[str] = None) -> None:
        await self.initialize()
        await self.db.execute(
            "INSERT OR IGNORE INTO projects (id, name, created_at) VALUES (?, ?, ?)",
            (project_id, name, _ts(datetime.now(timezone.utc))),
        )

    async def project_exists(self, project_id: str) -> bool:
        await self.initialize()
        row = await self.db.fetchone("SELECT 1 FROM projects WHERE id = ?", (project_id,))
        return row is not None

    async def list_projects(self) -> List[str]:
        await self.initialize()
        rows = await self.db.fetchall("SELECT id FROM projects ORDER BY id")
        return [row["id"] for row in rows]

    def _range_clause(self, project_id, start, end, event_type=None):
        sql = "project_id = ? AND timestamp >= ? AND timestamp < ?"
        params: list = [project_id, _ts(start), _ts(end)]
        if event_type:
            sql += " AND type = ?"
            params.append(event_type)
        return sql, params

    async def count_distinct_users(self, project_id, start, end, event_type=None) -> int:
        await self.initialize()
        where, params = self._range_clause(project_id, start, end, event_type)
        row = await self.db.fetchone(
            f"SELECT COUNT(DISTINCT user_id) AS n FROM events WHERE {where} AND user_id IS NOT NULL",
            params,
        )
        return row["n"]

    async def count_events(self, project_id, start, end, event_type=None) -> int:
        await self.initialize()
        where, params = self._range_clause(project_id, start, end, event_type)
        row = await self.db.fetchone(f"SELECT COUNT(*) AS n FROM events WHERE {where}", params)
        return row["n"]

    async def find_events(
        self,
        project_id,
        start,
        end,
        event_types=None,
        user_id=None,
        limit=None,
        offset=0
    ) -> List[EnrichedEvent]:
        await self.initialize()
        where, params = self._range_clause(project_id, start, end)
        if event_types is not None:
            types = list(event_types)
            if not types:
                return []
            where += f" AND type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        if user_id is not None:
            where += " AND user_id = ?"
            params.append(user_id)
        sql = f"SELECT * FROM events WHERE {where} ORDER BY timestamp, event_id"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(offset)
        rows = await self.db.fetchall(sql, params)
        return [self._row_to_event(row) for row in rows]

    async def first_seen_users(self, project_id, start, end) -> Dict[str, datetime]:
        await self.initialize()
        rows = await self.db.fetchall(
            """
            SELECT user_id, MIN(timestamp) AS first_seen FROM events
            WHERE project_id = ? AND user_id IS NOT NULL
            GROUP BY user_id
            HAVING MIN(timestamp) >= ? AND MIN(timestamp) < ?
            """,
            (project_id, _ts(start), _ts(end)),
        )
        return {row["user_id"]: _parse_ts(row["first_seen"]) for row in rows}

    async def active_users(self, project_id, start, end) -> Set[str]:
        await self.initialize()
        where, params = self._range_clause(project_id, start, end)
        rows = await self.db.fetchall(
            f"SELECT DISTINCT user_id FROM events WHERE {where} AND user_id IS NOT NULL",
            params,
        )
        return {row["user_id"] for row in rows}

    async def delete_events_before(self, cutoff: datetime) -> int:
        await self.initialize()
        return await self.db.execute("DELETE FROM events WHERE timestamp < ?", (_ts(cutoff),))

    @staticmethod
    def _row_to_event(row) -> EnrichedEvent:
        data = {
            "eventId": row["event_id"],
            "projectId": row["project_id"],
            "type": row["type"],
            "userId": row["user_id"],
            "sessionId": row["session_id"],
            "timestamp": _parse_ts(row["timestamp"]),
            "receivedAt": _parse_ts(row["received_at"]),
            "properties": json.loads(row["properties"]),
            "geo": json.loads(row["geo"]) if row["geo"] else {},
            "_meta": json.loads(row["meta"]),
        }
        if row["device"]:
            data["device"] = json.loads(row["device"])
        return EnrichedEvent.model_validate(data)


def create_storage_adapter(
    backend: str = "memory",
    path: Optional[str] = None,
    max_size: int = 10000
):
    """Create a storage adapter for the configured backend."""
    if backend == "memory":
        return InMemoryAdapter(max_size=max_size)
    if backend == "sqlite":
        return SQLiteAdapter(Database(path or "./data/analytics.db"))
    raise StorageError(f"Unknown storage backend: {backend}")


__all__ = [
    'StorageAdapter',
    'EventQueryStore',
    'InMemoryAdapter',
    'SQLiteAdapter',
    'create_storage_adapter',
]
