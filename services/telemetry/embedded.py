"""Embedded driver: a single SQLite file with one writer connection."""
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from .errors import StorageFailure, StorageUnavailable
from .models import (
    ActivityPoint,
    EventFilter,
    EventRecord,
    EventTypeCount,
    SessionRow,
    SessionStartRef,
    SizeInfo,
    SORTABLE_COLUMNS,
    StoredEvent,
    as_utc,
    utcnow,
)
from .storage import INDEXES, TABLE, TOOL_EVENTS, EventDriver

logger = structlog.get_logger()

CREATE_TABLE = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    server_id TEXT,
    version TEXT,
    session_id TEXT,
    parent_session_id TEXT,
    user_id TEXT,
    data TEXT NOT NULL,
    received_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
)
"""

EVENT_COLUMNS = (
    "id, event, timestamp, server_id, version, session_id, parent_session_id, "
    "user_id, data, received_at, created_at"
)

# Logical session: the parent when one was assigned, else the physical id
LOGICAL_SESSION_MATCH = "(parent_session_id = ? OR (parent_session_id IS NULL AND session_id = ?))"


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so lexical order matches time order
    return as_utc(value).isoformat(timespec="microseconds")


def _dt(text: str) -> datetime:
    return as_utc(datetime.fromisoformat(text))


def _decode(raw: Optional[str], event_id=None) -> dict:
    try:
        value = json.loads(raw) if raw else {}
    except (TypeError, ValueError) as e:
        logger.warning("event_data_undecodable", event_id=event_id, error=str(e))
        return {}
    return value if isinstance(value, dict) else {}


def _where(flt: EventFilter) -> tuple[list[str], list]:
    clauses, params = [], []
    if flt.event_types:
        if len(flt.event_types) == 1:
            clauses.append("event = ?")
        else:
            clauses.append(f"event IN ({', '.join('?' for _ in flt.event_types)})")
        params.extend(flt.event_types)
    if flt.server_id:
        clauses.append("server_id = ?")
        params.append(flt.server_id)
    if flt.session_id:
        clauses.append(LOGICAL_SESSION_MATCH)
        params.extend([flt.session_id, flt.session_id])
    if flt.user_ids:
        clauses.append(f"user_id IN ({', '.join('?' for _ in flt.user_ids)})")
        params.extend(flt.user_ids)
    if flt.start_date:
        clauses.append("created_at >= ?")
        params.append(_ts(flt.start_date))
    if flt.end_date:
        clauses.append("created_at <= ?")
        params.append(_ts(flt.end_date))
    return clauses, params


def _where_sql(clauses: list[str]) -> str:
    return f" WHERE {' AND '.join(clauses)}" if clauses else ""


def _order_sql(flt: EventFilter) -> str:
    column = flt.order_by if flt.order_by in SORTABLE_COLUMNS else "created_at"
    direction = "ASC" if flt.order == "ASC" else "DESC"
    return f"ORDER BY {column} {direction}, id {direction}"


def _event_from_row(row: sqlite3.Row) -> StoredEvent:
    return StoredEvent(
        id=row["id"],
        event=row["event"],
        timestamp=_dt(row["timestamp"]),
        server_id=row["server_id"],
        version=row["version"],
        session_id=row["session_id"],
        parent_session_id=row["parent_session_id"],
        user_id=row["user_id"],
        data=_decode(row["data"], row["id"]),
        received_at=_dt(row["received_at"]),
        created_at=_dt(row["created_at"]),
    )


class EmbeddedDriver(EventDriver):
    """SQLite in WAL mode.

    Writes go through one connection guarded by a lock; each reading
    thread gets its own connection so reads never wait on the writer.
    """

    name = "embedded"

    def __init__(self, db_path: Path, max_size: Optional[int] = None):
        self.db_path = Path(db_path)
        self.max_size = max_size
        self._write_lock = threading.Lock()
        self._writer: Optional[sqlite3.Connection] = None
        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _reader(self) -> sqlite3.Connection:
        if self._writer is None:
            raise StorageUnavailable("Embedded database is not initialized")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except sqlite3.Error as e:
            logger.error("embedded_operation_failed", operation=operation, error=str(e))
            raise StorageFailure()

    @contextmanager
    def _snapshot(self):
        """Read transaction so multi-statement reads see one snapshot."""
        conn = self._reader()
        conn.execute("BEGIN")
        try:
            yield conn
        finally:
            conn.commit()

    @contextmanager
    def _write(self, operation: str):
        if self._writer is None:
            raise StorageUnavailable("Embedded database is not initialized")
        with self._guard(operation), self._write_lock, self._writer:
            yield self._writer

    def init(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = self._connect()
            self._writer.execute("PRAGMA journal_mode = WAL")
            self._writer.execute("PRAGMA synchronous = NORMAL")
        except (OSError, sqlite3.Error) as e:
            self._writer = None
            logger.error("embedded_open_failed", path=str(self.db_path), error=str(e))
            raise StorageUnavailable(f"Cannot open embedded database at {self.db_path}")

        with self._write("init") as conn:
            conn.execute(CREATE_TABLE)
            for name, columns in INDEXES:
                conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {TABLE} ({', '.join(columns)})")
        logger.info("embedded_database_ready", path=str(self.db_path))

    def close(self) -> None:
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers = []
        self._local = threading.local()
        if self._writer is not None:
            with self._write_lock:
                self._writer.close()
            self._writer = None
        logger.info("embedded_database_closed", path=str(self.db_path))

    def ping(self) -> datetime:
        with self._guard("ping"):
            row = self._reader().execute("SELECT strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now') AS now").fetchone()
        return _dt(row["now"])

    def insert(self, record: EventRecord) -> int:
        with self._write("insert") as conn:
            cur = conn.execute(
                f"INSERT INTO {TABLE} (event, timestamp, server_id, version, session_id, "
                "parent_session_id, user_id, data, received_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.event,
                    _ts(record.timestamp),
                    record.server_id,
                    record.version,
                    record.session_id,
                    record.parent_session_id,
                    record.user_id,
                    json.dumps(record.data, separators=(",", ":")),
                    _ts(record.received_at),
                    _ts(utcnow()),
                ),
            )
            return cur.lastrowid

    def get_by_id(self, event_id: int) -> Optional[StoredEvent]:
        with self._guard("get_by_id"):
            row = self._reader().execute(
                f"SELECT {EVENT_COLUMNS} FROM {TABLE} WHERE id = ?", (event_id,)
            ).fetchone()
        return _event_from_row(row) if row else None

    def delete_by_id(self, event_id: int) -> bool:
        with self._write("delete_by_id") as conn:
            cur = conn.execute(f"DELETE FROM {TABLE} WHERE id = ?", (event_id,))
            return cur.rowcount > 0

    def delete_by_session(self, session_id: str) -> int:
        with self._write("delete_by_session") as conn:
            cur = conn.execute(f"DELETE FROM {TABLE} WHERE {LOGICAL_SESSION_MATCH}", (session_id, session_id))
            return cur.rowcount

    def delete_all(self) -> int:
        with self._write("delete_all") as conn:
            cur = conn.execute(f"DELETE FROM {TABLE}")
            return cur.rowcount

    def query(self, flt: EventFilter) -> tuple[list[StoredEvent], int]:
        clauses, params = _where(flt)
        where = _where_sql(clauses)
        with self._guard("query"), self._snapshot() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {TABLE}{where}", params).fetchone()[0]
            rows = []
            if flt.limit > 0:
                rows = conn.execute(
                    f"SELECT {EVENT_COLUMNS} FROM {TABLE}{where} {_order_sql(flt)} LIMIT ? OFFSET ?",
                    [*params, flt.limit, flt.offset],
                ).fetchall()
        return [_event_from_row(row) for row in rows], total

    def count(self, flt: EventFilter) -> int:
        clauses, params = _where(flt)
        with self._guard("count"):
            return self._reader().execute(f"SELECT COUNT(*) FROM {TABLE}{_where_sql(clauses)}", params).fetchone()[0]

    def count_by_event(self, flt: EventFilter) -> list[EventTypeCount]:
        clauses, params = _where(flt)
        with self._guard("count_by_event"):
            rows = self._reader().execute(
                f"SELECT event, COUNT(*) AS count FROM {TABLE}{_where_sql(clauses)} "
                "GROUP BY event ORDER BY count DESC, event ASC",
                params,
            ).fetchall()
        return [EventTypeCount(event=row["event"], count=row["count"]) for row in rows]

    def sessions(self, flt: EventFilter, limit: Optional[int] = None, offset: int = 0) -> list[SessionRow]:
        clauses, params = _where(flt)
        clauses.insert(0, "(session_id IS NOT NULL OR parent_session_id IS NOT NULL)")
        in_session = "(e.parent_session_id = g.session_key OR (e.parent_session_id IS NULL AND e.session_id = g.session_key))"
        sql = f"""
            SELECT g.session_key, g.count, g.first_event, g.last_event,
                (SELECT e.user_id FROM {TABLE} e WHERE {in_session}
                 ORDER BY e.timestamp ASC, e.id ASC LIMIT 1) AS user_id,
                (SELECT e.data FROM {TABLE} e WHERE {in_session} AND e.event = ?
                 ORDER BY e.timestamp ASC, e.id ASC LIMIT 1) AS start_data
            FROM (
                SELECT COALESCE(parent_session_id, session_id) AS session_key,
                    COUNT(*) AS count, MIN(created_at) AS first_event, MAX(created_at) AS last_event
                FROM {TABLE}{_where_sql(clauses)}
                GROUP BY COALESCE(parent_session_id, session_id)
            ) g
            ORDER BY g.last_event DESC, g.session_key ASC
            LIMIT ? OFFSET ?
        """
        with self._guard("sessions"):
            rows = self._reader().execute(
                sql, ["session_start", *params, -1 if limit is None else limit, offset]
            ).fetchall()
        return [
            SessionRow(
                session_id=row["session_key"],
                count=row["count"],
                first_event=_dt(row["first_event"]),
                last_event=_dt(row["last_event"]),
                user_id=row["user_id"],
                start_data=row["start_data"],
            )
            for row in rows
        ]

    def activity(self, flt: EventFilter, cap: int) -> list[ActivityPoint]:
        clauses, params = _where(flt)
        with self._guard("activity"):
            rows = self._reader().execute(
                f"SELECT id, event, timestamp, session_id FROM {TABLE}{_where_sql(clauses)} "
                "ORDER BY timestamp ASC, id ASC LIMIT ?",
                [*params, cap],
            ).fetchall()
        return [
            ActivityPoint(id=row["id"], event=row["event"], timestamp=_dt(row["timestamp"]), session_id=row["session_id"])
            for row in rows
        ]

    def daily_counts(self, since: datetime) -> list[tuple[str, int]]:
        with self._guard("daily_counts"):
            rows = self._reader().execute(
                f"SELECT substr(timestamp, 1, 10) AS day, COUNT(*) AS count FROM {TABLE} "
                "WHERE timestamp >= ? GROUP BY day ORDER BY day ASC",
                (_ts(since),),
            ).fetchall()
        return [(row["day"], row["count"]) for row in rows]

    def tool_events(self, since: datetime) -> list[tuple[str, dict]]:
        with self._guard("tool_events"):
            rows = self._reader().execute(
                f"SELECT id, event, data FROM {TABLE} WHERE timestamp >= ? AND event IN (?, ?)",
                (_ts(since), *TOOL_EVENTS),
            ).fetchall()
        return [(row["event"], _decode(row["data"], row["id"])) for row in rows]

    def size_info(self) -> Optional[SizeInfo]:
        if not self.db_path.exists():
            return None
        size = self.db_path.stat().st_size
        wal = self.db_path.with_name(self.db_path.name + "-wal")
        if wal.exists():
            size += wal.stat().st_size
        return SizeInfo(size=size, max_size=self.max_size)

    def latest_parent(self, session_id: str) -> Optional[str]:
        with self._guard("latest_parent"):
            row = self._reader().execute(
                f"SELECT parent_session_id FROM {TABLE} "
                "WHERE session_id = ? AND parent_session_id IS NOT NULL "
                "ORDER BY timestamp DESC, id DESC LIMIT 1",
                (session_id,),
            ).fetchone()
        return row["parent_session_id"] if row else None

    def first_session_start(self, session_id: str) -> Optional[SessionStartRef]:
        with self._guard("first_session_start"):
            row = self._reader().execute(
                f"SELECT timestamp, session_id, parent_session_id FROM {TABLE} "
                "WHERE session_id = ? AND event = ? ORDER BY timestamp ASC, id ASC LIMIT 1",
                (session_id, "session_start"),
            ).fetchone()
        return self._start_ref(row)

    def last_session_start(self, server_id: str, user_id: str) -> Optional[SessionStartRef]:
        with self._guard("last_session_start"):
            row = self._reader().execute(
                f"SELECT timestamp, session_id, parent_session_id FROM {TABLE} "
                "WHERE event = ? AND server_id = ? AND user_id = ? "
                "ORDER BY timestamp DESC, id DESC LIMIT 1",
                ("session_start", server_id, user_id),
            ).fetchone()
        return self._start_ref(row)

    @staticmethod
    def _start_ref(row) -> Optional[SessionStartRef]:
        if row is None:
            return None
        return SessionStartRef(
            timestamp=_dt(row["timestamp"]),
            session_id=row["session_id"],
            parent_session_id=row["parent_session_id"],
        )
