"""
Networked SQL driver built on SQLAlchemy Core.

PostgreSQL in production; any SQLAlchemy URL works, which is how the
test suite runs this driver against a SQLite file.
"""
from contextlib import contextmanager
from datetime import date, datetime
from typing import Optional

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError

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

metadata = MetaData()

events = Table(
    TABLE,
    metadata,
    Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True),
    Column("event", String(255), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("server_id", String(255)),
    Column("version", String(100)),
    Column("session_id", String(255)),
    Column("parent_session_id", String(255)),
    Column("user_id", String(255)),
    Column("data", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    Column("received_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    sqlite_autoincrement=True,
)

for _name, _columns in INDEXES:
    Index(_name, *(events.c[col] for col in _columns))

EVENT_COLUMNS = [events.c[name] for name in (
    "id", "event", "timestamp", "server_id", "version", "session_id",
    "parent_session_id", "user_id", "data", "received_at", "created_at",
)]


def normalize_url(url: str) -> str:
    """Heroku-style postgres:// URLs are not accepted by SQLAlchemy."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def in_logical_session(table, session_id):
    return or_(
        table.c.parent_session_id == session_id,
        and_(table.c.parent_session_id.is_(None), table.c.session_id == session_id),
    )


def _conditions(flt: EventFilter) -> list:
    conditions = []
    if flt.event_types:
        conditions.append(events.c.event.in_(flt.event_types))
    if flt.server_id:
        conditions.append(events.c.server_id == flt.server_id)
    if flt.session_id:
        conditions.append(in_logical_session(events, flt.session_id))
    if flt.user_ids:
        conditions.append(events.c.user_id.in_(flt.user_ids))
    if flt.start_date:
        conditions.append(events.c.created_at >= as_utc(flt.start_date))
    if flt.end_date:
        conditions.append(events.c.created_at <= as_utc(flt.end_date))
    return conditions


def _ordering(flt: EventFilter) -> list:
    column = events.c[flt.order_by if flt.order_by in SORTABLE_COLUMNS else "created_at"]
    if flt.order == "ASC":
        return [column.asc(), events.c.id.asc()]
    return [column.desc(), events.c.id.desc()]


def _event_from_row(row) -> StoredEvent:
    data = row.data
    return StoredEvent(
        id=row.id,
        event=row.event,
        timestamp=as_utc(row.timestamp),
        server_id=row.server_id,
        version=row.version,
        session_id=row.session_id,
        parent_session_id=row.parent_session_id,
        user_id=row.user_id,
        data=data if isinstance(data, dict) else {},
        received_at=as_utc(row.received_at),
        created_at=as_utc(row.created_at),
    )


def _day_text(value) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)[:10]


class NetworkedDriver(EventDriver):
    name = "networked-sql"

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        ssl: bool = False,
        ssl_verify: bool = True,
        max_size: Optional[int] = None,
    ):
        self.url = make_url(normalize_url(url))
        self.max_size = max_size
        kwargs = {"pool_pre_ping": True}
        if self.url.get_backend_name() == "sqlite":
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            connect_args = {}
            if self.url.get_backend_name() == "postgresql":
                # date() buckets and now() must be UTC regardless of server config
                connect_args["options"] = "-c timezone=utc"
                if ssl:
                    connect_args["sslmode"] = "verify-full" if ssl_verify else "require"
            kwargs.update(pool_size=pool_size, max_overflow=max_overflow, connect_args=connect_args)
        self.engine = create_engine(self.url, **kwargs)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except (OperationalError, InterfaceError, DisconnectionError) as e:
            logger.error("database_unreachable", operation=operation, error=str(e.orig if hasattr(e, "orig") else e))
            raise StorageUnavailable()
        except SQLAlchemyError as e:
            logger.error("database_operation_failed", operation=operation, error_type=type(e).__name__)
            raise StorageFailure()

    def init(self) -> None:
        with self._guard("init"), self.engine.begin() as conn:
            metadata.create_all(conn, checkfirst=True)
            # create_all skips indexes of a table that already exists
            for index in events.indexes:
                index.create(conn, checkfirst=True)
        logger.info("networked_database_ready", dialect=self.dialect, host=self.url.host)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("networked_database_closed", dialect=self.dialect)

    def ping(self) -> datetime:
        with self._guard("ping"), self.engine.connect() as conn:
            return as_utc(conn.execute(select(func.now())).scalar_one())

    def insert(self, record: EventRecord) -> int:
        stmt = insert(events).values(
            event=record.event,
            timestamp=as_utc(record.timestamp),
            server_id=record.server_id,
            version=record.version,
            session_id=record.session_id,
            parent_session_id=record.parent_session_id,
            user_id=record.user_id,
            data=record.data,
            received_at=as_utc(record.received_at),
            created_at=utcnow(),
        )
        with self._guard("insert"), self.engine.begin() as conn:
            return conn.execute(stmt).inserted_primary_key[0]

    def get_by_id(self, event_id: int) -> Optional[StoredEvent]:
        with self._guard("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(select(*EVENT_COLUMNS).where(events.c.id == event_id)).first()
        return _event_from_row(row) if row else None

    def delete_by_id(self, event_id: int) -> bool:
        with self._guard("delete_by_id"), self.engine.begin() as conn:
            return conn.execute(delete(events).where(events.c.id == event_id)).rowcount > 0

    def delete_by_session(self, session_id: str) -> int:
        with self._guard("delete_by_session"), self.engine.begin() as conn:
            return conn.execute(delete(events).where(in_logical_session(events, session_id))).rowcount

    def delete_all(self) -> int:
        with self._guard("delete_all"), self.engine.begin() as conn:
            return conn.execute(delete(events)).rowcount

    def query(self, flt: EventFilter) -> tuple[list[StoredEvent], int]:
        conditions = _conditions(flt)
        total_stmt = select(func.count()).select_from(events).where(*conditions)
        page_stmt = (
            select(*EVENT_COLUMNS)
            .where(*conditions)
            .order_by(*_ordering(flt))
            .limit(flt.limit)
            .offset(flt.offset)
        )
        with self._guard("query"), self.engine.connect() as conn:
            if self.dialect == "postgresql":
                # Total and page from one snapshot
                conn = conn.execution_options(isolation_level="REPEATABLE READ")
            with conn.begin():
                total = conn.execute(total_stmt).scalar_one()
                rows = conn.execute(page_stmt).all() if flt.limit > 0 else []
        return [_event_from_row(row) for row in rows], total

    def count(self, flt: EventFilter) -> int:
        stmt = select(func.count()).select_from(events).where(*_conditions(flt))
        with self._guard("count"), self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    def count_by_event(self, flt: EventFilter) -> list[EventTypeCount]:
        n = func.count().label("n")
        stmt = (
            select(events.c.event, n)
            .where(*_conditions(flt))
            .group_by(events.c.event)
            .order_by(n.desc(), events.c.event.asc())
        )
        with self._guard("count_by_event"), self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [EventTypeCount(event=row.event, count=row.n) for row in rows]

    def sessions(self, flt: EventFilter, limit: Optional[int] = None, offset: int = 0) -> list[SessionRow]:
        session_key = func.coalesce(events.c.parent_session_id, events.c.session_id)
        grouped = (
            select(
                session_key.label("session_key"),
                func.count().label("event_count"),
                func.min(events.c.created_at).label("first_event"),
                func.max(events.c.created_at).label("last_event"),
            )
            .where(or_(events.c.session_id.is_not(None), events.c.parent_session_id.is_not(None)))
            .where(*_conditions(flt))
            .group_by(session_key)
            .subquery("g")
        )

        e = events.alias("e")
        in_group = in_logical_session(e, grouped.c.session_key)
        earliest = (e.c.timestamp.asc(), e.c.id.asc())
        first_user = select(e.c.user_id).where(in_group).order_by(*earliest).limit(1).scalar_subquery()
        start_data = (
            select(e.c.data)
            .where(in_group, e.c.event == "session_start")
            .order_by(*earliest)
            .limit(1)
            .scalar_subquery()
        )

        stmt = (
            select(
                grouped.c.session_key,
                grouped.c.event_count,
                grouped.c.first_event,
                grouped.c.last_event,
                first_user.label("user_id"),
                start_data.label("start_data"),
            )
            .order_by(grouped.c.last_event.desc(), grouped.c.session_key.asc())
            .limit(limit)
            .offset(offset)
        )
        with self._guard("sessions"), self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            SessionRow(
                session_id=row.session_key,
                count=row.event_count,
                first_event=as_utc(row.first_event),
                last_event=as_utc(row.last_event),
                user_id=row.user_id,
                start_data=row.start_data,
            )
            for row in rows
        ]

    def activity(self, flt: EventFilter, cap: int) -> list[ActivityPoint]:
        stmt = (
            select(events.c.id, events.c.event, events.c.timestamp, events.c.session_id)
            .where(*_conditions(flt))
            .order_by(events.c.timestamp.asc(), events.c.id.asc())
            .limit(cap)
        )
        with self._guard("activity"), self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            ActivityPoint(id=row.id, event=row.event, timestamp=as_utc(row.timestamp), session_id=row.session_id)
            for row in rows
        ]

    def daily_counts(self, since: datetime) -> list[tuple[str, int]]:
        day = func.date(events.c.timestamp).label("day")
        n = func.count().label("n")
        stmt = (
            select(day, n)
            .where(events.c.timestamp >= as_utc(since))
            .group_by(day)
            .order_by(day.asc())
        )
        with self._guard("daily_counts"), self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [(_day_text(row.day), row.n) for row in rows]

    def tool_events(self, since: datetime) -> list[tuple[str, dict]]:
        stmt = select(events.c.event, events.c.data).where(
            events.c.timestamp >= as_utc(since),
            events.c.event.in_(TOOL_EVENTS),
        )
        with self._guard("tool_events"), self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [(row.event, row.data if isinstance(row.data, dict) else {}) for row in rows]

    def size_info(self) -> Optional[SizeInfo]:
        if self.dialect != "postgresql":
            return None
        with self._guard("size_info"), self.engine.connect() as conn:
            size = conn.execute(select(func.pg_database_size(func.current_database()))).scalar_one()
        return SizeInfo(size=int(size), max_size=self.max_size)

    def latest_parent(self, session_id: str) -> Optional[str]:
        stmt = (
            select(events.c.parent_session_id)
            .where(events.c.session_id == session_id, events.c.parent_session_id.is_not(None))
            .order_by(events.c.timestamp.desc(), events.c.id.desc())
            .limit(1)
        )
        with self._guard("latest_parent"), self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one_or_none()

    def first_session_start(self, session_id: str) -> Optional[SessionStartRef]:
        stmt = (
            select(events.c.timestamp, events.c.session_id, events.c.parent_session_id)
            .where(events.c.session_id == session_id, events.c.event == "session_start")
            .order_by(events.c.timestamp.asc(), events.c.id.asc())
            .limit(1)
        )
        return self._start_ref(stmt, "first_session_start")

    def last_session_start(self, server_id: str, user_id: str) -> Optional[SessionStartRef]:
        stmt = (
            select(events.c.timestamp, events.c.session_id, events.c.parent_session_id)
            .where(
                events.c.event == "session_start",
                events.c.server_id == server_id,
                events.c.user_id == user_id,
            )
            .order_by(events.c.timestamp.desc(), events.c.id.desc())
            .limit(1)
        )
        return self._start_ref(stmt, "last_session_start")

    def _start_ref(self, stmt, operation: str) -> Optional[SessionStartRef]:
        with self._guard(operation), self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            return None
        return SessionStartRef(
            timestamp=as_utc(row.timestamp),
            session_id=row.session_id,
            parent_session_id=row.parent_session_id,
        )
