"""Storage driver contract shared by the embedded and networked backends."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import structlog

from .config import EMBEDDED, Settings
from .models import (
    ActivityPoint,
    EventFilter,
    EventRecord,
    EventTypeCount,
    SessionRow,
    SessionStartRef,
    SizeInfo,
    StoredEvent,
)

logger = structlog.get_logger()

TABLE = "telemetry_events"

TOOL_EVENTS = ("tool_call", "tool_error")

# (name, columns). Created idempotently by every driver's init().
INDEXES = [
    ("idx_telemetry_events_event", ("event",)),
    ("idx_telemetry_events_timestamp", ("timestamp",)),
    ("idx_telemetry_events_server_id", ("server_id",)),
    ("idx_telemetry_events_created_at", ("created_at",)),
    ("idx_telemetry_events_session_timestamp", ("session_id", "timestamp")),
    ("idx_telemetry_events_event_timestamp", ("event", "timestamp")),
    ("idx_telemetry_events_created_server", ("created_at", "server_id")),
    ("idx_telemetry_events_parent_session_timestamp", ("parent_session_id", "timestamp")),
]


class EventDriver(ABC):
    """Persistence backend for telemetry events.

    Every method is blocking; callers on the event loop go through the
    thread pool. Implementations decode ``data`` so callers always see a
    mapping.
    """

    name = "unknown"

    @abstractmethod
    def init(self) -> None:
        """Create the table and indexes if absent."""

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def ping(self) -> datetime:
        """Readiness check; returns the backend's current time."""

    @abstractmethod
    def insert(self, record: EventRecord) -> int:
        ...

    @abstractmethod
    def get_by_id(self, event_id: int) -> Optional[StoredEvent]:
        ...

    @abstractmethod
    def delete_by_id(self, event_id: int) -> bool:
        ...

    @abstractmethod
    def delete_by_session(self, session_id: str) -> int:
        ...

    @abstractmethod
    def delete_all(self) -> int:
        ...

    @abstractmethod
    def query(self, flt: EventFilter) -> tuple[list[StoredEvent], int]:
        """Page of rows plus the unpaged total for the same filter."""

    @abstractmethod
    def count(self, flt: EventFilter) -> int:
        ...

    @abstractmethod
    def count_by_event(self, flt: EventFilter) -> list[EventTypeCount]:
        ...

    @abstractmethod
    def sessions(self, flt: EventFilter, limit: Optional[int] = None, offset: int = 0) -> list[SessionRow]:
        ...

    @abstractmethod
    def activity(self, flt: EventFilter, cap: int) -> list[ActivityPoint]:
        ...

    @abstractmethod
    def daily_counts(self, since: datetime) -> list[tuple[str, int]]:
        """(YYYY-MM-DD, count) per UTC day of ``timestamp`` since ``since``."""

    @abstractmethod
    def tool_events(self, since: datetime) -> list[tuple[str, dict]]:
        """(event, data) of tool_call/tool_error rows with ``timestamp`` since ``since``."""

    @abstractmethod
    def size_info(self) -> Optional[SizeInfo]:
        ...

    @abstractmethod
    def latest_parent(self, session_id: str) -> Optional[str]:
        """parent_session_id of the newest event in this physical session."""

    @abstractmethod
    def first_session_start(self, session_id: str) -> Optional[SessionStartRef]:
        ...

    @abstractmethod
    def last_session_start(self, server_id: str, user_id: str) -> Optional[SessionStartRef]:
        ...


def create_driver(settings: Settings) -> EventDriver:
    """Instantiate the driver selected by DB_TYPE."""
    if settings.db_type == EMBEDDED:
        from .embedded import EmbeddedDriver
        driver = EmbeddedDriver(settings.db_path, max_size=settings.db_max_size)
    else:
        from .networked import NetworkedDriver
        if not settings.database_url:
            raise ValueError("DATABASE_URL is required when DB_TYPE is networked-sql")
        driver = NetworkedDriver(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            ssl=settings.database_ssl,
            ssl_verify=settings.database_ssl_verify,
            max_size=settings.db_max_size,
        )
    logger.info("storage_driver_selected", driver=driver.name)
    return driver
