"""Event store: parent-session resolution and read shaping over a driver."""
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import structlog

from .aggregates import fill_daily_counts, summarize_sessions, tally_tool_usage
from .models import (
    ActivityPoint,
    DailyCount,
    EventFilter,
    EventRecord,
    EventTypeCount,
    QueryResult,
    SessionSummary,
    SizeInfo,
    StoredEvent,
    ToolUsage,
    utcnow,
)
from .storage import EventDriver

logger = structlog.get_logger()

SESSION_START = "session_start"
# Reconnects within this window continue the same logical session
PARENT_SESSION_WINDOW = timedelta(hours=4)


class EventStore:
    def __init__(self, driver: EventDriver):
        self.driver = driver

    def resolve_parent(self, record: EventRecord) -> Optional[str]:
        """Logical session the record belongs to, or None without a session id."""
        session_id = record.session_id
        if not session_id:
            return None

        if record.event != SESSION_START:
            parent = self.driver.latest_parent(session_id)
            if parent:
                return parent
            start = self.driver.first_session_start(session_id)
            if start is not None:
                return start.parent_session_id or start.session_id or session_id
            return session_id

        if not record.server_id or not record.user_id:
            return session_id

        previous = self.driver.last_session_start(record.server_id, record.user_id)
        if previous is None:
            return session_id
        # Out-of-order starts (negative gap) also join
        if record.timestamp - previous.timestamp <= PARENT_SESSION_WINDOW:
            return previous.parent_session_id or previous.session_id or session_id
        return session_id

    def record(self, record: EventRecord) -> int:
        record = record.model_copy(update={"parent_session_id": self.resolve_parent(record)})
        event_id = self.driver.insert(record)
        logger.debug(
            "event_stored",
            event_id=event_id,
            kind=record.event,
            session_id=record.session_id,
            parent_session_id=record.parent_session_id,
        )
        return event_id

    def get(self, event_id: int) -> Optional[StoredEvent]:
        return self.driver.get_by_id(event_id)

    def delete(self, event_id: int) -> bool:
        deleted = self.driver.delete_by_id(event_id)
        if deleted:
            logger.info("event_deleted", event_id=event_id)
        return deleted

    def delete_session(self, session_id: str) -> int:
        count = self.driver.delete_by_session(session_id)
        logger.info("session_deleted", session_id=session_id, deleted_count=count)
        return count

    def delete_all(self) -> int:
        count = self.driver.delete_all()
        logger.warning("all_events_deleted", deleted_count=count)
        return count

    def query(self, flt: EventFilter) -> QueryResult:
        rows, total = self.driver.query(flt)
        return QueryResult(
            rows=rows,
            total=total,
            limit=flt.limit,
            offset=flt.offset,
            has_more=flt.offset + len(rows) < total,
        )

    def count(self, flt: EventFilter) -> int:
        return self.driver.count(flt)

    def event_type_counts(self, flt: EventFilter) -> list[EventTypeCount]:
        return self.driver.count_by_event(flt)

    def sessions(self, flt: EventFilter, limit: Optional[int] = None, offset: int = 0) -> list[SessionSummary]:
        return summarize_sessions(self.driver.sessions(flt, limit=limit, offset=offset))

    def activity(self, flt: EventFilter, cap: int) -> list[ActivityPoint]:
        return self.driver.activity(flt, cap)

    def daily_counts(self, days: int) -> list[DailyCount]:
        today = utcnow().date()
        since = datetime.combine(today - timedelta(days=days - 1), time.min, tzinfo=timezone.utc)
        return fill_daily_counts(self.driver.daily_counts(since), today, days)

    def tool_usage(self, days: int) -> list[ToolUsage]:
        since = datetime.combine(utcnow().date() - timedelta(days=days - 1), time.min, tzinfo=timezone.utc)
        return tally_tool_usage(self.driver.tool_events(since))

    def size_info(self) -> Optional[SizeInfo]:
        return self.driver.size_info()

    def ping(self):
        return self.driver.ping()
