"""Data models for the telemetry service."""
from datetime import date, datetime, time, timezone
from typing import Any, Mapping, Optional, Union

from pydantic import AwareDatetime, BaseModel, Field, field_validator

from .errors import MalformedRequest

SORTABLE_COLUMNS = ("id", "event", "timestamp", "created_at", "server_id")
DEFAULT_ORDER_BY = "created_at"
DEFAULT_ORDER = "DESC"
DEFAULT_LIMIT = 50
MAX_LIMIT = 10000
MAX_SESSIONS_LIMIT = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TelemetryPayload(BaseModel):
    """Inbound event body. Both camelCase and snake_case keys are accepted."""
    event: str = Field(..., min_length=1, description="Event kind, e.g. tool_call")
    timestamp: AwareDatetime = Field(..., description="Client instant with offset")
    data: Optional[dict[str, Any]] = None
    serverId: Optional[str] = None
    server_id: Optional[str] = None
    version: Optional[str] = None
    sessionId: Optional[str] = None
    session_id: Optional[str] = None
    session: Optional[Union[str, dict[str, Any]]] = None
    userId: Optional[str] = None
    user_id: Optional[str] = None

    class Config:
        extra = "allow"
        json_schema_extra = {
            "example": {
                "event": "tool_call",
                "timestamp": "2025-01-15T10:30:00Z",
                "serverId": "mcp-server-1",
                "version": "1.4.0",
                "sessionId": "s1",
                "userId": "u1",
                "data": {"toolName": "query", "duration": 150}
            }
        }

    @field_validator("event")
    @classmethod
    def event_not_blank(cls, v):
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def timestamp_is_text(cls, v):
        if not isinstance(v, str):
            raise ValueError("must be an ISO-8601 date-time string")
        return v


class EventRecord(BaseModel):
    """Canonical event, ready for storage."""
    event: str
    timestamp: datetime
    server_id: Optional[str] = None
    version: Optional[str] = None
    session_id: Optional[str] = None
    parent_session_id: Optional[str] = None
    user_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime


class StoredEvent(EventRecord):
    """Event as persisted, with server-assigned id and created_at."""
    id: int
    created_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "id": 42,
                "event": "tool_call",
                "timestamp": "2025-01-15T10:30:00Z",
                "server_id": "mcp-server-1",
                "version": "1.4.0",
                "session_id": "s1",
                "parent_session_id": "s1",
                "user_id": "u1",
                "data": {"toolName": "query", "duration": 150},
                "received_at": "2025-01-15T10:30:00.120000Z",
                "created_at": "2025-01-15T10:30:00.130000Z"
            }
        }


def as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_date(value: str, field: str, end_of_day: bool = False) -> datetime:
    text = value.strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        raise MalformedRequest(f"Invalid {field}: expected ISO-8601 date or date-time")


class EventFilter(BaseModel):
    """Typed bundle of query options handed to the driver.

    Out-of-range paging values are clamped and unknown sort options fall
    back to ``created_at DESC`` without raising.
    """
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    event_types: list[str] = Field(default_factory=list)
    server_id: Optional[str] = None
    session_id: Optional[str] = None
    user_ids: list[str] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    order_by: str = DEFAULT_ORDER_BY
    order: str = DEFAULT_ORDER

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v):
        return min(max(as_int(v, DEFAULT_LIMIT), 0), MAX_LIMIT)

    @field_validator("offset", mode="before")
    @classmethod
    def clamp_offset(cls, v):
        return max(as_int(v, 0), 0)

    @field_validator("order_by", mode="before")
    @classmethod
    def whitelist_order_by(cls, v):
        return v if v in SORTABLE_COLUMNS else DEFAULT_ORDER_BY

    @field_validator("order", mode="before")
    @classmethod
    def whitelist_order(cls, v):
        if isinstance(v, str) and v.upper() in ("ASC", "DESC"):
            return v.upper()
        return DEFAULT_ORDER

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_in_utc(cls, v):
        return as_utc(v) if v is not None else None

    @classmethod
    def from_query(cls, params: Mapping) -> "EventFilter":
        """Build a filter from request query parameters (camelCase keys)."""
        def getlist(key):
            if hasattr(params, "getlist"):
                return [v for v in params.getlist(key) if v]
            value = params.get(key)
            if isinstance(value, (list, tuple)):
                return [v for v in value if v]
            return [value] if value else []

        start = params.get("startDate")
        end = params.get("endDate")
        return cls(
            limit=params.get("limit", DEFAULT_LIMIT),
            offset=params.get("offset", 0),
            event_types=getlist("eventType"),
            server_id=params.get("serverId") or None,
            session_id=params.get("sessionId") or None,
            user_ids=getlist("userId"),
            start_date=_parse_date(start, "startDate") if start else None,
            end_date=_parse_date(end, "endDate", end_of_day=True) if end else None,
            order_by=params.get("orderBy", DEFAULT_ORDER_BY),
            order=params.get("order", DEFAULT_ORDER),
        )


class QueryResult(BaseModel):
    rows: list[StoredEvent]
    total: int
    limit: int
    offset: int
    has_more: bool


class EventTypeCount(BaseModel):
    event: str
    count: int


class SessionRow(BaseModel):
    """Grouped session as returned by a driver, before payload extraction."""
    session_id: str
    count: int
    first_event: datetime
    last_event: datetime
    user_id: Optional[str] = None
    start_data: Any = None


class SessionSummary(BaseModel):
    session_id: str
    count: int
    first_event: datetime
    last_event: datetime
    user_id: Optional[str] = None
    user_name: Optional[str] = None


class SessionStartRef(BaseModel):
    """Latest session_start seen for a (server, user) pair."""
    timestamp: datetime
    session_id: Optional[str] = None
    parent_session_id: Optional[str] = None


class ActivityPoint(BaseModel):
    id: int
    event: str
    timestamp: datetime
    session_id: Optional[str] = None


class DailyCount(BaseModel):
    date: str
    count: int


class SizeInfo(BaseModel):
    size: int
    max_size: Optional[int] = None


class ToolUsage(BaseModel):
    tool: str
    successful: int = 0
    errors: int = 0
