"""Reduce the camelCase / snake_case / nested-session dialects to one record."""
from datetime import datetime
from typing import Any, Optional

from .models import EventRecord, TelemetryPayload, as_utc

_SESSION_KEYS = ("id", "sessionId", "session_id")


def _text(value: Any) -> Optional[str]:
    """Non-empty identifier text, or None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _first(*values: Any) -> Optional[str]:
    for value in values:
        text = _text(value)
        if text is not None:
            return text
    return None


def _session_from(container: Any) -> Optional[str]:
    if not isinstance(container, dict):
        return None
    session = container.get("session")
    nested = session if isinstance(session, dict) else {}
    return _first(
        container.get("sessionId"),
        container.get("session_id"),
        session if isinstance(session, str) else None,
        *(nested.get(key) for key in _SESSION_KEYS),
    )


def resolve_session_id(body: dict) -> Optional[str]:
    """First non-empty session id, probing the top level before data.*."""
    return _session_from(body) or _session_from(body.get("data"))


def normalize(payload: TelemetryPayload, received_at: datetime) -> EventRecord:
    """Build the canonical record. camelCase wins when both casings are sent."""
    body = payload.model_dump()
    data = body.get("data")
    return EventRecord(
        event=payload.event,
        timestamp=as_utc(payload.timestamp),
        server_id=_first(payload.serverId, payload.server_id),
        version=_first(payload.version),
        session_id=resolve_session_id(body),
        user_id=_first(payload.userId, payload.user_id),
        data=data if isinstance(data, dict) else {},
        received_at=as_utc(received_at),
    )
