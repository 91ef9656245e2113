"""Shaping of aggregate rows for the dashboard endpoints."""
import json
from datetime import date, timedelta
from typing import Any, Optional

import structlog

from .models import DailyCount, SessionRow, SessionSummary, SizeInfo, ToolUsage

logger = structlog.get_logger()

BYTE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")
TOOL_USAGE_LIMIT = 6


def extract_user_name(start_data: Any) -> Optional[str]:
    """data.user.name of a session_start payload, only when it is a string."""
    if isinstance(start_data, (str, bytes)):
        try:
            start_data = json.loads(start_data)
        except ValueError:
            logger.debug("session_start_data_undecodable")
            return None
    if not isinstance(start_data, dict):
        return None
    user = start_data.get("user")
    if not isinstance(user, dict):
        return None
    name = user.get("name")
    return name if isinstance(name, str) else None


def summarize_sessions(rows: list[SessionRow]) -> list[SessionSummary]:
    return [
        SessionSummary(
            session_id=row.session_id,
            count=row.count,
            first_event=row.first_event,
            last_event=row.last_event,
            user_id=row.user_id,
            user_name=extract_user_name(row.start_data),
        )
        for row in rows
    ]


def fill_daily_counts(counts: list[tuple[str, int]], today: date, days: int) -> list[DailyCount]:
    """One entry per day in the window ending today, oldest first, zeros included."""
    by_day = dict(counts)
    start = today - timedelta(days=days - 1)
    result = []
    for offset in range(days):
        day = (start + timedelta(days=offset)).isoformat()
        result.append(DailyCount(date=day, count=by_day.get(day, 0)))
    return result


def tally_tool_usage(rows: list[tuple[str, dict]], limit: int = TOOL_USAGE_LIMIT) -> list[ToolUsage]:
    """Calls and errors per tool name, busiest first.

    The name comes from ``data.toolName``, falling back to ``data.tool``;
    rows without a non-blank string name are skipped.
    """
    tally: dict[str, ToolUsage] = {}
    for kind, data in rows:
        name = data.get("toolName") or data.get("tool")
        if not isinstance(name, str) or not name.strip():
            continue
        usage = tally.setdefault(name.strip(), ToolUsage(tool=name.strip()))
        if kind == "tool_error":
            usage.errors += 1
        else:
            usage.successful += 1
    ranked = sorted(tally.values(), key=lambda u: (-(u.successful + u.errors), u.tool))
    return ranked[:limit]


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    i = 0
    while i < len(BYTE_UNITS) - 1 and size >= 1024 ** (i + 1):
        i += 1
    value = round(size / 1024 ** i, 2)
    if value == int(value):
        value = int(value)
    return f"{value} {BYTE_UNITS[i]}"


def describe_size(info: SizeInfo) -> dict:
    """Response body for the database-size endpoint."""
    size_text = format_bytes(info.size)
    max_text = format_bytes(info.max_size) if info.max_size else None
    percentage = round(info.size / info.max_size * 100) if info.max_size else None
    return {
        "status": "ok",
        "size": info.size,
        "maxSize": info.max_size,
        "sizeFormatted": size_text,
        "maxSizeFormatted": max_text,
        "percentage": percentage,
        "displayText": f"{percentage}% ({size_text} / {max_text})" if info.max_size else size_text,
    }
