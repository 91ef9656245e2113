from datetime import date

import pytest

from services.telemetry.aggregates import (
    describe_size,
    extract_user_name,
    fill_daily_counts,
    format_bytes,
    tally_tool_usage,
)
from services.telemetry.models import SizeInfo


@pytest.mark.parametrize("start_data, expected", [
    ({"user": {"name": "Alice"}}, "Alice"),
    ('{"user": {"name": "Bob"}}', "Bob"),
    ({"user": {"name": 42}}, None),
    ({"user": {"name": None}}, None),
    ({"user": "Alice"}, None),
    ({}, None),
    (None, None),
    ("{not json", None),
    ("[1, 2]", None),
])
def test_extract_user_name(start_data, expected):
    assert extract_user_name(start_data) == expected


def test_fill_daily_counts():
    counts = fill_daily_counts([("2025-01-13", 4), ("2025-01-15", 1)], date(2025, 1, 15), 4)
    assert [(c.date, c.count) for c in counts] == [
        ("2025-01-12", 0),
        ("2025-01-13", 4),
        ("2025-01-14", 0),
        ("2025-01-15", 1),
    ]


def test_tally_tool_usage():
    rows = [
        ("tool_call", {"toolName": "search"}),
        ("tool_call", {"toolName": " search "}),
        ("tool_error", {"toolName": "search"}),
        ("tool_call", {"tool": "fetch"}),
        ("tool_call", {"toolName": "", "tool": "fetch"}),
        ("tool_call", {"toolName": 7}),
        ("tool_call", {"toolName": "   "}),
        ("tool_error", {}),
    ]
    assert [u.model_dump() for u in tally_tool_usage(rows)] == [
        {"tool": "search", "successful": 2, "errors": 1},
        {"tool": "fetch", "successful": 2, "errors": 0},
    ]


def test_tally_tool_usage_keeps_busiest():
    rows = [("tool_call", {"toolName": f"t{n}"}) for n in range(8) for _ in range(n + 1)]
    tools = tally_tool_usage(rows)
    assert [u.tool for u in tools] == ["t7", "t6", "t5", "t4", "t3", "t2"]


@pytest.mark.parametrize("size, expected", [
    (0, "0 Bytes"),
    (512, "512 Bytes"),
    (1024, "1 KB"),
    (1536, "1.5 KB"),
    (10 * 1024 * 1024, "10 MB"),
    (1024 ** 3, "1 GB"),
    (int(2.5 * 1024 ** 4), "2.5 TB"),
    (3 * 1024 ** 5, "3072 TB"),
])
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def test_describe_size_with_limit():
    body = describe_size(SizeInfo(size=256 * 1024 * 1024, max_size=1024 ** 3))
    assert body == {
        "status": "ok",
        "size": 256 * 1024 * 1024,
        "maxSize": 1024 ** 3,
        "sizeFormatted": "256 MB",
        "maxSizeFormatted": "1 GB",
        "percentage": 25,
        "displayText": "25% (256 MB / 1 GB)",
    }


def test_describe_size_without_limit():
    body = describe_size(SizeInfo(size=2048))
    assert body["percentage"] is None
    assert body["displayText"] == "2 KB"
