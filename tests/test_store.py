from datetime import datetime, timedelta, timezone

from services.telemetry.models import EventFilter, utcnow


def at(hour, minute=0):
    return datetime(2025, 1, 15, hour, minute, tzinfo=timezone.utc)


def test_event_without_session_has_no_parent(store, record):
    event_id = store.record(record(session_id=None))
    assert store.get(event_id).parent_session_id is None


def test_first_event_is_its_own_parent(store, record):
    event_id = store.record(record(session_id="s1"))
    assert store.get(event_id).parent_session_id == "s1"


def test_reconnect_within_window_joins_previous_session(store, record):
    store.record(record(event="session_start", timestamp=at(9), server_id="srv", user_id="u1", session_id="a"))
    second = store.record(record(event="session_start", timestamp=at(12), server_id="srv", user_id="u1", session_id="b"))
    call = store.record(record(event="tool_call", timestamp=at(12, 5), session_id="b"))

    assert store.get(second).parent_session_id == "a"
    assert store.get(call).parent_session_id == "a"

    sessions = store.sessions(EventFilter())
    assert [(s.session_id, s.count) for s in sessions] == [("a", 3)]
    assert store.query(EventFilter(session_id="a")).total == 3


def test_reconnect_after_window_opens_new_session(store, record):
    store.record(record(event="session_start", timestamp=at(6), server_id="srv", user_id="u1", session_id="a"))
    late = store.record(record(event="session_start", timestamp=at(10, 1), server_id="srv", user_id="u1", session_id="b"))
    assert store.get(late).parent_session_id == "b"


def test_session_start_without_user_opens_new_session(store, record):
    store.record(record(event="session_start", timestamp=at(9), server_id="srv", user_id="u1", session_id="a"))
    anon = store.record(record(event="session_start", timestamp=at(9, 5), server_id="srv", session_id="b"))
    assert store.get(anon).parent_session_id == "b"


def test_event_after_unparented_session_start_uses_its_session(store, record):
    # Rows written before parent sessions existed have no parent_session_id
    store.driver.insert(record(event="session_start", timestamp=at(10), session_id="c", parent_session_id=None))
    orphan = store.record(record(event="tool_call", timestamp=at(10, 1), session_id="c"))
    assert store.get(orphan).parent_session_id == "c"


def test_delete_session_spans_reconnects(store, record):
    store.record(record(event="session_start", timestamp=at(9), server_id="srv", user_id="u1", session_id="a"))
    store.record(record(event="session_start", timestamp=at(10), server_id="srv", user_id="u1", session_id="b"))
    store.record(record(session_id="other"))

    assert store.delete_session("a") == 2
    assert [s.session_id for s in store.sessions(EventFilter())] == ["other"]


def test_query_result_has_more(store, record):
    for _ in range(3):
        store.record(record())

    result = store.query(EventFilter(limit=2))
    assert (len(result.rows), result.total, result.has_more) == (2, 3, True)

    result = store.query(EventFilter(limit=2, offset=2))
    assert (len(result.rows), result.has_more) == (1, False)


def test_sessions_user_name(store, record):
    store.record(record(event="session_start", session_id="s1", data={"user": {"name": "Alice"}}))
    store.record(record(event="session_start", session_id="s2", data={"user": {"name": 42}}))
    store.record(record(event="tool_call", session_id="s3"))

    names = {s.session_id: s.user_name for s in store.sessions(EventFilter())}
    assert names == {"s1": "Alice", "s2": None, "s3": None}


def test_daily_counts_are_zero_filled(store, record):
    now = utcnow()
    store.record(record(timestamp=now))
    store.record(record(timestamp=now - timedelta(days=2)))
    store.record(record(timestamp=now - timedelta(days=40)))

    days = store.daily_counts(7)
    assert len(days) == 7
    assert days[-1].date == now.date().isoformat()
    assert days[-1].count == 1
    assert days[-3].count == 1
    assert sum(d.count for d in days) == 2


def test_tool_usage_window(store, record):
    now = utcnow()
    store.record(record(event="tool_call", timestamp=now, data={"toolName": "search"}))
    store.record(record(event="tool_error", timestamp=now - timedelta(days=2), data={"toolName": "search"}))
    store.record(record(event="tool_call", timestamp=now - timedelta(days=40), data={"toolName": "search"}))

    assert [u.model_dump() for u in store.tool_usage(7)] == [{"tool": "search", "successful": 1, "errors": 1}]
    assert store.tool_usage(1)[0].errors == 0


def test_count_increments_by_one(store, record):
    before = store.count(EventFilter(event_types=["tool_call"]))
    store.record(record(event="tool_call"))
    assert store.count(EventFilter(event_types=["tool_call"])) == before + 1
