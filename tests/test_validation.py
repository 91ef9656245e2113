import pytest

from services.telemetry.errors import MalformedRequest, ValidationFailed
from services.telemetry.validation import validate_payload

VALID = {
    "event": "tool_call",
    "timestamp": "2025-01-15T10:30:00Z",
    "sessionId": "s1",
    "data": {"toolName": "q", "duration": 150},
}


def fields(exc_info):
    return {err["field"] for err in exc_info.value.errors}


def test_valid_payload():
    payload = validate_payload(VALID)
    assert payload.event == "tool_call"
    assert payload.timestamp.utcoffset().total_seconds() == 0


def test_unknown_fields_are_allowed():
    validate_payload({**VALID, "clientName": "cursor", "extra": [1, 2]})


@pytest.mark.parametrize("body", [[], "text", 42, None])
def test_non_object_body(body):
    with pytest.raises(MalformedRequest):
        validate_payload(body)


def test_missing_timestamp():
    body = {k: v for k, v in VALID.items() if k != "timestamp"}
    with pytest.raises(ValidationFailed) as exc_info:
        validate_payload(body)
    assert "timestamp" in fields(exc_info)


def test_all_errors_are_reported():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_payload({"event": "", "timestamp": "yesterday"})
    assert {"event", "timestamp", "data"} <= fields(exc_info)


@pytest.mark.parametrize("timestamp", ["2025-01-15T10:30:00", 1736937000, "2025-01-15"])
def test_timestamp_needs_offset(timestamp):
    with pytest.raises(ValidationFailed) as exc_info:
        validate_payload({**VALID, "timestamp": timestamp})
    assert "timestamp" in fields(exc_info)


def test_data_must_be_a_mapping():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_payload({**VALID, "data": ["not", "a", "mapping"]})
    assert fields(exc_info) == {"data"}


def test_empty_data_is_accepted():
    assert validate_payload({**VALID, "data": {}}).data == {}


@pytest.mark.parametrize("kind", ["tool_error", "error"])
def test_error_kinds_may_omit_data(kind):
    body = {"event": kind, "timestamp": "2025-01-15T10:30:00+02:00"}
    assert validate_payload(body).data is None


def test_other_kinds_require_data():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_payload({"event": "tool_call", "timestamp": "2025-01-15T10:30:00Z"})
    assert fields(exc_info) == {"data"}


def test_optional_identifiers_must_be_strings():
    with pytest.raises(ValidationFailed) as exc_info:
        validate_payload({**VALID, "userId": {"id": 1}})
    assert "userId" in fields(exc_info)
