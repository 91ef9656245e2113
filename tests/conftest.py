import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient

from services.telemetry.config import Settings
from services.telemetry.embedded import EmbeddedDriver
from services.telemetry.main import create_app
from services.telemetry.models import EventRecord, utcnow
from services.telemetry.networked import NetworkedDriver
from services.telemetry.store import EventStore


def make_record(event="tool_call", timestamp=None, **fields) -> EventRecord:
    fields.setdefault("data", {})
    return EventRecord(
        event=event,
        timestamp=timestamp or datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc),
        received_at=utcnow(),
        **fields,
    )


@pytest.fixture
def record():
    return make_record


@pytest.fixture(params=["embedded", "networked-sql"])
def driver(request, tmp_path):
    """Each driver contract test runs against both backends."""
    if request.param == "embedded":
        drv = EmbeddedDriver(tmp_path / "nested" / "events.db", max_size=1024 * 1024)
    else:
        drv = NetworkedDriver(f"sqlite:///{tmp_path / 'events.db'}", max_size=1024 * 1024)
    drv.init()
    yield drv
    drv.close()


@pytest.fixture
def store(tmp_path):
    drv = EmbeddedDriver(tmp_path / "store.db")
    drv.init()
    yield EventStore(drv)
    drv.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        db_type="embedded",
        db_path=tmp_path / "telemetry.db",
        ingest_queue_size=0,
        operator_token=None,
        max_payload_bytes=4096,
    )


@pytest.fixture
def make_client(settings):
    """Client factory; keyword overrides are applied to the test settings."""
    def _make(**overrides):
        return TestClient(create_app(settings.model_copy(update=overrides)), raise_server_exceptions=False)
    return _make


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c
