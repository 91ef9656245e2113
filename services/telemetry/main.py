"""Telemetry service - MCP event ingestion, query and deletion."""
import asyncio
import hmac
import json
import logging
import time
from typing import Callable, Optional

import psutil
import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from .aggregates import describe_size
from .config import Settings
from .errors import (
    ClientDisconnected,
    MalformedRequest,
    NotFound,
    PayloadTooLarge,
    TelemetryError,
    Unauthorized,
    ValidationFailed,
)
from .models import MAX_SESSIONS_LIMIT, EventFilter, as_int, utcnow
from .normalizer import normalize
from .storage import create_driver
from .store import EventStore
from .validation import validate_payload
from .writer import IngestWriter


def configure_logging(level: str = "INFO"):
    """Structured JSON logs, filtered by LOG_LEVEL."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
    )


logger = structlog.get_logger()

# Seconds between client-disconnect checks while a read is running
DISCONNECT_POLL_INTERVAL = 0.1

api = APIRouter(prefix="/api")


def iso(value) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def require_operator(request: Request):
    """Bearer-token gate for /api/* when OPERATOR_TOKEN is configured."""
    token = request.app.state.settings.operator_token
    if not token:
        return
    header = request.headers.get("authorization", "")
    scheme, _, supplied = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip().encode(), token.encode()):
        logger.warning("operator_auth_failed", path=request.url.path)
        raise Unauthorized()


def get_store(request: Request) -> EventStore:
    return request.app.state.store


async def run_read(request: Request, fn: Callable, *args, **kwargs):
    """Run a blocking read in the thread pool; give up if the client goes away."""
    task = asyncio.ensure_future(run_in_threadpool(fn, *args, **kwargs))
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
        if done:
            return task.result()
        if await request.is_disconnected():
            task.cancel()
            logger.info("read_abandoned", path=request.url.path)
            raise ClientDisconnected()


def parse_event_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise MalformedRequest("Invalid event ID")


async def read_body(request: Request, limit: int) -> bytes:
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > limit:
        raise PayloadTooLarge()
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge()
    return bytes(body)


async def ingest_event(request: Request):
    """Accept one telemetry event and hand it to the writer."""
    settings = request.app.state.settings
    raw = await read_body(request, settings.max_payload_bytes)
    try:
        body = json.loads(raw)
    except ValueError:
        raise MalformedRequest()

    payload = validate_payload(body)
    received_at = utcnow()
    record = normalize(payload, received_at)
    await request.app.state.writer.submit(record)

    logger.debug("event_accepted", kind=record.event, session_id=record.session_id)
    return {"status": "ok", "receivedAt": iso(received_at)}


@api.get("/events")
async def list_events(request: Request, store: EventStore = Depends(get_store)):
    flt = EventFilter.from_query(request.query_params)
    result = await run_read(request, store.query, flt)
    return {
        "events": [row.model_dump(mode="json") for row in result.rows],
        "total": result.total,
        "limit": result.limit,
        "offset": result.offset,
        "hasMore": result.has_more,
    }


@api.get("/events/{event_id}")
async def get_event(event_id: str, request: Request, store: EventStore = Depends(get_store)):
    event = await run_read(request, store.get, parse_event_id(event_id))
    if event is None:
        raise NotFound()
    return {"status": "ok", "event": event.model_dump(mode="json")}


@api.get("/stats")
async def get_stats(request: Request, store: EventStore = Depends(get_store)):
    flt = EventFilter.from_query(request.query_params)
    return {"total": await run_read(request, store.count, flt)}


@api.get("/event-types")
async def get_event_types(request: Request, store: EventStore = Depends(get_store)):
    flt = EventFilter.from_query(request.query_params)
    counts = await run_read(request, store.event_type_counts, flt)
    return [count.model_dump() for count in counts]


@api.get("/sessions")
async def list_sessions(request: Request, store: EventStore = Depends(get_store)):
    params = request.query_params
    flt = EventFilter.from_query(params)
    limit = params.get("limit")
    limit = min(max(as_int(limit, MAX_SESSIONS_LIMIT), 0), MAX_SESSIONS_LIMIT) if limit else None
    offset = max(as_int(params.get("offset"), 0), 0)
    sessions = await run_read(request, store.sessions, flt, limit=limit, offset=offset)
    return [session.model_dump(mode="json") for session in sessions]


@api.get("/activity")
async def get_activity(request: Request, store: EventStore = Depends(get_store)):
    """Raw points for client-side bucketing, oldest first."""
    cap = request.app.state.settings.activity_limit
    flt = EventFilter.from_query(request.query_params)
    points = await run_read(request, store.activity, flt, cap)
    return {
        "events": [point.model_dump(mode="json") for point in points],
        "limit": cap,
        "truncated": len(points) >= cap,
    }


def window_days(request: Request) -> int:
    return min(max(as_int(request.query_params.get("days"), 30), 1), 365)


@api.get("/daily-stats")
async def get_daily_stats(request: Request, store: EventStore = Depends(get_store)):
    counts = await run_read(request, store.daily_counts, window_days(request))
    return [count.model_dump() for count in counts]


@api.get("/tool-usage-stats")
async def get_tool_usage_stats(request: Request, store: EventStore = Depends(get_store)):
    """Most used tools with call and error counts."""
    days = window_days(request)
    tools = await run_read(request, store.tool_usage, days)
    return {"tools": [tool.model_dump() for tool in tools], "days": days}


@api.get("/database-size")
async def get_database_size(request: Request, store: EventStore = Depends(get_store)):
    info = await run_read(request, store.size_info)
    if info is None:
        raise NotFound("Database size not available")
    return describe_size(info)


@api.delete("/events/{event_id}")
async def delete_event(event_id: str, store: EventStore = Depends(get_store)):
    deleted = await run_in_threadpool(store.delete, parse_event_id(event_id))
    if not deleted:
        raise NotFound()
    return {"status": "ok", "message": "Event deleted successfully"}


@api.delete("/events")
async def delete_events(request: Request, store: EventStore = Depends(get_store)):
    session_id = request.query_params.get("sessionId")
    if session_id:
        deleted = await run_in_threadpool(store.delete_session, session_id)
        return {"status": "ok", "deletedCount": deleted, "sessionId": session_id}
    deleted = await run_in_threadpool(store.delete_all)
    return {"status": "ok", "deletedCount": deleted}


def wants_json(request: Request) -> bool:
    fmt = request.query_params.get("format")
    if fmt:
        return fmt.lower() == "json"
    return "application/json" in request.headers.get("accept", "")


async def health(request: Request):
    """Liveness as plain text; readiness details as JSON on request."""
    if not wants_json(request):
        return PlainTextResponse("ok")

    state = request.app.state
    db_status, total = "connected", None
    try:
        await run_in_threadpool(state.store.ping)
        total = await run_in_threadpool(state.store.count, EventFilter())
    except TelemetryError as e:
        db_status = "error"
        logger.error("health_check_failed", error=e.message)

    process = psutil.Process()
    memory = process.memory_info()
    healthy = db_status == "connected"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": iso(utcnow()),
            "uptime": int(time.monotonic() - state.started_at),
            "version": state.settings.app_version,
            "environment": state.settings.environment,
            "memory": {"rss": memory.rss, "vms": memory.vms, "percent": round(process.memory_percent(), 2)},
            "database": {"type": state.settings.db_type, "status": db_status},
            "stats": {"totalEvents": total},
            "ingest": {"pending": state.writer.pending},
        },
    )


async def telemetry_error_handler(request: Request, exc: TelemetryError):
    content = {"status": "error", "message": exc.message}
    if isinstance(exc, ValidationFailed):
        content["errors"] = exc.errors
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error_type=type(exc).__name__, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"status": "error", "message": "Validation failed", "errors": errors})


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"status": "error", "message": "Internal server error"})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="MCP Telemetry Service",
        description="Ingestion, query and deletion of MCP server telemetry events",
        version=settings.app_version,
    )
    app.state.settings = settings

    app.add_api_route("/telemetry", ingest_event, methods=["POST"])
    app.add_api_route("/health", health, methods=["GET"])
    app.include_router(api, dependencies=[Depends(require_operator)])

    app.add_exception_handler(TelemetryError, telemetry_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.on_event("startup")
    async def startup():
        app.state.started_at = time.monotonic()
        try:
            driver = create_driver(settings)
            await run_in_threadpool(driver.init)
        except (TelemetryError, ValueError) as e:
            logger.error("storage_init_failed", driver=settings.db_type, error=getattr(e, "message", str(e)))
            raise
        app.state.driver = driver
        app.state.store = EventStore(driver)
        app.state.writer = IngestWriter(
            app.state.store,
            queue_size=settings.ingest_queue_size,
            workers=settings.ingest_workers,
        )
        await app.state.writer.start()
        logger.info(
            "telemetry_service_started",
            driver=driver.name,
            environment=settings.environment,
            version=settings.app_version,
        )

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.writer.stop()
        await run_in_threadpool(app.state.driver.close)
        logger.info("telemetry_service_stopped")

    return app


app = create_app()


def run():
    import uvicorn
    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)


if __name__ == "__main__":
    run()
