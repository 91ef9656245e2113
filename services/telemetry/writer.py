"""Background ingestion: a bounded queue drained by a fixed set of workers."""
import asyncio
from typing import Optional

import structlog
from fastapi.concurrency import run_in_threadpool

from .errors import IngestSaturated, StorageUnavailable, TelemetryError
from .models import EventRecord
from .store import EventStore

logger = structlog.get_logger()


class IngestWriter:
    """Accepts normalized records and persists them off the request path.

    With ``queue_size=0`` records are written inline before the caller
    returns; the write still survives a cancelled request.
    """

    def __init__(self, store: EventStore, queue_size: int = 1000, workers: int = 1):
        self.store = store
        self.queue_size = queue_size
        self.workers = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def inline(self) -> bool:
        return self.queue_size <= 0

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self):
        if self.inline:
            logger.info("ingest_writer_started", mode="inline")
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [asyncio.create_task(self._worker(n)) for n in range(self.workers)]
        logger.info("ingest_writer_started", mode="queued", queue_size=self.queue_size, workers=self.workers)

    async def submit(self, record: EventRecord):
        if self.inline:
            await asyncio.shield(self._write(record))
            return
        if self._queue is None:
            raise StorageUnavailable("Ingestion writer is not running")
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.warning("ingest_queue_full", queue_size=self.queue_size)
            raise IngestSaturated()

    async def drain(self):
        """Wait until every queued record has been written."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self):
        if self._queue is not None:
            logger.info("ingest_writer_draining", pending=self.pending)
            await self._queue.join()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            self._queue = None
        logger.info("ingest_writer_stopped")

    async def _worker(self, n: int):
        while True:
            record = await self._queue.get()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    async def _write(self, record: EventRecord):
        try:
            await run_in_threadpool(self.store.record, record)
        except TelemetryError as e:
            logger.error("store_failed", kind=record.event, session_id=record.session_id, error=e.message)
        except Exception:
            logger.exception("store_failed", kind=record.event, session_id=record.session_id)
