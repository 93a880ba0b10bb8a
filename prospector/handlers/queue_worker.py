"""Named job queues -- producer and polling consumer over the Job Store.

Each Queue owns one asyncio consumer task that loops: fetch the oldest
pending job for its name -> run the handler -> mark completed/failed ->
repeat.  Empty polls sleep for the poll interval.  Jobs are processed
strictly one at a time per Queue instance.

There is no row-level locking: two processes consuming the same queue name
can pick up the same job.  Run a single consumer per queue name.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from prospector.errors import JobHandlerFailure
from prospector.events import JOB_COMPLETED, JOB_FAILED, Event, EventBus
from prospector.storage.models import Job
from prospector.store.jobs import JobStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], Awaitable[Any]]


class Queue:
    """Producer/consumer wrapper for one logical queue name."""

    def __init__(
        self,
        name: str,
        store: JobStore,
        poll_interval: float = 1.0,
        bus: EventBus | None = None,
    ) -> None:
        self.name = name
        self._store = store
        self._poll_interval = poll_interval
        self._bus = bus
        self._handler: JobHandler | None = None
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def consuming(self) -> bool:
        return self._task is not None and not self._task.done()

    async def enqueue(self, payload: Any) -> Job:
        """Insert a pending job. StorageUnavailable propagates to the caller."""
        job = await self._store.insert(self.name, payload)
        logger.info("Queued job %s on %s", job.id.hex[:8], self.name)
        return job

    def start_consumer(self, handler: JobHandler, poll_interval: float | None = None) -> None:
        """Spawn the polling loop for this queue."""
        if self.consuming:
            raise RuntimeError(f"Consumer already running for queue {self.name!r}")
        self._handler = handler
        if poll_interval is not None:
            self._poll_interval = poll_interval
        self._running = True
        self._task = asyncio.create_task(self._consume_loop(), name=f"queue-{self.name}")
        logger.info("Consumer started for queue %s (poll=%.1fs)", self.name, self._poll_interval)

    async def stop(self) -> None:
        """Cancel the consumer task and wait for it to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Consumer stopped for queue %s", self.name)

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _consume_loop(self) -> None:
        while self._running:
            try:
                processed = await self.process_next()
                if not processed:
                    await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Queue %s encountered unexpected error", self.name)
                await asyncio.sleep(self._poll_interval)

    async def process_next(self) -> bool:
        """Run one consumer tick. Returns True if a job was processed."""
        if self._handler is None:
            raise RuntimeError(f"No handler registered for queue {self.name!r}")

        if not await self._store.table_available():
            return False
        try:
            job = await self._store.fetch_next(self.name)
        except SQLAlchemyError as exc:
            logger.error("Failed to fetch jobs for %s queue: %s", self.name, exc)
            return False
        if job is None:
            return False

        try:
            await self._handler(job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = JobHandlerFailure(job.id.hex, exc)
            logger.exception("Job %s on %s failed", job.id.hex[:8], self.name)
            await self._store.mark_failed(job.id, str(failure))
            await self._emit(JOB_FAILED, job, error=str(failure))
            return True

        await self._store.mark_completed(job.id)
        await self._emit(JOB_COMPLETED, job)
        logger.debug("Job %s on %s completed", job.id.hex[:8], self.name)
        return True

    async def _emit(self, event_type: str, job: Job, error: str | None = None) -> None:
        if self._bus is None:
            return
        data: dict[str, Any] = {"job_id": job.id.hex}
        if error is not None:
            data["error"] = error[:500]
        await self._bus.emit(Event(type=event_type, source=self.name, data=data))


class QueueRegistry:
    """Process-wide set of named queues sharing one Job Store.

    Built once at startup and passed to whatever needs to produce or
    consume jobs.
    """

    def __init__(
        self,
        store: JobStore,
        poll_interval: float = 1.0,
        bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self._poll_interval = poll_interval
        self._bus = bus
        self._queues: dict[str, Queue] = {}

    def get(self, name: str) -> Queue:
        if name not in self._queues:
            self._queues[name] = Queue(name, self.store, self._poll_interval, self._bus)
        return self._queues[name]

    def names(self) -> list[str]:
        return list(self._queues)

    async def stop_all(self) -> None:
        for queue in self._queues.values():
            await queue.stop()
