"""Lifecycle events for queued jobs, scheduled tasks and assistant runs.

Queue consumers, the task scheduler and the run driver publish here; the
main consumer is the failure notifier, which turns every failed job or
scheduled task into a high-priority operator notification.  Publishing
never blocks the emitter and a broken subscriber never affects the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from prospector.store.notifications import NotificationStore

logger = logging.getLogger(__name__)

JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"
TASK_EXECUTED = "task_executed"
TASK_FAILED = "task_failed"
RUN_COMPLETED = "run_completed"
RUN_FAILED = "run_failed"

# Failures an operator should hear about, with the notification title prefix
FAILURE_TITLES = {
    JOB_FAILED: "Job failed",
    TASK_FAILED: "Scheduled task failed",
}

EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    """Something that happened to a job, a scheduled task or a run.

    ``source`` is the queue name for jobs, the task id for scheduled tasks
    and the user id for runs.
    """

    type: str
    source: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def error(self) -> str:
        return self.data.get("error") or ""


class EventBus:
    """Fan-out of lifecycle events to async subscribers on a background task."""

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self.dropped: Counter[str] = Counter()

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)
        logger.debug("Subscribed %s to %s", handler.__qualname__, event_type)

    def on_failures(self, handler: EventHandler) -> None:
        """Subscribe to every failure an operator is notified about."""
        for event_type in FAILURE_TITLES:
            self.on(event_type, handler)

    async def emit(self, event: Event) -> None:
        """Queue an event; when the queue is full the event is dropped and counted."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped[event.type] += 1
            logger.warning(
                "Event queue full, dropped %s from %s (%d dropped so far)",
                event.type, event.source, self.dropped[event.type],
            )

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._deliver_forever(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Cancel delivery, then deliver whatever was still queued."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            drained = 0
            while not self._queue.empty():
                await self._deliver(self._queue.get_nowait())
                drained += 1
            if drained:
                logger.info("Delivered %d queued event(s) on shutdown", drained)
        logger.info("Event bus stopped")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _deliver_forever(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Delivering %s from %s failed", event.type, event.source)

    async def _deliver(self, event: Event) -> None:
        subscribers = self._subscribers.get(event.type)
        if subscribers:
            await asyncio.gather(*(self._call(h, event) for h in subscribers))

    async def _call(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Subscriber %s failed on %s from %s",
                handler.__qualname__, event.type, event.source,
            )


def failure_notifier(notifications: NotificationStore) -> EventHandler:
    """Build the subscriber that records failures as operator notifications."""

    async def notify(event: Event) -> None:
        prefix = FAILURE_TITLES.get(event.type, "Failure")
        await notifications.send(
            type=event.type,
            title=f"{prefix} ({event.source})",
            content=event.error,
            priority="high",
        )

    return notify
