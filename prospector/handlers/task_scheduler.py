"""Task Scheduler -- persists recurring tasks and fires them on cron ticks.

Each active task gets its own asyncio timer task that:
1. Sleeps until the next cron tick of the task's expression
2. Dispatches to the handler registered for the task type
3. Records a TaskExecution row (completed, or failed with the error)

A failing handler never disarms the timer; the task keeps firing on schedule.
With ``enabled=False`` task ids are tracked but no timer is ever armed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import UTC, datetime
from typing import Awaitable, Callable, Iterator
from uuid import UUID

from croniter import croniter

from prospector.errors import ScheduleResolutionFailure
from prospector.events import TASK_EXECUTED, TASK_FAILED, Event, EventBus
from prospector.handlers.schedule_parser import ScheduleResolver, is_valid_cron
from prospector.storage.models import ScheduledTask, TaskExecution
from prospector.store.tasks import TaskStore

logger = logging.getLogger(__name__)

TASK_TYPES = frozenset({"campaign_check", "lead_research", "send_report", "custom"})

TaskHandler = Callable[[ScheduledTask], Awaitable[None]]

# Proactive defaults seeded into an empty table
DEFAULT_TASKS: list[dict] = [
    {
        "task_type": "send_report",
        "cron_expression": "0 9 * * *",
        "description": "Morning lead generation briefing",
        "parameters": {"time_range": "today"},
    },
    {
        "task_type": "campaign_check",
        "cron_expression": "0 * * * *",
        "description": "Hourly campaign performance check",
        "parameters": {},
    },
    {
        "task_type": "lead_research",
        "cron_expression": "0 */4 * * *",
        "description": "Research new leads every four hours",
        "parameters": {"limit": 10},
    },
]


class TaskScheduler:
    """Arms one cron timer per active task and records every firing."""

    def __init__(
        self,
        store: TaskStore,
        resolver: ScheduleResolver,
        handlers: dict[str, TaskHandler],
        enabled: bool = True,
        bus: EventBus | None = None,
    ) -> None:
        unknown = set(handlers) - TASK_TYPES
        if unknown:
            raise ValueError(f"Handlers registered for unknown task types: {sorted(unknown)}")
        for task_type, handler in handlers.items():
            if not inspect.iscoroutinefunction(handler):
                raise TypeError(f"Handler for {task_type!r} must be an async function")

        self._store = store
        self._resolver = resolver
        self._handlers = dict(handlers)
        self._enabled = enabled
        self._bus = bus
        self._timers: dict[UUID, asyncio.Task | None] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def start(self) -> int:
        """Load every active task and arm its timer. Returns the number armed."""
        tasks = await self._store.list_active()
        armed = 0
        for task in tasks:
            if not is_valid_cron(task.cron_expression):
                failure = ScheduleResolutionFailure(task.description, task.cron_expression)
                logger.error("Not arming task %s: %s", task.id.hex[:8], failure)
                continue
            self.schedule_task(task)
            armed += 1
        logger.info(
            "Task scheduler started (%d task(s), timers %s)",
            armed, "armed" if self._enabled else "disabled",
        )
        return armed

    async def create_task(
        self,
        task_type: str,
        schedule_input: str,
        description: str = "",
        created_by: str = "ai_assistant",
        parameters: dict | None = None,
    ) -> ScheduledTask:
        """Resolve the schedule, persist the task and arm it.

        Raises:
            ValueError: unknown task type.
            ScheduleResolutionFailure: schedule could not be resolved to cron.
        """
        if task_type not in TASK_TYPES:
            raise ValueError(
                f"Unknown task type {task_type!r}; expected one of {sorted(TASK_TYPES)}"
            )
        cron_expression = await self._resolver.resolve(schedule_input)
        task = await self._store.create(
            task_type=task_type,
            cron_expression=cron_expression,
            description=description,
            created_by=created_by,
            parameters=parameters,
        )
        self.schedule_task(task)
        return task

    def schedule_task(self, task: ScheduledTask) -> None:
        """Arm (or re-arm) the timer for a task."""
        self._disarm(task.id)
        if not self._enabled:
            self._timers[task.id] = None
            return
        self._timers[task.id] = asyncio.create_task(
            self._timer_loop(task), name=f"task-timer-{task.id.hex[:8]}"
        )
        logger.debug("Armed task %s (%s)", task.id.hex[:8], task.cron_expression)

    async def stop_all(self) -> None:
        """Disarm every timer and clear tracking."""
        timers = [t for t in self._timers.values() if t is not None]
        for timer in timers:
            timer.cancel()
        for timer in timers:
            try:
                await timer
            except asyncio.CancelledError:
                pass
        self._timers.clear()
        logger.info("Task scheduler stopped")

    def armed_task_ids(self) -> list[UUID]:
        """Ids of every tracked task, armed or (when disabled) bookkept only."""
        return list(self._timers)

    async def list_executions(self, task_id: UUID, limit: int = 20) -> list[TaskExecution]:
        return await self._store.list_executions(task_id, limit=limit)

    async def seed_defaults(self) -> list[ScheduledTask]:
        """Pre-seed the proactive tasks when no task has been defined yet."""
        if await self._store.count() > 0:
            return []
        created = []
        for defaults in DEFAULT_TASKS:
            task = await self._store.create(created_by="system", **defaults)
            created.append(task)
        logger.info("Seeded %d default scheduled task(s)", len(created))
        return created

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _disarm(self, task_id: UUID) -> None:
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()

    def _now(self) -> datetime:
        return datetime.now(UTC)

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def _fire_times(self, cron_expression: str) -> Iterator[datetime]:
        """Successive cron ticks strictly after the moment the timer is armed."""
        schedule = croniter(cron_expression, self._now())
        while True:
            yield schedule.get_next(datetime)

    def _next_future_tick(self, fire_times: Iterator[datetime], task: ScheduledTask) -> datetime:
        now = self._now()
        next_fire = next(fire_times)
        skipped = 0
        while next_fire <= now:
            next_fire = next(fire_times)
            skipped += 1
        if skipped:
            logger.warning("Task %s skipped %d missed tick(s)", task.id.hex[:8], skipped)
        return next_fire

    async def _timer_loop(self, task: ScheduledTask) -> None:
        fire_times = self._fire_times(task.cron_expression)
        next_fire = next(fire_times)
        while True:
            try:
                delay = (next_fire - self._now()).total_seconds()
                if delay > 0:
                    # The sleep can end before the wall clock reaches the tick
                    await self._sleep(delay)
                    continue
                try:
                    await self.execute_task(task)
                finally:
                    next_fire = self._next_future_tick(fire_times, task)
            except asyncio.CancelledError:
                break
            except Exception:
                # Keep the timer alive: the next tick may succeed
                logger.exception("Timer for task %s failed", task.id.hex[:8])
                await self._sleep(1)

    async def execute_task(self, task: ScheduledTask) -> TaskExecution:
        """Fire a task once and record the outcome."""
        logger.info("Executing scheduled task %s: %s", task.id.hex[:8], task.description[:80])
        handler = self._handlers.get(task.task_type)
        error: str | None = None
        if handler is None:
            error = f"No handler registered for task type {task.task_type!r}"
            logger.warning("Task %s: %s", task.id.hex[:8], error)
        else:
            try:
                await handler(task)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                logger.exception("Task %s execution failed", task.id.hex[:8])

        status = "completed" if error is None else "failed"
        execution = await self._store.record_execution(task.id, status, error)
        await self._emit(task, status, error)
        return execution

    async def _emit(self, task: ScheduledTask, status: str, error: str | None) -> None:
        if self._bus is None:
            return
        data = {
            "task_id": task.id.hex,
            "task_type": task.task_type,
            "description": task.description[:200],
        }
        if error is not None:
            data["error"] = error[:500]
        await self._bus.emit(Event(
            type=TASK_EXECUTED if status == "completed" else TASK_FAILED,
            source=task.id.hex,
            data=data,
        ))
