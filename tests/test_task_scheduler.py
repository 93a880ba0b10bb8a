"""Tests for prospector/handlers/task_scheduler.py.

Runs against the SQLite task store.  Timers are exercised by patching
_fire_times so ticks arrive within milliseconds, or by driving a fake clock.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from prospector.errors import ScheduleResolutionFailure
from prospector.events import EventBus
from prospector.handlers.schedule_parser import ScheduleResolver
from prospector.handlers.task_scheduler import DEFAULT_TASKS, TaskScheduler


def _recording_handlers(calls: list, fail: set[str] | None = None) -> dict:
    fail = fail or set()

    def make(task_type: str):
        async def handler(task):
            calls.append((task_type, task.id))
            if task_type in fail:
                raise RuntimeError(f"{task_type} exploded")

        return handler

    return {t: make(t) for t in ("campaign_check", "lead_research", "send_report", "custom")}


def _ticks_every(seconds: float):
    """Replacement for TaskScheduler._fire_times: each tick lands `seconds` from now."""

    def fire_times(cron_expression):
        while True:
            yield datetime.now(UTC) + timedelta(seconds=seconds)

    return fire_times


async def _wait_for_executions(task_store, task_id, count: int, timeout: float = 5.0) -> list:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    executions = await task_store.list_executions(task_id)
    while len(executions) < count and loop.time() < deadline:
        await asyncio.sleep(0.01)
        executions = await task_store.list_executions(task_id)
    return executions


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def scheduler(task_store, calls):
    return TaskScheduler(task_store, ScheduleResolver(), _recording_handlers(calls), enabled=False)


class TestConstruction:
    async def test_rejects_unknown_task_type_handler(self, task_store):
        async def handler(task):
            pass

        with pytest.raises(ValueError):
            TaskScheduler(task_store, ScheduleResolver(), {"make_coffee": handler})

    async def test_rejects_sync_handler(self, task_store):
        def handler(task):
            pass

        with pytest.raises(TypeError):
            TaskScheduler(task_store, ScheduleResolver(), {"custom": handler})


class TestCreateTask:
    async def test_phrase_persisted_as_cron(self, scheduler, task_store):
        task = await scheduler.create_task("lead_research", "every 30 minutes", description="x")
        stored = await task_store.get(task.id)
        assert stored.cron_expression == "*/30 * * * *"
        assert stored.active is True
        assert stored.created_by == "ai_assistant"

    async def test_literal_cron_persisted_unchanged(self, scheduler, task_store):
        task = await scheduler.create_task("send_report", "15 8 * * 1-5")
        assert (await task_store.get(task.id)).cron_expression == "15 8 * * 1-5"

    async def test_parameters_persisted(self, scheduler, task_store):
        task = await scheduler.create_task(
            "custom", "every hour", parameters={"prompt": "summarize replies"}
        )
        assert (await task_store.get(task.id)).parameters == {"prompt": "summarize replies"}

    async def test_unknown_task_type_rejected(self, scheduler, task_store):
        with pytest.raises(ValueError):
            await scheduler.create_task("make_coffee", "every hour")
        assert await task_store.count() == 0

    async def test_unresolvable_schedule_not_persisted(self, scheduler, task_store):
        with pytest.raises(ScheduleResolutionFailure):
            await scheduler.create_task("custom", "when the moon is full")
        assert await task_store.count() == 0

    async def test_disabled_scheduler_tracks_without_arming(self, scheduler):
        task = await scheduler.create_task("campaign_check", "every hour")
        assert scheduler.armed_task_ids() == [task.id]
        assert scheduler._timers[task.id] is None


class TestExecuteTask:
    async def test_success_records_completed(self, scheduler, task_store, calls):
        task = await scheduler.create_task("send_report", "every morning")
        execution = await scheduler.execute_task(task)
        assert execution.status == "completed"
        assert execution.error is None
        assert calls == [("send_report", task.id)]

    async def test_handler_failure_records_failed(self, task_store, calls):
        scheduler = TaskScheduler(
            task_store, ScheduleResolver(),
            _recording_handlers(calls, fail={"campaign_check"}), enabled=False,
        )
        task = await scheduler.create_task("campaign_check", "every hour")
        execution = await scheduler.execute_task(task)
        assert execution.status == "failed"
        assert execution.error == "RuntimeError: campaign_check exploded"

    async def test_missing_handler_records_failed(self, task_store):
        scheduler = TaskScheduler(task_store, ScheduleResolver(), {}, enabled=False)
        task = await task_store.create("custom", "0 * * * *")
        execution = await scheduler.execute_task(task)
        assert execution.status == "failed"
        assert "custom" in execution.error

    async def test_executions_listed_newest_first(self, scheduler, calls):
        task = await scheduler.create_task("send_report", "every morning")
        await scheduler.execute_task(task)
        await scheduler.execute_task(task)
        executions = await scheduler.list_executions(task.id)
        assert len(executions) == 2
        assert executions[0].executed_at >= executions[1].executed_at

    async def test_events_emitted(self, task_store, calls):
        bus = EventBus()
        scheduler = TaskScheduler(
            task_store, ScheduleResolver(),
            _recording_handlers(calls, fail={"custom"}), enabled=False, bus=bus,
        )
        ok = await scheduler.create_task("send_report", "every morning")
        bad = await scheduler.create_task("custom", "every hour")
        await scheduler.execute_task(ok)
        await scheduler.execute_task(bad)

        types = [bus._queue.get_nowait().type for _ in range(bus.pending)]
        assert types == ["task_executed", "task_failed"]


class TestTimers:
    async def test_timer_fires_and_keeps_firing_after_failure(self, task_store, calls, monkeypatch):
        scheduler = TaskScheduler(
            task_store, ScheduleResolver(),
            _recording_handlers(calls, fail={"campaign_check"}), enabled=True,
        )
        monkeypatch.setattr(scheduler, "_fire_times", _ticks_every(0.01))

        task = await scheduler.create_task("campaign_check", "every hour")
        try:
            executions = await _wait_for_executions(task_store, task.id, 2)
        finally:
            await scheduler.stop_all()

        assert len(executions) >= 2
        assert all(e.status == "failed" for e in executions)

    async def test_rearm_replaces_timer(self, task_store, calls, monkeypatch):
        scheduler = TaskScheduler(task_store, ScheduleResolver(), _recording_handlers(calls))
        monkeypatch.setattr(scheduler, "_fire_times", _ticks_every(3600))

        task = await scheduler.create_task("send_report", "every morning")
        first = scheduler._timers[task.id]
        scheduler.schedule_task(task)
        second = scheduler._timers[task.id]
        try:
            assert first is not second
            await asyncio.sleep(0.01)
            assert first.cancelled() or first.done()
            assert scheduler.armed_task_ids() == [task.id]
        finally:
            await scheduler.stop_all()

    async def test_start_arms_active_tasks(self, task_store, calls, monkeypatch):
        await task_store.create("send_report", "0 9 * * *")
        await task_store.create("campaign_check", "0 * * * *")
        await task_store.create("custom", "not a cron")

        scheduler = TaskScheduler(task_store, ScheduleResolver(), _recording_handlers(calls))
        monkeypatch.setattr(scheduler, "_fire_times", _ticks_every(3600))
        try:
            armed = await scheduler.start()
            assert armed == 2
            assert len(scheduler.armed_task_ids()) == 2
        finally:
            await scheduler.stop_all()

    async def test_stop_all_clears_timers(self, task_store, calls, monkeypatch):
        scheduler = TaskScheduler(task_store, ScheduleResolver(), _recording_handlers(calls))
        monkeypatch.setattr(scheduler, "_fire_times", _ticks_every(3600))
        await scheduler.create_task("send_report", "every morning")
        timer = next(iter(scheduler._timers.values()))

        await scheduler.stop_all()
        assert scheduler.armed_task_ids() == []
        assert timer.done()

    async def test_fire_times_strictly_increasing(self, scheduler):
        now = datetime.now(UTC)
        ticks = scheduler._fire_times("* * * * *")
        first, second = next(ticks), next(ticks)
        assert now < first <= now + timedelta(seconds=60)
        assert second - first == timedelta(minutes=1)

    async def test_early_wakeup_fires_each_tick_once(self, task_store, monkeypatch):
        scheduler = TaskScheduler(task_store, ScheduleResolver(), {}, enabled=True)
        clock = {"now": datetime(2026, 1, 1, 8, 59, tzinfo=UTC)}
        fired: list[datetime] = []
        real_sleep = asyncio.sleep

        async def early_sleep(seconds):
            # Wake a millisecond before the requested instant
            clock["now"] += timedelta(seconds=max(seconds - 0.001, 0.001))
            await real_sleep(0)

        async def handler(task):
            fired.append(clock["now"])
            if len(fired) == 1:
                # A slow first run overruns three ticks
                clock["now"] += timedelta(minutes=3, seconds=30)

        scheduler._handlers["campaign_check"] = handler
        monkeypatch.setattr(scheduler, "_now", lambda: clock["now"])
        monkeypatch.setattr(scheduler, "_sleep", early_sleep)

        task = await task_store.create("campaign_check", "* * * * *")
        scheduler.schedule_task(task)
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 5.0
            while len(fired) < 3 and loop.time() < deadline:
                await real_sleep(0.01)
        finally:
            await scheduler.stop_all()

        base = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)
        assert fired[:3] == [base, base + timedelta(minutes=4), base + timedelta(minutes=5)]
        assert len(fired) == len(set(fired))


class TestSeedDefaults:
    async def test_seeds_empty_table(self, scheduler, task_store):
        created = await scheduler.seed_defaults()
        assert len(created) == len(DEFAULT_TASKS)
        crons = {t.task_type: t.cron_expression for t in created}
        assert crons == {
            "send_report": "0 9 * * *",
            "campaign_check": "0 * * * *",
            "lead_research": "0 */4 * * *",
        }
        assert all(t.created_by == "system" for t in created)

    async def test_does_not_reseed(self, scheduler, task_store):
        await scheduler.create_task("custom", "every hour")
        assert await scheduler.seed_defaults() == []
        assert await task_store.count() == 1
