"""Tests for Settings, Database and the lead/thread/notification/task stores."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from prospector.config import Settings


class TestSettings:
    def test_database_url_wins(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'x.db'}"
        assert Settings(DATABASE_URL=url).db_url == url

    def test_postgres_url_from_parts(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        s = Settings(
            DATABASE_URL="", DB_HOST="db", DB_PORT=5433, DB_USER="u", DB_PASSWORD="p", DB_NAME="leads",
        )
        assert s.db_url == "postgresql+asyncpg://u:p@db:5433/leads"

    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("PROSPECTOR_QUEUE_POLL_INTERVAL", "2.5")
        monkeypatch.setenv("PROSPECTOR_SCHEDULER_ENABLED", "false")
        s = Settings()
        assert s.queue_poll_interval == 2.5
        assert s.scheduler_enabled is False

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValidationError):
            Settings(queue_poll_interval=0)


class TestDatabase:
    async def test_has_table(self, bare_db):
        assert await bare_db.has_table("jobs") is False
        await bare_db.create_schema()
        assert await bare_db.has_table("jobs") is True
        assert await bare_db.has_table("scheduled_tasks") is True


class TestThreadStore:
    async def test_get_missing(self, thread_store):
        assert await thread_store.get("alice") is None

    async def test_save_and_overwrite(self, thread_store):
        await thread_store.save("alice", "thread_1")
        assert await thread_store.get("alice") == "thread_1"
        await thread_store.save("alice", "thread_2")
        assert await thread_store.get("alice") == "thread_2"


class TestLeadStore:
    async def test_create_rejects_bad_status(self, lead_store):
        with pytest.raises(ValueError):
            await lead_store.create("X", status="lost")

    async def test_search_case_insensitive(self, lead_store):
        await lead_store.create("Ada Lovelace", "ada@engines.io", "Analytical Engines")
        await lead_store.create("Alan Turing", "alan@bletchley.uk", "Bletchley Park")
        assert [lead.name for lead in await lead_store.search(search="ENGINES")] == ["Ada Lovelace"]
        assert len(await lead_store.search(limit=1)) == 1

    async def test_save_research_marks_researched(self, lead_store):
        lead = await lead_store.create("Ada Lovelace")
        await lead_store.save_research(lead.id, {"results": []})
        stored = await lead_store.get(lead.id)
        assert stored.status == "researched"
        assert stored.research == {"results": []}

    async def test_set_status(self, lead_store):
        lead = await lead_store.create("Ada Lovelace")
        await lead_store.set_status(lead.id, "replied")
        assert (await lead_store.get(lead.id)).status == "replied"
        with pytest.raises(ValueError):
            await lead_store.set_status(lead.id, "ghosted")

    async def test_count_by_status_since(self, lead_store):
        await lead_store.create("A")
        await lead_store.create("B", status="emailed")
        assert await lead_store.count_by_status() == {"new": 1, "emailed": 1}
        future = datetime.now(UTC) + timedelta(days=1)
        assert await lead_store.count_by_status(since=future) == {}


class TestNotificationStore:
    async def test_send_and_filter(self, notification_store):
        await notification_store.send("report", "Morning report")
        await notification_store.send("campaign_alert", "Low replies", priority="high")
        alerts = await notification_store.list(type="campaign_alert")
        assert [n.title for n in alerts] == ["Low replies"]
        assert len(await notification_store.list()) == 2


class TestTaskStore:
    async def test_list_active_and_count(self, task_store):
        await task_store.create("send_report", "0 9 * * *", description="report")
        await task_store.create("campaign_check", "0 * * * *")
        assert await task_store.count() == 2
        active = await task_store.list_active()
        assert [t.task_type for t in active] == ["send_report", "campaign_check"]

    async def test_execution_counts(self, task_store):
        task = await task_store.create("custom", "0 * * * *")
        await task_store.record_execution(task.id, "completed")
        await task_store.record_execution(task.id, "failed", "boom")
        assert await task_store.count_executions_by_status() == {"completed": 1, "failed": 1}
