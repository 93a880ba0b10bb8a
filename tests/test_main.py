"""Tests for component startup/shutdown in prospector/main.py."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from prospector import main
from prospector.api.assistants import AssistantsClient
from prospector.errors import AssistantApiError
from prospector.handlers.task_scheduler import TaskScheduler
from prospector.main import _LazyProxy, create_components, shutdown_components


@pytest.fixture
def app_settings(settings):
    settings.assistant_id = "asst_configured"
    settings.email_webhook_url = ""
    return settings


class TestCreateComponents:
    async def test_startup_and_shutdown(self, app_settings):
        components = await create_components(app_settings)
        try:
            assert components["runner"].assistant_id == "asst_configured"
            assert set(components["dispatcher"].names()) == {
                "query_leads", "schedule_campaign", "get_analytics", "research_lead",
                "set_reminder", "web_search", "web_fetch",
            }
            assert await components["task_store"].count() == 3
            assert len(components["scheduler"].armed_task_ids()) == 3
            assert components["queues"].get("research").consuming
            assert not components["queues"].get("email").consuming
        finally:
            await shutdown_components(components)

        assert components["scheduler"].armed_task_ids() == []
        assert not components["queues"].get("research").consuming

    async def test_scheduler_disabled(self, app_settings):
        app_settings.scheduler_enabled = False
        app_settings.seed_default_tasks = False
        components = await create_components(app_settings)
        try:
            assert components["scheduler"].armed_task_ids() == []
            assert await components["task_store"].count() == 0
        finally:
            await shutdown_components(components)


    async def test_assistant_unavailable_keeps_background_work(self, app_settings, monkeypatch):
        app_settings.assistant_id = ""

        async def refuse(self, **kwargs):
            raise AssistantApiError("Assistant API error (401): invalid key", status_code=401)

        monkeypatch.setattr(AssistantsClient, "create_assistant", refuse)
        components = await create_components(app_settings)
        try:
            assert components["runner"].assistant_id == ""
            assert len(components["scheduler"].armed_task_ids()) == 3
            assert components["queues"].get("research").consuming
        finally:
            await shutdown_components(components)

    async def test_failed_startup_releases_resources(self, app_settings, monkeypatch):
        released: list[dict] = []

        async def recording_shutdown(components):
            released.append(components)
            await shutdown_components(components)

        async def broken_start(self):
            raise RuntimeError("scheduler table unreadable")

        monkeypatch.setattr(main, "shutdown_components", recording_shutdown)
        monkeypatch.setattr(TaskScheduler, "start", broken_start)

        with pytest.raises(RuntimeError, match="scheduler table unreadable"):
            await create_components(app_settings)

        [components] = released
        assert components["handler_http"].is_closed
        assert components["web_http"].is_closed
        assert components["bus"]._worker is None
        assert components["assistants"]._http is None


class TestShutdown:
    async def test_reverse_order(self):
        order: list[str] = []

        def component(name: str, method: str) -> MagicMock:
            mock = MagicMock()
            setattr(mock, method, AsyncMock(side_effect=lambda: order.append(name)))
            return mock

        components = {
            "database": component("database", "disconnect"),
            "bus": component("bus", "stop"),
            "queues": component("queues", "stop_all"),
            "scheduler": component("scheduler", "stop_all"),
            "assistants": component("assistants", "close"),
            "web_http": component("web_http", "aclose"),
            "handler_http": component("handler_http", "aclose"),
        }
        await shutdown_components(components)
        assert order == [
            "scheduler", "queues", "bus", "assistants", "web_http", "handler_http", "database",
        ]

    async def test_missing_components_skipped(self):
        await shutdown_components({"bus": None})


class TestLazyProxy:
    def test_forwards_once_available(self):
        components: dict = {}
        proxy = _LazyProxy(components, "runner")
        with pytest.raises(RuntimeError):
            proxy.assistant_id
        components["runner"] = MagicMock(assistant_id="asst_1")
        assert proxy.assistant_id == "asst_1"
