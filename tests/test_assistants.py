"""Tests for prospector/api/assistants.py -- request shapes and retry policy.

The Assistants API is served by httpx.MockTransport; asyncio.sleep is
patched so retries do not wait.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from prospector.api.assistants import AssistantsClient, _retry_after_seconds
from prospector.errors import AssistantApiError


def _mock_settings() -> MagicMock:
    s = MagicMock()
    s.openai_api_key = "sk-test"
    s.openai_base_url = "https://api.openai.test/v1"
    s.api_timeout_connect = 5
    s.api_timeout_read = 5
    return s


def _client(handler) -> AssistantsClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://api.openai.test/v1",
    )
    return AssistantsClient(_mock_settings(), http_client=http)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("prospector.api.assistants.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestRequests:
    async def test_create_run(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})

        client = _client(handler)
        run = await client.create_run("thread_1", "asst_1")

        assert run["id"] == "run_1"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/v1/threads/thread_1/runs"
        assert json.loads(seen[0].content) == {"assistant_id": "asst_1"}
        await client.close()

    async def test_submit_tool_outputs(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})

        client = _client(handler)
        outputs = [{"tool_call_id": "call_1", "output": "{}"}]
        await client.submit_tool_outputs("thread_1", "run_1", outputs)

        assert seen[0].url.path == "/v1/threads/thread_1/runs/run_1/submit_tool_outputs"
        assert json.loads(seen[0].content) == {"tool_outputs": outputs}

    async def test_latest_assistant_message_skips_user_messages(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["order"] == "desc"
            assert request.url.params["run_id"] == "run_1"
            return httpx.Response(200, json={"data": [
                {"id": "msg_user", "role": "user", "run_id": None},
                {"id": "msg_9", "role": "assistant", "run_id": "run_1"},
            ]})

        message = await _client(handler).latest_assistant_message("thread_1", "run_1")
        assert message["id"] == "msg_9"

    async def test_latest_assistant_message_none_when_only_user_text(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"id": "msg_user", "role": "user"}]})

        assert await _client(handler).latest_assistant_message("thread_1", "run_1") is None

    async def test_latest_assistant_message_empty_thread(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": []})

        assert await _client(handler).latest_assistant_message("thread_1") is None

    async def test_not_started(self):
        client = AssistantsClient(_mock_settings())
        with pytest.raises(AssistantApiError):
            await client.get_run("thread_1", "run_1")

    async def test_start_sets_auth_headers(self):
        client = AssistantsClient(_mock_settings())
        await client.start()
        try:
            assert client._http.headers["Authorization"] == "Bearer sk-test"
            assert client._http.headers["OpenAI-Beta"] == "assistants=v2"
        finally:
            await client.close()


class TestRetry:
    async def test_retries_once_on_429(self, no_sleep):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(429, headers={"retry-after": "2"}, json={"error": {"message": "slow down"}})
            return httpx.Response(200, json={"id": "run_1", "status": "completed"})

        run = await _client(handler).get_run("thread_1", "run_1")
        assert run["status"] == "completed"
        assert len(attempts) == 2
        no_sleep.assert_awaited_once_with(2.0)

    async def test_retry_after_capped(self, no_sleep):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(503, headers={"retry-after": "600"})
            return httpx.Response(200, json={"id": "run_1"})

        await _client(handler).get_run("thread_1", "run_1")
        no_sleep.assert_awaited_once_with(30.0)

    async def test_gives_up_after_second_failure(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(500, json={"error": {"message": "internal"}})

        with pytest.raises(AssistantApiError) as exc_info:
            await _client(handler).get_run("thread_1", "run_1")
        assert exc_info.value.status_code == 500
        assert len(attempts) == 2

    async def test_client_error_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(400, json={"error": {"message": "bad tool output"}})

        with pytest.raises(AssistantApiError, match="bad tool output"):
            await _client(handler).submit_tool_outputs("thread_1", "run_1", [])
        assert len(attempts) == 1

    async def test_timeout_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"id": "thread_1"})

        assert (await _client(handler).create_thread())["id"] == "thread_1"
        assert len(attempts) == 2

    async def test_connect_error_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AssistantApiError):
            await _client(handler).create_thread()
        assert len(attempts) == 1

    async def test_submit_tool_outputs_not_retried(self, no_sleep):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(500, json={"error": {"message": "internal"}})
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})

        with pytest.raises(AssistantApiError) as exc_info:
            await _client(handler).submit_tool_outputs("thread_1", "run_1", [])
        assert exc_info.value.status_code == 500
        assert len(attempts) == 1
        no_sleep.assert_not_awaited()

    async def test_submit_tool_outputs_timeout_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(AssistantApiError, match="timed out"):
            await _client(handler).submit_tool_outputs("thread_1", "run_1", [])
        assert len(attempts) == 1

    async def test_retry_after_http_date(self, no_sleep):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(429, headers={"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"})
            return httpx.Response(200, json={"id": "run_1", "status": "completed"})

        run = await _client(handler).get_run("thread_1", "run_1")
        assert run["status"] == "completed"
        # A date in the past means retry immediately.
        no_sleep.assert_awaited_once_with(0.0)

    async def test_retry_after_garbage_defaults_to_one_second(self, no_sleep):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(503, headers={"retry-after": "soon-ish"})
            return httpx.Response(200, json={"id": "run_1"})

        await _client(handler).get_run("thread_1", "run_1")
        no_sleep.assert_awaited_once_with(1.0)


class TestRetryAfterParsing:
    def test_seconds(self):
        assert _retry_after_seconds("2") == 2.0

    def test_missing(self):
        assert _retry_after_seconds(None) == 1.0

    def test_future_date_capped(self):
        future = format_datetime(datetime.now(UTC) + timedelta(hours=1), usegmt=True)
        assert _retry_after_seconds(future) == 30.0
