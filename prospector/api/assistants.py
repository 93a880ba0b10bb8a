"""Thin async client for the OpenAI Assistants v2 REST API.

Covers only what the run driver needs: assistant creation, threads,
messages, runs and tool output submission.  Uses httpx directly with one
retry on rate limiting / transient server errors.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from prospector.config import Settings
from prospector.errors import AssistantApiError

logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 502, 503)
_MAX_RETRY_AFTER = 30.0
_MESSAGE_SCAN_LIMIT = 20


def _retry_after_seconds(value: str | None) -> float:
    """Parse a Retry-After header given as delta-seconds or an HTTP-date."""
    if not value:
        return 1.0
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug("Unparseable retry-after header %r", value)
            return 1.0
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - datetime.now(UTC)).total_seconds()
    return min(max(seconds, 0.0), _MAX_RETRY_AFTER)


class AssistantsClient:
    """Assistants API wrapper.

    Every call is retried once on 429/5xx and timeouts, except tool output
    submission: a retried submission could deliver the same outputs twice.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http_client

    async def start(self) -> None:
        """Create the httpx client with auth headers and timeouts."""
        if self._http is not None:
            return
        settings = self._settings
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY is not set -- assistant API calls will fail")
        self._http = httpx.AsyncClient(
            base_url=settings.openai_base_url,
            headers={
                "Authorization": f"Bearer {settings.openai_api_key}",
                "OpenAI-Beta": "assistants=v2",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # API operations
    # ------------------------------------------------------------------

    async def create_assistant(
        self,
        name: str,
        instructions: str,
        tools: list[dict[str, Any]],
        model: str,
    ) -> dict[str, Any]:
        return await self._request(
            "POST", "/assistants",
            json={"name": name, "instructions": instructions, "tools": tools, "model": model},
        )

    async def create_thread(self, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        return await self._request("POST", "/threads", json={"metadata": metadata or {}})

    async def add_message(self, thread_id: str, content: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/threads/{thread_id}/messages",
            json={"role": "user", "content": content},
        )

    async def create_run(self, thread_id: str, assistant_id: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/threads/{thread_id}/runs",
            json={"assistant_id": assistant_id},
        )

    async def get_run(self, thread_id: str, run_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        tool_outputs: list[dict[str, str]],
    ) -> dict[str, Any]:
        return await self._request(
            "POST", f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            json={"tool_outputs": tool_outputs},
            retry=False,
        )

    async def latest_assistant_message(
        self,
        thread_id: str,
        run_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Newest assistant-authored message, optionally limited to one run.

        Returns None when the run added no assistant message, so the user's
        own text is never mistaken for a reply.
        """
        params: dict[str, Any] = {"limit": _MESSAGE_SCAN_LIMIT, "order": "desc"}
        if run_id:
            params["run_id"] = run_id
        data = await self._request("GET", f"/threads/{thread_id}/messages", params=params)
        for message in data.get("data") or []:
            if message.get("role") != "assistant":
                continue
            if run_id and message.get("run_id") not in (None, run_id):
                continue
            return message
        return None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        """Send a request, retrying once on 429/5xx and timeouts when ``retry``."""
        if not self._http:
            raise AssistantApiError("httpx client not initialized -- call start() first")

        attempts = 2 if retry else 1
        last_error: AssistantApiError | None = None
        for attempt in range(attempts):
            can_retry = attempt < attempts - 1
            try:
                response = await self._http.request(method, path, json=json, params=params)
            except httpx.TimeoutException as exc:
                last_error = AssistantApiError(f"Assistant API request timed out: {exc}")
                if can_retry:
                    logger.warning("Assistant API timeout on %s %s, retrying", method, path)
                    await asyncio.sleep(1)
                    continue
                break
            except httpx.HTTPError as exc:
                last_error = AssistantApiError(f"HTTP error: {exc}")
                break  # Don't retry connection errors

            if response.is_success:
                try:
                    return response.json()
                except ValueError as exc:
                    raise AssistantApiError(
                        f"Assistant API returned invalid JSON on {method} {path}",
                        status_code=response.status_code,
                    ) from exc

            try:
                error_msg = response.json().get("error", {}).get("message", "unknown error")
            except (ValueError, AttributeError):
                error_msg = response.text[:500]

            if response.status_code in _RETRY_STATUSES and can_retry:
                retry_after = _retry_after_seconds(response.headers.get("retry-after"))
                logger.warning(
                    "Assistant API error %d on %s %s, retrying in %.1fs: %s",
                    response.status_code, method, path, retry_after, error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            last_error = AssistantApiError(
                f"Assistant API error ({response.status_code}): {error_msg}",
                status_code=response.status_code,
            )
            break

        raise last_error or AssistantApiError("Assistant API call failed with unknown error")
