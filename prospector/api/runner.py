"""Run driver -- drives assistant runs from a user message to a reply.

For each exchange:
1. Resolve the user's thread (memo -> conversation_threads -> create remotely)
2. Append the user message and start a run
3. Poll the run until it completes, fails or asks for tool outputs
4. On requires_action, execute every pending tool call and submit all
   outputs in a single call, then keep polling
5. Return the latest assistant message

Exchanges for the same user are serialized with a per-user lock so two
runs never submit tool outputs against the same thread concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from prospector.api.assistants import AssistantsClient
from prospector.api.tools import ToolDispatcher
from prospector.config import Settings
from prospector.errors import AssistantApiError, RunFailed, SubmissionFailure
from prospector.events import RUN_COMPLETED, RUN_FAILED, Event, EventBus
from prospector.store.threads import ThreadStore

logger = logging.getLogger(__name__)

ASSISTANT_INSTRUCTIONS = (
    "You are an intelligent lead generation assistant with the personality of a "
    "knowledgeable, proactive colleague. You help manage lead research, email "
    "campaigns, and provide insights about the lead database.\n\n"
    "Your capabilities include:\n"
    "1. Querying and analyzing the lead database\n"
    "2. Scheduling and managing email campaigns\n"
    "3. Conducting research on leads\n"
    "4. Providing strategic insights and recommendations\n"
    "5. Tracking campaign performance\n\n"
    "Always communicate in a professional but friendly manner, like a trusted team "
    "member. Proactively suggest improvements and highlight important information."
)

# Run statuses that keep the poll loop going
_ACTIVE_STATUSES = frozenset({"queued", "in_progress", "cancelling"})
# Terminal statuses that end the exchange with RunFailed
_FAILED_STATUSES = frozenset({"failed", "cancelled", "expired", "incomplete"})


@dataclass
class ToolCallRecord:
    """Outcome of one tool call inside a run."""

    call_id: str
    tool_name: str
    output: str
    is_error: bool
    duration_ms: int


@dataclass
class Exchange:
    """Bookkeeping for one send_message call."""

    user_id: str
    thread_id: str
    run_id: str = ""
    polls: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


class RunDriver:
    """Drives assistant runs and dispatches their tool calls."""

    def __init__(
        self,
        client: AssistantsClient,
        dispatcher: ToolDispatcher,
        threads: ThreadStore,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._threads = threads
        self._settings = settings
        self._bus = bus
        self._assistant_id = settings.assistant_id
        self._thread_ids: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def assistant_id(self) -> str:
        return self._assistant_id

    async def start(self) -> None:
        """Create the assistant from the registered tools unless one is configured."""
        if self._assistant_id:
            logger.info("Using configured assistant %s", self._assistant_id)
            return
        assistant = await self._client.create_assistant(
            name=self._settings.assistant_name,
            instructions=ASSISTANT_INSTRUCTIONS,
            tools=self._dispatcher.tool_definitions(),
            model=self._settings.assistant_model,
        )
        self._assistant_id = assistant["id"]
        logger.info(
            "Created assistant %s with %d tool(s)",
            self._assistant_id, len(self._dispatcher.names()),
        )

    async def send_message(self, user_id: str, text: str) -> str:
        """Run one exchange for a user and return the assistant's reply.

        Raises:
            RunFailed: the run ended failed/cancelled/expired.
            SubmissionFailure: tool outputs could not be submitted.
            AssistantApiError: any other assistant API failure.
        """
        if not self._assistant_id:
            raise AssistantApiError("No assistant configured -- call start() first")

        async with self._locks[user_id]:
            thread_id = await self._get_or_create_thread(user_id)
            exchange = Exchange(user_id=user_id, thread_id=thread_id)

            await self._client.add_message(thread_id, text)
            run = await self._client.create_run(thread_id, self._assistant_id)
            exchange.run_id = run["id"]
            logger.info("Started run %s on thread %s for %s", exchange.run_id, thread_id, user_id)

            try:
                await self._drive(exchange)
            except RunFailed as exc:
                await self._emit(RUN_FAILED, exchange, error=str(exc))
                raise

            reply = await self._latest_reply(thread_id, exchange.run_id)
            await self._emit(RUN_COMPLETED, exchange)
            return reply

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(self, exchange: Exchange) -> None:
        """Poll the run until completed; raise on terminal failure."""
        while True:
            run = await self._client.get_run(exchange.thread_id, exchange.run_id)
            exchange.polls += 1
            status = run.get("status", "")

            if status == "completed":
                logger.info(
                    "Run %s completed after %d poll(s), %d tool call(s)",
                    exchange.run_id, exchange.polls, len(exchange.tool_calls),
                )
                return

            if status == "requires_action":
                await self._handle_required_action(exchange, run)
                continue

            if status in _FAILED_STATUSES:
                last_error = run.get("last_error") or {}
                raise RunFailed(status, last_error.get("message"))

            if status not in _ACTIVE_STATUSES:
                logger.warning("Run %s reported unexpected status %r", exchange.run_id, status)

            await asyncio.sleep(self._settings.run_poll_interval)

    async def _handle_required_action(self, exchange: Exchange, run: dict[str, Any]) -> None:
        """Execute all pending tool calls and submit their outputs together."""
        required = run.get("required_action") or {}
        tool_calls = (required.get("submit_tool_outputs") or {}).get("tool_calls") or []

        outputs: list[dict[str, str]] = []
        for call in tool_calls:
            record = await self._execute_tool_call(call)
            exchange.tool_calls.append(record)
            outputs.append({"tool_call_id": record.call_id, "output": record.output})

        try:
            await self._client.submit_tool_outputs(exchange.thread_id, exchange.run_id, outputs)
        except AssistantApiError as exc:
            logger.error("Tool output submission failed for run %s: %s", exchange.run_id, exc)
            raise SubmissionFailure(exchange.thread_id, exchange.run_id, exc) from exc
        logger.debug("Submitted %d tool output(s) for run %s", len(outputs), exchange.run_id)

    async def _execute_tool_call(self, call: dict[str, Any]) -> ToolCallRecord:
        """Run one tool call. Failures become an error output, never an exception."""
        function = call.get("function") or {}
        name = function.get("name", "")
        arguments = function.get("arguments") or "{}"

        start_time = time.monotonic()
        try:
            output = await self._dispatcher.execute(name, arguments)
            is_error = False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            output = json.dumps({"error": str(exc)})
            is_error = True
        duration_ms = int((time.monotonic() - start_time) * 1000)

        return ToolCallRecord(
            call_id=call.get("id", ""),
            tool_name=name,
            output=output,
            is_error=is_error,
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Threads and replies
    # ------------------------------------------------------------------

    async def _get_or_create_thread(self, user_id: str) -> str:
        if user_id in self._thread_ids:
            return self._thread_ids[user_id]

        thread_id = await self._threads.get(user_id)
        if thread_id is None:
            thread = await self._client.create_thread(metadata={"user_id": user_id})
            thread_id = thread["id"]
            await self._threads.save(user_id, thread_id)
            logger.info("Created thread %s for user %s", thread_id, user_id)

        self._thread_ids[user_id] = thread_id
        return thread_id

    async def _latest_reply(self, thread_id: str, run_id: str) -> str:
        message = await self._client.latest_assistant_message(thread_id, run_id)
        if not message:
            logger.warning("Run %s completed without an assistant message", run_id)
            return ""
        parts = []
        for block in message.get("content") or []:
            if block.get("type") == "text":
                parts.append(block.get("text", {}).get("value", ""))
        return "\n".join(parts)

    async def _emit(self, event_type: str, exchange: Exchange, error: str | None = None) -> None:
        if self._bus is None:
            return
        data: dict[str, Any] = {
            "thread_id": exchange.thread_id,
            "run_id": exchange.run_id,
            "tool_calls": [r.tool_name for r in exchange.tool_calls],
        }
        if error is not None:
            data["error"] = error[:500]
        await self._bus.emit(Event(type=event_type, source=exchange.user_id, data=data))
