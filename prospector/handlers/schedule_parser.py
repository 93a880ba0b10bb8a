"""Schedule resolution -- human-readable schedules to five-field cron.

Resolution order:
1. Fixed phrase table, matched case-insensitively anywhere in the input,
   then the recurring patterns ("daily at 8am", "every friday at 3pm",
   "every 15 minutes", "every 6 hours").
2. A literal cron expression, returned unchanged.
3. The ScheduleInterpreter fallback (an LLM call).  Its answer is validated
   and rejected with ScheduleResolutionFailure when it is not valid cron.
"""

from __future__ import annotations

import logging
import re

import httpx
from croniter import croniter

from prospector.errors import AssistantApiError, ScheduleResolutionFailure

logger = logging.getLogger(__name__)

# Checked in order; the first phrase contained in the input wins.
PHRASE_TABLE: dict[str, str] = {
    "every morning": "0 9 * * *",
    "every evening": "0 18 * * *",
    "every monday": "0 9 * * 1",
    "twice a day": "0 9,17 * * *",
    "every hour": "0 * * * *",
    "every 30 minutes": "*/30 * * * *",
}

# "daily at 8am", "every day at 2pm"
_DAILY_RE = re.compile(
    r"(?:daily|every\s+day)\s+at\s+(\d{1,2})\s*(am|pm)", re.IGNORECASE
)

# "every monday at 10am", "every friday at 3pm"
_WEEKLY_RE = re.compile(
    r"every\s+(monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
    r"\s+at\s+(\d{1,2})\s*(am|pm)",
    re.IGNORECASE,
)

# "every 15 minutes", "every 6 hours"
_INTERVAL_RE = re.compile(r"every\s+(\d+)\s+(minute|hour)s?", re.IGNORECASE)

_DOW_MAP = {
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
    "sunday": 0,
}


def _to_24h(hour: int, ampm: str) -> int:
    """Convert 12-hour time to 24-hour."""
    if ampm.lower() == "am":
        return 0 if hour == 12 else hour
    return hour if hour == 12 else hour + 12


def is_valid_cron(expression: str) -> bool:
    """True for a valid five-field cron expression."""
    expression = expression.strip()
    if len(expression.split()) != 5:
        return False
    return croniter.is_valid(expression)


def match_phrase(schedule_input: str) -> str | None:
    """Resolve against the phrase table and recurring patterns, or None."""
    lower = schedule_input.lower()
    for phrase, cron in PHRASE_TABLE.items():
        if phrase in lower:
            return cron

    # Table phrases win: "every monday at 10am" already resolved above
    m = _WEEKLY_RE.search(schedule_input)
    if m:
        hour = int(m.group(2))
        if 1 <= hour <= 12:
            return f"0 {_to_24h(hour, m.group(3))} * * {_DOW_MAP[m.group(1).lower()]}"

    m = _DAILY_RE.search(schedule_input)
    if m:
        hour = int(m.group(1))
        if 1 <= hour <= 12:
            return f"0 {_to_24h(hour, m.group(2))} * * *"

    m = _INTERVAL_RE.search(schedule_input)
    if m:
        amount = int(m.group(1))
        unit = m.group(2).lower()
        # Only step values that divide the hour/day evenly keep a fixed period
        if unit == "minute" and 0 < amount < 60 and 60 % amount == 0:
            return f"*/{amount} * * * *"
        if unit == "hour" and 0 < amount < 24 and 24 % amount == 0:
            return f"0 */{amount} * * *"

    return None


class ScheduleInterpreter:
    """Asks a chat-completions model to translate a schedule into cron."""

    SYSTEM_PROMPT = (
        "Convert the user's schedule description into a single standard "
        "five-field cron expression (minute hour day-of-month month day-of-week). "
        "Reply with the cron expression only, no explanation."
    )

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")

    async def interpret(self, schedule_input: str) -> str:
        if not self._api_key:
            raise AssistantApiError("OPENAI_API_KEY not configured for schedule interpretation")
        try:
            response = await self._http.post(
                f"{self._base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self._model,
                    "temperature": 0,
                    "messages": [
                        {"role": "system", "content": self.SYSTEM_PROMPT},
                        {"role": "user", "content": schedule_input},
                    ],
                },
                timeout=30,
            )
        except httpx.HTTPError as exc:
            raise AssistantApiError(f"Schedule interpretation request failed: {exc}") from exc
        if response.status_code != 200:
            raise AssistantApiError(
                f"Schedule interpretation failed (HTTP {response.status_code}): {response.text[:300]}",
                status_code=response.status_code,
            )
        try:
            content = response.json()["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise AssistantApiError(
                f"Schedule interpretation returned a malformed response: {response.text[:300]}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(content, str):
            raise AssistantApiError(f"Schedule interpretation returned non-text content: {content!r}")
        # Models sometimes wrap the answer in backticks
        return content.strip().strip("`").strip()


class ScheduleResolver:
    """Resolves schedule inputs, falling back to the interpreter."""

    def __init__(self, interpreter: ScheduleInterpreter | None = None) -> None:
        self._interpreter = interpreter

    async def resolve(self, schedule_input: str) -> str:
        schedule_input = schedule_input.strip()
        if not schedule_input:
            raise ScheduleResolutionFailure(schedule_input)

        cron = match_phrase(schedule_input)
        if cron is not None:
            return cron

        if is_valid_cron(schedule_input):
            return schedule_input

        if self._interpreter is None:
            raise ScheduleResolutionFailure(schedule_input)

        try:
            interpreted = await self._interpreter.interpret(schedule_input)
        except AssistantApiError as exc:
            logger.error("Schedule interpreter failed for %r: %s", schedule_input, exc)
            raise ScheduleResolutionFailure(schedule_input) from exc

        if not is_valid_cron(interpreted):
            logger.error(
                "Schedule interpreter returned invalid cron %r for %r",
                interpreted, schedule_input,
            )
            raise ScheduleResolutionFailure(schedule_input, interpreted)

        logger.info("Interpreted schedule %r as %r", schedule_input, interpreted)
        return interpreted
