"""Scheduled task actions -- one async handler per task type.

- campaign_check: alert when the reply rate of contacted leads drops below 5%
- lead_research: queue research jobs for leads still marked new
- send_report: write a lead and queue overview as a report notification
- custom: send ``parameters.prompt`` to the assistant and keep the reply
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from prospector.api.tools import EMAIL_QUEUE, RESEARCH_QUEUE
from prospector.handlers.queue_worker import QueueRegistry
from prospector.handlers.task_scheduler import TaskHandler
from prospector.storage.models import ScheduledTask
from prospector.store.leads import LeadStore
from prospector.store.notifications import NotificationStore

logger = logging.getLogger(__name__)

REPLY_RATE_THRESHOLD = 0.05
SCHEDULER_USER_ID = "scheduler"

PromptSender = Callable[[str], Awaitable[str]]


def reply_rate(counts: dict[str, int]) -> float:
    """Replied over contacted (emailed + replied) leads; 0.0 with nobody contacted."""
    contacted = counts.get("emailed", 0) + counts.get("replied", 0)
    return counts.get("replied", 0) / contacted if contacted else 0.0


def create_task_handlers(
    leads: LeadStore,
    queues: QueueRegistry,
    notifications: NotificationStore,
    send_prompt: PromptSender | None = None,
) -> dict[str, TaskHandler]:
    """Build the handler map passed to TaskScheduler."""

    async def campaign_check(task: ScheduledTask) -> None:
        counts = await leads.count_by_status()
        contacted = counts.get("emailed", 0) + counts.get("replied", 0)
        if not contacted:
            logger.debug("Campaign check: no contacted leads yet")
            return
        rate = reply_rate(counts)
        if rate < REPLY_RATE_THRESHOLD:
            await notifications.send(
                type="campaign_alert",
                title="Campaign needs attention",
                content=(
                    f"Reply rate is {rate:.1%} across {contacted} contacted lead(s). "
                    "Consider revising the email content or pausing the campaign."
                ),
                priority="high",
            )

    async def lead_research(task: ScheduledTask) -> None:
        limit = int((task.parameters or {}).get("limit", 10))
        new_leads = await leads.search(status="new", limit=limit)
        queue = queues.get(RESEARCH_QUEUE)
        for lead in new_leads:
            await queue.enqueue({"lead_id": str(lead.id), "depth": "standard"})
        logger.info("Queued research for %d new lead(s)", len(new_leads))

    async def send_report(task: ScheduledTask) -> None:
        counts = await leads.count_by_status()
        email_jobs = await queues.store.count_by_status(queue=EMAIL_QUEUE)
        research_jobs = await queues.store.count_by_status(queue=RESEARCH_QUEUE)
        lines = [
            f"Leads: {sum(counts.values())} total "
            + ", ".join(f"{status} {n}" for status, n in sorted(counts.items())),
            f"Reply rate: {reply_rate(counts):.1%}",
            f"Email jobs: {_format_counts(email_jobs)}",
            f"Research jobs: {_format_counts(research_jobs)}",
        ]
        await notifications.send(
            type="report",
            title=task.description or "Lead generation report",
            content="\n".join(lines),
            priority="low",
        )

    async def custom(task: ScheduledTask) -> None:
        prompt = (task.parameters or {}).get("prompt") or task.description
        if not prompt:
            raise ValueError("Custom task has no prompt")
        if send_prompt is None:
            raise RuntimeError("No assistant available for custom tasks")
        reply = await send_prompt(prompt)
        await notifications.send(
            type="custom_task",
            title=task.description or "Scheduled task",
            content=reply,
        )

    return {
        "campaign_check": campaign_check,
        "lead_research": lead_research,
        "send_report": send_report,
        "custom": custom,
    }


def _format_counts(counts: dict[str, int]) -> str:
    if not counts:
        return "none"
    return ", ".join(f"{status} {n}" for status, n in sorted(counts.items()))
