"""Tool dispatcher and lead-generation tools exposed to the assistant.

Provides:
- ToolDispatcher: typed name -> handler map, validated at registration
- Lead tools registered on the dispatcher:
  - query_leads: filter and summarize the lead database
  - schedule_campaign: queue outreach emails for leads
  - get_analytics: lead, queue and scheduler metrics
  - research_lead: queue a research job for a lead
  - set_reminder: create a recurring scheduled task

Handlers return JSON-serializable values; errors propagate to the caller
(the run driver turns them into ``{"error": ...}`` tool outputs).
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable
from uuid import UUID

from dateutil import parser as dateutil_parser

from prospector.errors import UnknownTool
from prospector.store.leads import LEAD_STATUSES, LeadStore
from prospector.store.tasks import TaskStore

if TYPE_CHECKING:
    from prospector.handlers.queue_worker import QueueRegistry
    from prospector.handlers.task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]

RESEARCH_QUEUE = "research"
EMAIL_QUEUE = "email"


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and executes tool calls by name.

    Each handler is an async callable taking keyword arguments that match
    its JSON schema and returning a JSON-serializable value.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema.

        Raises:
            ValueError: empty or duplicate name, or a non-object schema.
            TypeError: handler is not an async function.
        """
        if not name:
            raise ValueError("Tool name must not be empty")
        if name in self._handlers:
            raise ValueError(f"Tool already registered: {name}")
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Tool handler for {name!r} must be an async function")
        if not isinstance(schema, dict) or schema.get("type") != "object":
            raise ValueError(f"Tool schema for {name!r} must be a JSON object schema")
        self._handlers[name] = handler
        self._schemas[name] = schema

    def names(self) -> list[str]:
        return list(self._handlers)

    async def execute(self, name: str, arguments_json: str) -> str:
        """Execute a tool call and return its JSON-encoded result.

        Raises:
            UnknownTool: no handler registered under ``name``.
            ValueError: arguments are not a JSON object.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownTool(name)
        args = json.loads(arguments_json) if arguments_json and arguments_json.strip() else {}
        if not isinstance(args, dict):
            raise ValueError(f"Arguments for {name} must be a JSON object")
        result = await handler(**args)
        return json.dumps(result, default=str)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tools in the Assistants API function-tool format."""
        definitions = []
        for name, schema in self._schemas.items():
            parameters = {k: v for k, v in schema.items() if k != "description"}
            definitions.append({
                "type": "function",
                "function": {
                    "name": name,
                    "description": schema.get("description", ""),
                    "parameters": parameters,
                },
            })
        return definitions


# ---------------------------------------------------------------------------
# Lead tools
# ---------------------------------------------------------------------------


def _lead_dict(lead: Any) -> dict[str, Any]:
    return {
        "id": str(lead.id),
        "name": lead.name,
        "email": lead.email,
        "company": lead.company,
        "status": lead.status,
        "created_at": lead.created_at.isoformat() if lead.created_at else None,
    }


def _range_start(time_range: str) -> datetime | None:
    now = datetime.now(UTC)
    if time_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if time_range == "week":
        return now - timedelta(days=7)
    if time_range == "month":
        return now - timedelta(days=30)
    return None


def create_lead_tools(
    leads: LeadStore,
    queues: "QueueRegistry",
    scheduler: "TaskScheduler",
    tasks: TaskStore,
) -> dict[str, ToolHandler]:
    """Create lead tool closures with their collaborators captured.

    Returns a dict of async callables suitable for ToolDispatcher registration.
    """

    async def query_leads(
        status: str | None = None,
        limit: int = 10,
        search: str | None = None,
    ) -> dict[str, Any]:
        if status and status not in LEAD_STATUSES:
            raise ValueError(f"Invalid status {status!r}; expected one of {list(LEAD_STATUSES)}")
        rows = await leads.search(status=status, search=search, limit=max(1, min(int(limit), 100)))
        by_status: dict[str, int] = {}
        for lead in rows:
            by_status[lead.status] = by_status.get(lead.status, 0) + 1
        return {
            "count": len(rows),
            "leads": [_lead_dict(lead) for lead in rows],
            "summary": {
                "total": len(rows),
                "by_status": by_status,
                "recent": [
                    {"name": lead.name, "company": lead.company, "status": lead.status}
                    for lead in rows[:3]
                ],
            },
        }

    async def schedule_campaign(
        lead_ids: list[str],
        campaign_type: str,
        schedule_time: str | None = None,
    ) -> dict[str, Any]:
        if campaign_type not in ("immediate", "scheduled", "drip"):
            raise ValueError(f"Invalid campaign_type {campaign_type!r}")
        if not lead_ids:
            raise ValueError("lead_ids must not be empty")

        send_at: str | None = None
        if campaign_type == "scheduled":
            if not schedule_time:
                raise ValueError("schedule_time is required for scheduled campaigns")
            when = dateutil_parser.isoparse(schedule_time)
            if when.tzinfo is None:
                when = when.replace(tzinfo=UTC)
            if when <= datetime.now(UTC):
                raise ValueError(f"schedule_time is in the past: {when.isoformat()}")
            send_at = when.isoformat()

        queue = queues.get(EMAIL_QUEUE)
        queued, missing = [], []
        for raw_id in lead_ids:
            lead = await leads.get(UUID(raw_id))
            if lead is None:
                missing.append(raw_id)
                continue
            job = await queue.enqueue({
                "lead_id": str(lead.id),
                "campaign_type": campaign_type,
                "send_at": send_at,
            })
            queued.append({"lead_id": str(lead.id), "job_id": str(job.id)})

        return {
            "campaign_type": campaign_type,
            "scheduled_for": send_at,
            "queued": queued,
            "missing_leads": missing,
        }

    async def get_analytics(
        metric_type: str,
        time_range: str = "all",
    ) -> dict[str, Any]:
        if metric_type not in ("overview", "campaign", "lead", "email"):
            raise ValueError(f"Invalid metric_type {metric_type!r}")
        since = _range_start(time_range)
        result: dict[str, Any] = {"metric_type": metric_type, "time_range": time_range}

        if metric_type in ("overview", "lead"):
            counts = await leads.count_by_status(since=since)
            result["leads"] = {"total": sum(counts.values()), "by_status": counts}

        if metric_type in ("overview", "campaign", "email"):
            counts = await leads.count_by_status(since=since)
            contacted = counts.get("emailed", 0) + counts.get("replied", 0)
            result["reply_rate"] = (counts.get("replied", 0) / contacted) if contacted else 0.0
            result["email_jobs"] = await queues.store.count_by_status(queue=EMAIL_QUEUE)

        if metric_type == "overview":
            result["research_jobs"] = await queues.store.count_by_status(queue=RESEARCH_QUEUE)
            result["task_executions"] = await tasks.count_executions_by_status()

        return result

    async def research_lead(
        lead_id: str,
        research_depth: str = "standard",
    ) -> dict[str, Any]:
        if research_depth not in ("quick", "standard", "deep"):
            raise ValueError(f"Invalid research_depth {research_depth!r}")
        lead = await leads.get(UUID(lead_id))
        if lead is None:
            raise ValueError(f"Lead not found: {lead_id}")
        job = await queues.get(RESEARCH_QUEUE).enqueue({
            "lead_id": str(lead.id),
            "depth": research_depth,
        })
        return {
            "queued": True,
            "job_id": str(job.id),
            "lead": {"id": str(lead.id), "name": lead.name, "company": lead.company},
            "research_depth": research_depth,
        }

    async def set_reminder(
        task_type: str,
        schedule: str,
        description: str = "",
    ) -> dict[str, Any]:
        task = await scheduler.create_task(
            task_type=task_type,
            schedule_input=schedule,
            description=description or f"{task_type} ({schedule})",
        )
        return {
            "task_id": str(task.id),
            "task_type": task.task_type,
            "cron_expression": task.cron_expression,
            "description": task.description,
        }

    return {
        "query_leads": query_leads,
        "schedule_campaign": schedule_campaign,
        "get_analytics": get_analytics,
        "research_lead": research_lead,
        "set_reminder": set_reminder,
    }


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_QUERY_LEADS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Query the lead database with filters",
    "properties": {
        "status": {
            "type": "string",
            "enum": list(LEAD_STATUSES),
            "description": "Filter by lead status",
        },
        "limit": {"type": "number", "description": "Number of results to return"},
        "search": {"type": "string", "description": "Search term for name, email, or company"},
    },
}

_SCHEDULE_CAMPAIGN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Schedule an email campaign for specific leads",
    "properties": {
        "lead_ids": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Array of lead IDs to include",
        },
        "campaign_type": {
            "type": "string",
            "enum": ["immediate", "scheduled", "drip"],
            "description": "Type of campaign",
        },
        "schedule_time": {
            "type": "string",
            "description": "ISO timestamp for scheduled campaigns",
        },
    },
    "required": ["lead_ids", "campaign_type"],
}

_GET_ANALYTICS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Get campaign analytics and performance metrics",
    "properties": {
        "metric_type": {
            "type": "string",
            "enum": ["overview", "campaign", "lead", "email"],
            "description": "Type of analytics to retrieve",
        },
        "time_range": {
            "type": "string",
            "enum": ["today", "week", "month", "all"],
            "description": "Time range for analytics",
        },
    },
    "required": ["metric_type"],
}

_RESEARCH_LEAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Conduct research on a specific lead",
    "properties": {
        "lead_id": {"type": "string", "description": "ID of the lead to research"},
        "research_depth": {
            "type": "string",
            "enum": ["quick", "standard", "deep"],
            "description": "How thorough the research should be",
        },
    },
    "required": ["lead_id"],
}

_SET_REMINDER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Set a reminder or recurring scheduled task",
    "properties": {
        "task_type": {
            "type": "string",
            "enum": ["campaign_check", "lead_research", "send_report", "custom"],
            "description": "Type of task to schedule",
        },
        "schedule": {
            "type": "string",
            "description": "Cron expression or a phrase like 'every morning' or 'every hour'",
        },
        "description": {"type": "string", "description": "Task description"},
    },
    "required": ["task_type", "schedule"],
}


def register_lead_tools(
    dispatcher: ToolDispatcher,
    leads: LeadStore,
    queues: "QueueRegistry",
    scheduler: "TaskScheduler",
    tasks: TaskStore,
) -> None:
    """Create the lead tools and register them with the dispatcher."""
    closures = create_lead_tools(leads, queues, scheduler, tasks)

    dispatcher.register("query_leads", closures["query_leads"], _QUERY_LEADS_SCHEMA)
    dispatcher.register("schedule_campaign", closures["schedule_campaign"], _SCHEDULE_CAMPAIGN_SCHEMA)
    dispatcher.register("get_analytics", closures["get_analytics"], _GET_ANALYTICS_SCHEMA)
    dispatcher.register("research_lead", closures["research_lead"], _RESEARCH_LEAD_SCHEMA)
    dispatcher.register("set_reminder", closures["set_reminder"], _SET_REMINDER_SCHEMA)
