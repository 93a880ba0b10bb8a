"""REST API for prospector.

Endpoints:
  POST /chat                    - Send a message to the assistant, get its reply
  POST /jobs/{queue}            - Enqueue a job on a named queue
  GET  /jobs                    - List jobs (filter by queue/status)
  GET  /tasks                   - List scheduled tasks
  POST /tasks                   - Create a scheduled task from cron or a phrase
  GET  /tasks/{id}/executions   - Execution history for a task
  GET  /leads                   - Search leads
  POST /leads                   - Add a lead
  GET  /notifications           - Recent notifications
  GET  /health                  - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from prospector.api.runner import RunDriver
from prospector.errors import (
    AssistantApiError,
    RunFailed,
    ScheduleResolutionFailure,
    StorageUnavailable,
    SubmissionFailure,
)
from prospector.handlers.queue_worker import QueueRegistry
from prospector.handlers.task_scheduler import TaskScheduler
from prospector.storage.database import Database
from prospector.storage.models import Job, Lead, Notification, ScheduledTask, TaskExecution
from prospector.store.leads import LEAD_STATUSES, LeadStore
from prospector.store.notifications import NotificationStore
from prospector.store.tasks import TaskStore

logger = logging.getLogger(__name__)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _job_dict(job: Job) -> dict[str, Any]:
    return {
        "id": str(job.id),
        "queue": job.queue,
        "payload": job.payload,
        "status": job.status,
        "error": job.error,
        "created_at": _iso(job.created_at),
        "completed_at": _iso(job.completed_at),
    }


def _task_dict(task: ScheduledTask) -> dict[str, Any]:
    return {
        "id": str(task.id),
        "task_type": task.task_type,
        "cron_expression": task.cron_expression,
        "active": task.active,
        "description": task.description,
        "created_by": task.created_by,
        "parameters": task.parameters,
        "created_at": _iso(task.created_at),
    }


def _execution_dict(execution: TaskExecution) -> dict[str, Any]:
    return {
        "id": str(execution.id),
        "task_id": str(execution.task_id),
        "status": execution.status,
        "error": execution.error,
        "executed_at": _iso(execution.executed_at),
    }


def _lead_dict(lead: Lead) -> dict[str, Any]:
    return {
        "id": str(lead.id),
        "name": lead.name,
        "email": lead.email,
        "company": lead.company,
        "status": lead.status,
        "research": lead.research,
        "created_at": _iso(lead.created_at),
    }


def _notification_dict(notification: Notification) -> dict[str, Any]:
    return {
        "id": str(notification.id),
        "type": notification.type,
        "title": notification.title,
        "content": notification.content,
        "priority": notification.priority,
        "created_at": _iso(notification.created_at),
    }


def _int_param(request: Request, name: str, default: int) -> int:
    try:
        return max(1, min(int(request.query_params.get(name, default)), 200))
    except ValueError:
        return default


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    runner: RunDriver,
    queues: QueueRegistry,
    scheduler: TaskScheduler,
    tasks: TaskStore,
    leads: LeadStore,
    notifications: NotificationStore,
    database: Database,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get the assistant's reply."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        user_id = body.get("user_id")
        if not message or not user_id:
            return JSONResponse(
                {"error": "Missing required fields: user_id, message"}, status_code=400
            )

        try:
            reply = await runner.send_message(str(user_id), message)
        except (RunFailed, SubmissionFailure, AssistantApiError) as e:
            logger.error("Chat error for %s: %s", user_id, e)
            return JSONResponse({"error": str(e)}, status_code=502)
        return JSONResponse({"reply": reply})

    async def enqueue_job(request: Request) -> JSONResponse:
        """POST /jobs/{queue} - Enqueue the request body as a job payload."""
        queue_name = request.path_params["queue"]
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            job = await queues.get(queue_name).enqueue(payload)
        except StorageUnavailable as e:
            return JSONResponse({"error": str(e)}, status_code=503)
        return JSONResponse(_job_dict(job), status_code=201)

    async def list_jobs(request: Request) -> JSONResponse:
        """GET /jobs - List jobs, newest first."""
        jobs = await queues.store.list(
            queue=request.query_params.get("queue"),
            status=request.query_params.get("status"),
            limit=_int_param(request, "limit", 20),
        )
        return JSONResponse({"jobs": [_job_dict(j) for j in jobs], "total": len(jobs)})

    async def list_tasks(request: Request) -> JSONResponse:
        """GET /tasks - List scheduled tasks."""
        active_only = request.query_params.get("active", "").lower() in ("1", "true", "yes")
        rows = await tasks.list(active_only=active_only, limit=_int_param(request, "limit", 50))
        return JSONResponse({"tasks": [_task_dict(t) for t in rows], "total": len(rows)})

    async def create_task(request: Request) -> JSONResponse:
        """POST /tasks - Create and arm a scheduled task."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        task_type = body.get("task_type")
        schedule = body.get("schedule")
        if not task_type or not schedule:
            return JSONResponse(
                {"error": "Missing required fields: task_type, schedule"}, status_code=400
            )

        try:
            task = await scheduler.create_task(
                task_type=task_type,
                schedule_input=schedule,
                description=body.get("description", ""),
                created_by=body.get("created_by", "api"),
                parameters=body.get("parameters"),
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except ScheduleResolutionFailure as e:
            return JSONResponse({"error": str(e)}, status_code=422)
        return JSONResponse(_task_dict(task), status_code=201)

    async def list_executions(request: Request) -> JSONResponse:
        """GET /tasks/{id}/executions - Execution history for a task."""
        try:
            task_id = UUID(request.path_params["id"])
        except ValueError:
            return JSONResponse({"error": "Invalid task id"}, status_code=400)

        if await tasks.get(task_id) is None:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        rows = await scheduler.list_executions(task_id, limit=_int_param(request, "limit", 20))
        return JSONResponse({"executions": [_execution_dict(e) for e in rows]})

    async def search_leads(request: Request) -> JSONResponse:
        """GET /leads - Search leads by status and name/email/company."""
        status = request.query_params.get("status")
        if status and status not in LEAD_STATUSES:
            return JSONResponse({"error": f"Invalid status {status!r}"}, status_code=400)
        rows = await leads.search(
            status=status,
            search=request.query_params.get("q"),
            limit=_int_param(request, "limit", 20),
        )
        return JSONResponse({"leads": [_lead_dict(lead) for lead in rows], "total": len(rows)})

    async def create_lead(request: Request) -> JSONResponse:
        """POST /leads - Add a lead."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not body.get("name"):
            return JSONResponse({"error": "Missing required field: name"}, status_code=400)
        try:
            lead = await leads.create(
                name=body["name"],
                email=body.get("email"),
                company=body.get("company"),
                status=body.get("status", "new"),
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(_lead_dict(lead), status_code=201)

    async def list_notifications(request: Request) -> JSONResponse:
        """GET /notifications - Recent notifications, newest first."""
        rows = await notifications.list(
            type=request.query_params.get("type"),
            limit=_int_param(request, "limit", 20),
        )
        return JSONResponse({"notifications": [_notification_dict(n) for n in rows]})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)
        return JSONResponse({
            "status": "healthy",
            "jobs_table": await queues.store.table_available(),
            "armed_tasks": len(scheduler.armed_task_ids()),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/jobs/{queue}", enqueue_job, methods=["POST"]),
        Route("/jobs", list_jobs),
        Route("/tasks", list_tasks, methods=["GET"]),
        Route("/tasks", create_task, methods=["POST"]),
        Route("/tasks/{id}/executions", list_executions),
        Route("/leads", search_leads, methods=["GET"]),
        Route("/leads", create_lead, methods=["POST"]),
        Route("/notifications", list_notifications),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
