"""Scheduled task manager -- CRUD for task definitions and their execution history."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select

from prospector.storage.database import Database
from prospector.storage.models import ScheduledTask, TaskExecution

logger = logging.getLogger(__name__)


class TaskStore:
    """Manages rows in scheduled_tasks and task_executions."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        task_type: str,
        cron_expression: str,
        description: str = "",
        created_by: str = "ai_assistant",
        parameters: dict | None = None,
    ) -> ScheduledTask:
        """Persist a new active task."""
        async with self._db.session() as session:
            task = ScheduledTask(
                task_type=task_type,
                cron_expression=cron_expression,
                active=True,
                description=description,
                created_by=created_by,
                parameters=parameters or {},
            )
            session.add(task)
            await session.commit()
            await session.refresh(task)
            logger.info(
                "Created %s task %s (%s): %s",
                task_type, task.id.hex[:8], cron_expression, description[:80],
            )
            return task

    async def get(self, task_id: UUID) -> ScheduledTask | None:
        async with self._db.session() as session:
            return await session.get(ScheduledTask, task_id)

    async def list_active(self) -> list[ScheduledTask]:
        """All active tasks, oldest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ScheduledTask)
                .where(ScheduledTask.active.is_(True))
                .order_by(ScheduledTask.created_at)
            )
            return list(result.scalars().all())

    async def list(self, active_only: bool = False, limit: int = 50) -> list[ScheduledTask]:
        async with self._db.session() as session:
            q = select(ScheduledTask).order_by(ScheduledTask.created_at.desc()).limit(limit)
            if active_only:
                q = q.where(ScheduledTask.active.is_(True))
            result = await session.execute(q)
            return list(result.scalars().all())

    async def count(self) -> int:
        async with self._db.session() as session:
            return await session.scalar(select(func.count()).select_from(ScheduledTask)) or 0

    async def record_execution(
        self,
        task_id: UUID,
        status: str,
        error: str | None = None,
    ) -> TaskExecution:
        """Append one execution record."""
        async with self._db.session() as session:
            execution = TaskExecution(task_id=task_id, status=status, error=error)
            session.add(execution)
            await session.commit()
            await session.refresh(execution)
            return execution

    async def list_executions(self, task_id: UUID, limit: int = 20) -> list[TaskExecution]:
        """Execution history for a task, newest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(TaskExecution)
                .where(TaskExecution.task_id == task_id)
                .order_by(TaskExecution.executed_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_executions_by_status(self) -> dict[str, int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(TaskExecution.status, func.count()).group_by(TaskExecution.status)
            )
            return {status: count for status, count in result.all()}
