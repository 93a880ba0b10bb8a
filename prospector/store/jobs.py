"""Job store -- CRUD and status transitions over the shared ``jobs`` table.

Owns no scheduling logic. Queues are logical partitions of the table keyed
by the ``queue`` column; ordering is oldest-first by ``created_at``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from prospector.errors import StorageUnavailable
from prospector.storage.database import Database
from prospector.storage.models import Job

logger = logging.getLogger(__name__)

_CREATE_TABLE_HINT = """CREATE TABLE jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    queue TEXT NOT NULL,
    payload JSONB,
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    completed_at TIMESTAMPTZ
);"""


class JobStore:
    """Persistence contract for queued jobs."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._table_ok = False
        self._warned_missing = False

    async def table_available(self) -> bool:
        """Return True once the jobs table is known to exist.

        A positive answer is memoized for the lifetime of the store; a
        negative one is re-checked on the next call so a late migration is
        picked up without a restart.
        """
        if self._table_ok:
            return True
        try:
            exists = await self._db.has_table(Job.__tablename__)
        except SQLAlchemyError as exc:
            logger.error("Could not inspect jobs table: %s", exc)
            return False
        if exists:
            self._table_ok = True
            return True
        if not self._warned_missing:
            logger.error('Table "jobs" does not exist. Create it with:\n%s', _CREATE_TABLE_HINT)
            self._warned_missing = True
        return False

    async def insert(self, queue: str, payload: Any) -> Job:
        """Insert a pending job. Raises StorageUnavailable on any storage failure."""
        if not await self.table_available():
            raise StorageUnavailable("jobs table missing")
        try:
            async with self._db.session() as session:
                job = Job(queue=queue, payload=payload, status="pending")
                session.add(job)
                await session.commit()
                await session.refresh(job)
        except SQLAlchemyError as exc:
            logger.error("Failed to add job to %s queue: %s", queue, exc)
            raise StorageUnavailable(f"insert into {queue} queue rejected: {exc}") from exc
        logger.debug("Enqueued job %s on %s", job.id.hex[:8], queue)
        return job

    async def fetch_next(self, queue: str) -> Job | None:
        """Return the oldest pending job for ``queue`` without claiming it.

        No row locking: two consumers on the same queue may see the same job.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(Job)
                .where(Job.queue == queue)
                .where(Job.status == "pending")
                .order_by(Job.created_at)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def mark_completed(self, job_id: UUID) -> bool:
        """Move a pending job to completed. Returns False if it was not pending."""
        return await self._finish(job_id, "completed", None)

    async def mark_failed(self, job_id: UUID, error: str) -> bool:
        """Move a pending job to failed. Returns False if it was not pending."""
        return await self._finish(job_id, "failed", error)

    async def _finish(self, job_id: UUID, status: str, error: str | None) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .where(Job.status == "pending")
                .values(status=status, error=error, completed_at=datetime.now(UTC))
            )
            await session.commit()
        changed = result.rowcount > 0
        if not changed:
            logger.warning("Job %s was not pending, left unchanged", job_id.hex[:8])
        return changed

    async def get(self, job_id: UUID) -> Job | None:
        async with self._db.session() as session:
            return await session.get(Job, job_id)

    async def list(
        self,
        queue: str | None = None,
        status: str | None = None,
        limit: int = 20,
    ) -> list[Job]:
        """List jobs newest first, optionally filtered."""
        async with self._db.session() as session:
            q = select(Job).order_by(Job.created_at.desc()).limit(limit)
            if queue:
                q = q.where(Job.queue == queue)
            if status:
                q = q.where(Job.status == status)
            result = await session.execute(q)
            return list(result.scalars().all())

    async def count_by_status(self, queue: str | None = None) -> dict[str, int]:
        """Count jobs grouped by status."""
        async with self._db.session() as session:
            q = select(Job.status, func.count()).group_by(Job.status)
            if queue:
                q = q.where(Job.queue == queue)
            result = await session.execute(q)
            return {status: count for status, count in result.all()}
