"""Lead queries and status updates used by the assistant tools and workers."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select, update

from prospector.storage.database import Database
from prospector.storage.models import Lead

logger = logging.getLogger(__name__)

LEAD_STATUSES = ("new", "researched", "emailed", "replied")


class LeadStore:
    """CRUD over the leads table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        name: str,
        email: str | None = None,
        company: str | None = None,
        status: str = "new",
    ) -> Lead:
        if status not in LEAD_STATUSES:
            raise ValueError(f"Invalid lead status: {status!r}")
        async with self._db.session() as session:
            lead = Lead(name=name, email=email, company=company, status=status)
            session.add(lead)
            await session.commit()
            await session.refresh(lead)
            return lead

    async def get(self, lead_id: UUID) -> Lead | None:
        async with self._db.session() as session:
            return await session.get(Lead, lead_id)

    async def search(
        self,
        status: str | None = None,
        search: str | None = None,
        limit: int = 10,
    ) -> list[Lead]:
        """Filter by status and a case-insensitive match on name, email or company."""
        async with self._db.session() as session:
            q = select(Lead).order_by(Lead.created_at.desc()).limit(limit)
            if status:
                q = q.where(Lead.status == status)
            if search:
                pattern = f"%{search}%"
                q = q.where(
                    or_(
                        Lead.name.ilike(pattern),
                        Lead.email.ilike(pattern),
                        Lead.company.ilike(pattern),
                    )
                )
            result = await session.execute(q)
            return list(result.scalars().all())

    async def set_status(self, lead_id: UUID, status: str) -> None:
        if status not in LEAD_STATUSES:
            raise ValueError(f"Invalid lead status: {status!r}")
        async with self._db.session() as session:
            await session.execute(update(Lead).where(Lead.id == lead_id).values(status=status))
            await session.commit()

    async def save_research(self, lead_id: UUID, research: dict) -> None:
        """Store research results and mark the lead researched."""
        async with self._db.session() as session:
            await session.execute(
                update(Lead)
                .where(Lead.id == lead_id)
                .values(research=research, status="researched")
            )
            await session.commit()
        logger.info("Stored research for lead %s", lead_id.hex[:8])

    async def count_by_status(self, since: datetime | None = None) -> dict[str, int]:
        async with self._db.session() as session:
            q = select(Lead.status, func.count()).group_by(Lead.status)
            if since is not None:
                q = q.where(Lead.created_at >= since)
            result = await session.execute(q)
            return {status: count for status, count in result.all()}
