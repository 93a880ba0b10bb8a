"""Operator notifications: reports, campaign alerts and background failures."""

from __future__ import annotations

import logging

from sqlalchemy import select

from prospector.storage.database import Database
from prospector.storage.models import Notification

logger = logging.getLogger(__name__)


class NotificationStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def send(
        self,
        type: str,
        title: str,
        content: str = "",
        priority: str = "medium",
    ) -> Notification:
        async with self._db.session() as session:
            notification = Notification(type=type, title=title, content=content, priority=priority)
            session.add(notification)
            await session.commit()
            await session.refresh(notification)
        logger.info("Notification [%s] %s", type, title)
        return notification

    async def list(self, type: str | None = None, limit: int = 20) -> list[Notification]:
        async with self._db.session() as session:
            q = select(Notification).order_by(Notification.created_at.desc()).limit(limit)
            if type:
                q = q.where(Notification.type == type)
            result = await session.execute(q)
            return list(result.scalars().all())
