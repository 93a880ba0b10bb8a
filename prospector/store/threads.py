"""Persisted user -> assistant thread mapping."""

import logging

from prospector.storage.database import Database
from prospector.storage.models import ConversationThread

logger = logging.getLogger(__name__)


class ThreadStore:
    """Reads and upserts rows in conversation_threads."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, user_id: str) -> str | None:
        """Return the stored thread id for a user, if any."""
        async with self._db.session() as session:
            row = await session.get(ConversationThread, user_id)
            return row.thread_id if row else None

    async def save(self, user_id: str, thread_id: str) -> None:
        """Insert or replace the mapping for a user."""
        async with self._db.session() as session:
            await session.merge(ConversationThread(user_id=user_id, thread_id=thread_id))
            await session.commit()
        logger.info("Saved thread %s for user %s", thread_id, user_id)
