"""Test fixtures using a throwaway SQLite database per test.

The models are dialect-portable, so every store runs unchanged against
sqlite+aiosqlite.  Each test gets a fresh file-backed database with the
schema created.
"""

import pytest
import pytest_asyncio

from prospector.config import Settings
from prospector.storage.database import Database
from prospector.store import JobStore, LeadStore, NotificationStore, TaskStore, ThreadStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Real Settings pointed at a per-test SQLite file."""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'prospector.db'}",
        OPENAI_API_KEY="sk-test",
        GOOGLE_SEARCH_API_KEY="test-google-key",
        GOOGLE_SEARCH_ENGINE_ID="test-engine",
        queue_poll_interval=0.01,
        run_poll_interval=0.01,
        log_level="info",
    )


@pytest_asyncio.fixture
async def bare_db(settings):
    """Connected database with no tables."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def db(bare_db):
    """Connected database with the full schema."""
    await bare_db.create_schema()
    return bare_db


@pytest.fixture
def job_store(db) -> JobStore:
    return JobStore(db)


@pytest.fixture
def task_store(db) -> TaskStore:
    return TaskStore(db)


@pytest.fixture
def lead_store(db) -> LeadStore:
    return LeadStore(db)


@pytest.fixture
def notification_store(db) -> NotificationStore:
    return NotificationStore(db)


@pytest.fixture
def thread_store(db) -> ThreadStore:
    return ThreadStore(db)
