import os
import sqlite3
from datetime import datetime, date
from pathlib import Path

import pytest
import pytest_asyncio

os.environ.setdefault("USE_SQLITE", "true")
os.environ.setdefault("SQLITE_URL", "sqlite+aiosqlite:///./data/test.db")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("PROMETHEUS_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")

# Avoid deprecated sqlite3 default datetime adapters in Python 3.12+.
sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
sqlite3.register_adapter(date, lambda value: value.isoformat())


@pytest.fixture(scope="session")
def sqlite_db_path() -> Path:
    return Path("data/test.db")


@pytest.fixture(autouse=True, scope="session")
def _ensure_test_db_dir(sqlite_db_path: Path) -> None:
    sqlite_db_path.parent.mkdir(parents=True, exist_ok=True)
    for suffix in ("", "-wal", "-shm"):
        stale = sqlite_db_path.with_name(sqlite_db_path.name + suffix)
        if stale.exists():
            stale.unlink()


@pytest_asyncio.fixture(autouse=True, scope="session")
async def _dispose_engine():
    yield
    from outbox.database import get_engine
    await get_engine().dispose()


@pytest_asyncio.fixture
async def outbox_db():
    """Fresh outbox and audit tables for one test."""
    from sqlalchemy import delete

    from outbox.database import AsyncSessionLocal, init_db
    from outbox.models import AuditLog, OutboxJob

    await init_db()
    async with AsyncSessionLocal() as session:
        await session.execute(delete(OutboxJob))
        await session.execute(delete(AuditLog))
        await session.commit()
    yield


@pytest.fixture
def store(outbox_db):
    from outbox.services.job_store import SqlAlchemyJobStore
    return SqlAlchemyJobStore()
