"""Test configuration and fixtures.

Store tests run against a throwaway SQLite file per test (aiosqlite), so the
suite needs no database server. Backoff intervals are zeroed.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from activator.config import Settings
from activator.database import Base, create_engine, create_session_factory
from activator.models.account import Account  # noqa: F401
from activator.services.accounts import AccountStore


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        imap_subject="Trainer Club Activation",
        imap_batch=10,
        imap_start=1,
        default_password="default-pass",
        rate_limit_backoff_seconds=0,
        resend_retry_seconds=0,
    )


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'accounts.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory: async_sessionmaker[AsyncSession]) -> AccountStore:
    return AccountStore(session_factory)
