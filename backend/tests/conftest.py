"""Shared fixtures for SICM tests.

Integration tests run against a file-backed SQLite database so that
concurrent sessions really contend for the write lock.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sicm.config import Settings
from sicm.db import build_engine, build_session_factory, create_tables
from sicm.investigations.lookup import CaseLookupService
from sicm.investigations.manager import CaseManager
from sicm.investigations.models import UserIdentity

from fakes import FakeJobQueue, FakeUserLookup


# =========================
# Settings and Database
# =========================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with the feature enabled and a throwaway SQLite database."""
    return Settings(
        _env_file=None,
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'sicm.db'}",
        suggested_investigations_enabled=True,
        central_auth_enabled=True,
        delayed_jobs_enabled=True,
        wiki_id="enwiki",
        merge_retry_attempts=3,
    )


@pytest.fixture
def disabled_settings(settings) -> Settings:
    return settings.model_copy(update={"suggested_investigations_enabled": False})


@pytest_asyncio.fixture
async def engine(settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def manager(session_factory, settings) -> CaseManager:
    return CaseManager(session_factory=session_factory, settings=settings)


@pytest.fixture
def lookup(session_factory, settings) -> CaseLookupService:
    return CaseLookupService(session_factory=session_factory, settings=settings)


# =========================
# Sample Data
# =========================


@pytest.fixture
def alice() -> UserIdentity:
    return UserIdentity(id=1, name="Alice")


@pytest.fixture
def bob() -> UserIdentity:
    return UserIdentity(id=2, name="Bob")


@pytest.fixture
def carol() -> UserIdentity:
    return UserIdentity(id=3, name="Carol")


@pytest.fixture
def user_lookup(alice, bob, carol) -> FakeUserLookup:
    return FakeUserLookup([alice, bob, carol])


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()
