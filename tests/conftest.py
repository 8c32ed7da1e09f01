"""Shared test fixtures — async SQLite in-memory DB, in-process event bus, test client."""

import json
import os
import uuid
from collections.abc import AsyncGenerator
from unittest.mock import patch

# Settings are read once per process; configure them before importing the app.
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("WORKER_SHARED_SECRET", "test-worker-secret")
os.environ.setdefault("EVENT_BUS_BACKEND", "memory")
os.environ.setdefault("DISPATCH_MODE", "inline")
os.environ.setdefault("STREAM_KEEPALIVE_SECONDS", "0.2")
os.environ.setdefault("PROVIDER_RETRY_BACKOFF_SECONDS", "0")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import analyst.models  # noqa: F401, E402
from analyst.core import cache  # noqa: E402
from analyst.core.database import get_session  # noqa: E402
from analyst.core.security import create_jwt  # noqa: E402
from analyst.main import app  # noqa: E402
from analyst.models.dataset import Dataset  # noqa: E402
from analyst.models.user import Team, User  # noqa: E402
from analyst.services.dispatcher import build_job_payload  # noqa: E402
from analyst.workers.chat_turn import on_worker_invocation  # noqa: E402

from stubs import SAMPLE_COLUMNS  # noqa: E402


@pytest.fixture(scope="session")
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture(scope="session")
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture(autouse=True)
def _clear_caches():
    cache.clear_all()
    yield
    cache.clear_all()


@pytest.fixture
def worker_db(test_session_factory):
    """Point every module that opens its own DB session at the test engine."""
    with (
        patch("analyst.workers.chat_turn.async_session_factory", test_session_factory),
        patch("analyst.services.dispatcher.async_session_factory", test_session_factory),
        patch("analyst.api.v1.chats.async_session_factory", test_session_factory),
    ):
        yield test_session_factory


@pytest.fixture
async def client(session, worker_db) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session override."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def run_turns_inline():
    """Replace the route's enqueue with one that runs the turn to completion first.

    Every event is published before the SSE relay starts reading, which
    makes stream assertions deterministic.
    """
    async def _run(session_id: uuid.UUID, message_id: uuid.UUID) -> None:
        await on_worker_invocation(build_job_payload(session_id, message_id))

    with patch("analyst.api.v1.chats.enqueue", side_effect=_run) as mock_enqueue:
        yield mock_enqueue


# ── Data helpers ──────────────────────────────────────────────

@pytest.fixture
async def user(session) -> User:
    team = Team(name="Finance", currency="EUR", locale="de-DE", business_context="Retail chain")
    session.add(team)
    await session.flush()
    u = User(email=f"{uuid.uuid4().hex[:8]}@test.com", team_id=team.id, currency="", locale="")
    session.add(u)
    await session.commit()
    return u


@pytest.fixture
def headers(user) -> dict:
    return {"Authorization": f"Bearer {create_jwt(str(user.id))}"}


@pytest.fixture
async def dataset(session, user) -> Dataset:
    ds = Dataset(
        user_id=user.id,
        team_id=user.team_id,
        name="Q1 Financials",
        description="Monthly P&L",
        columns=json.dumps(SAMPLE_COLUMNS),
        storage_path=f"{user.id}/q1.csv",
        row_count=3,
    )
    session.add(ds)
    await session.commit()
    return ds
