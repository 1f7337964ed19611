"""Shared test fixtures for the suppfacts test suite."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from suppfacts.core.database import Base
from suppfacts.main import app
from suppfacts.modules.review.router import get_prioritizer, get_store
from suppfacts.modules.storage import models  # noqa: F401
from suppfacts.modules.storage.repository import SqlResultStore
from suppfacts.modules.verification.review import ReviewPrioritizer


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite database per test.

    ``StaticPool`` keeps one connection alive so every session sees the
    same in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def client(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client that talks directly to the FastAPI ASGI app."""
    app.dependency_overrides[get_prioritizer] = lambda: ReviewPrioritizer(session_factory)
    app.dependency_overrides[get_store] = lambda: SqlResultStore(session_factory)

    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.pop(get_prioritizer, None)
    app.dependency_overrides.pop(get_store, None)
