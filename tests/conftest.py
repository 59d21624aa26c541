"""Pytest configuration and fixtures for Gelatin ERP tests.

Every test gets its own SQLite database file (aiosqlite) so tests never
share state and concurrent-writer tests can open several connections.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from gelatin_erp.database import Base, build_engine, build_session_factory, get_db
from gelatin_erp.main import app
from gelatin_erp.models import *  # noqa: F401,F403
from gelatin_erp.services import batch_registry

FISCAL_YEAR = "2025-26"


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Fresh SQLite database with every table created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Database session for service-level tests (rolled back at the end)."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Test client whose requests commit to the per-test database."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest.fixture
def make_batch(db_session: AsyncSession):
    """Factory creating production batches in ``FISCAL_YEAR``."""

    async def _make(bloom: float | None = 200, **kwargs):
        attributes = kwargs.pop("attributes", {})
        if bloom is not None:
            attributes["bloom"] = bloom
        return await batch_registry.create_batch(
            db_session,
            attributes,
            kwargs.pop("fiscal_year", FISCAL_YEAR),
            kwargs.pop("batch_type", "production"),
            kwargs.pop("batch_number", None),
            **kwargs,
        )

    return _make


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "slow: Slow tests")
