# tests/conftest.py
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ASYNC_DATABASE_URL", "sqlite+aiosqlite:///./test.db")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from promo_engine.core.config import PromotionLimits
from promo_engine.db.session_async import create_all
from promo_engine.services.engine import PromotionEngine

from tests.fakes import NOW, FakeGiftInventory, FakePromotionRepository


# ---------- Fixtures ----------
@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def limits() -> PromotionLimits:
    return PromotionLimits()


@pytest.fixture
def repository() -> FakePromotionRepository:
    return FakePromotionRepository()


@pytest.fixture
def inventory() -> FakeGiftInventory:
    return FakeGiftInventory()


@pytest.fixture
def engine(repository, inventory, clock, limits) -> PromotionEngine:
    return PromotionEngine(repository, inventory, clock=clock, limits=limits)


@pytest_asyncio.fixture(scope="function")
async def session_factory():
    """In-memory SQLite shared across sessions of a single test."""
    db_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
    )
    await create_all(db_engine)
    yield async_sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)
    await db_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def async_db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session
        await session.rollback()
