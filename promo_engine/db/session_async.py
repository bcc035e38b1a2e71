# promo_engine/db/session_async.py
"""Async SQLAlchemy session utilities."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from promo_engine.core.config import settings
from promo_engine.db.session import Base

T = TypeVar("T")


async_engine: AsyncEngine = create_async_engine(
    settings.ASYNC_DATABASE_URL,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    expire_on_commit=False,
    autoflush=False,
)


async def create_all(engine: AsyncEngine = async_engine) -> None:
    """Create the promotion tables; migrations are owned by the host application."""
    import promo_engine.models.promotion  # noqa: F401

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


async def rollback(session: AsyncSession) -> None:
    """Rollback active transaction if needed."""
    if session.in_transaction():
        await session.rollback()


async def run_in_transaction(
    operation: Callable[[AsyncSession], Awaitable[T]],
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> T:
    """Execute an async operation within a managed transaction.

    Order creation and ``commit_promotions`` should share one call so that
    usage rows and counters roll back together with the order.
    """
    async with session_factory() as session:
        try:
            result = await operation(session)
            await session.commit()
            return result
        except Exception:
            await rollback(session)
            raise
