"""Database connection and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lock_reconciler.db.models import Base, RunLock

logger = logging.getLogger(__name__)

RUN_LOCK_ID = 1


class Database:
    """Async engine plus session factory for one database URL."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": 30},
        )
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init(self) -> None:
        """Create all tables and seed the single run-lock row."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with self.session() as session:
            result = await session.execute(select(RunLock).where(RunLock.id == RUN_LOCK_ID))
            if result.scalar_one_or_none() is None:
                session.add(RunLock(id=RUN_LOCK_ID))
                logger.info("Seeded run lock row")

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session as a context manager.

        Commits on a clean exit and rolls back if the block raises.
        """
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
