"""Async database engine and session factory."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import settings
from .models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    In-memory SQLite URLs get a static pool so every session shares
    the same connection (and therefore the same database).

    Args:
        database_url: SQLAlchemy URL (default: settings.database_url)
        echo: Log emitted SQL

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url

    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    """Build a session factory whose objects stay usable after commit."""
    return async_sessionmaker(db_engine, expire_on_commit=False)


async def init_db(db_engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all tables.

    Args:
        db_engine: Engine to initialize (default: module engine)
    """
    target = db_engine or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


engine = create_engine()
async_session = create_session_factory(engine)
