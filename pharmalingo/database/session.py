"""
Database Session Management

Async engine and session factory construction for the SQLAlchemy progress
store.
"""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from pharmalingo.common.logger import app_logger
from pharmalingo.database.base import Base

logger = app_logger.getChild("db.session")


def get_engine_kwargs(database_url: str) -> Dict[str, Any]:
    """
    Get engine keyword arguments based on database type.
    Different databases support different connection options.
    """
    kwargs: Dict[str, Any] = {"echo": False}

    if database_url.startswith("postgresql"):
        kwargs.update({
            "pool_size": 5,
            "pool_pre_ping": True,
            "pool_recycle": 300,
        })

    return kwargs


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async engine for ``database_url``"""
    logger.info(f"Creating database engine for {database_url.split('@')[-1]}")
    return create_async_engine(database_url, **get_engine_kwargs(database_url))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table registered on the declarative base"""
    # register models on the metadata
    from pharmalingo.database import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
