"""
Progress Repository

Persisted stores for learner progress. Every store keeps one serialized
``UserProgress`` document per learner and exposes the same async API:

1. ``load(user_id)`` - the stored dictionary, or None when nothing usable is stored
2. ``save(user_id, data)`` - replace the stored document
3. ``delete(user_id)`` - forget the learner

Backends: in-process memory, SQLAlchemy (async; one JSON row per learner) and
Redis (one key per learner). Storage errors surface as ``PersistenceFailure``.
"""

import copy
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError
from sqlalchemy import delete as sql_delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from pharmalingo.common.config import PersistenceConfig
from pharmalingo.common.error_handling import PersistenceFailure
from pharmalingo.common.logger import app_logger, log_execution_time
from pharmalingo.database.models import ProgressRecord
from pharmalingo.database.session import create_engine, create_session_factory, create_tables
from pharmalingo.progress.models import SCHEMA_VERSION

logger = app_logger.getChild("progress.repository")


class ProgressStore(ABC):
    """Persisted store interface"""

    @abstractmethod
    async def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Load the stored progress document.

        Args:
            user_id: Learner id

        Returns:
            Stored dictionary, or None if the learner has no usable record
        """

    @abstractmethod
    async def save(self, user_id: str, data: Dict[str, Any]) -> None:
        """
        Replace the stored progress document.

        Raises:
            PersistenceFailure: if the write did not happen
        """

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        """Remove the learner's document, if any"""

    async def close(self) -> None:
        """Release connections held by the store"""


class MemoryProgressStore(ProgressStore):
    """Dictionary-backed store; documents are deep-copied in and out"""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._documents: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})

    async def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        document = self._documents.get(user_id)
        return copy.deepcopy(document) if document is not None else None

    async def save(self, user_id: str, data: Dict[str, Any]) -> None:
        self._documents[user_id] = copy.deepcopy(data)

    async def delete(self, user_id: str) -> None:
        self._documents.pop(user_id, None)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._documents


class SqlAlchemyProgressStore(ProgressStore):
    """
    Relational store using one ``user_progress`` row per learner.

    Works with any async SQLAlchemy driver; SQLite via aiosqlite in
    development and tests.
    """

    def __init__(self, engine: AsyncEngine, session_factory: Optional[async_sessionmaker] = None):
        self.engine = engine
        self._session_factory = session_factory or create_session_factory(engine)

    @classmethod
    async def from_url(cls, database_url: str, create: bool = True) -> 'SqlAlchemyProgressStore':
        """Create the engine (and the table) for ``database_url``"""
        engine = create_engine(database_url)
        if create:
            await create_tables(engine)
        return cls(engine)

    @log_execution_time(logger)
    async def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self._session_factory() as session:
                record = await session.get(ProgressRecord, user_id)
                if record is None:
                    return None
                data = record.data
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load progress: {e}", user_id=user_id, cause=e)

        if not isinstance(data, dict):
            logger.warning(f"Discarding non-object progress row for {user_id}")
            return None
        return data

    @log_execution_time(logger)
    async def save(self, user_id: str, data: Dict[str, Any]) -> None:
        try:
            async with self._session_factory() as session:
                await session.merge(ProgressRecord(
                    user_id=user_id,
                    data=data,
                    schema_version=data.get("schema_version", SCHEMA_VERSION),
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to save progress: {e}", user_id=user_id, cause=e)

    async def delete(self, user_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(sql_delete(ProgressRecord).where(ProgressRecord.user_id == user_id))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to delete progress: {e}", user_id=user_id, cause=e)

    async def close(self) -> None:
        await self.engine.dispose()


class RedisProgressStore(ProgressStore):
    """Key-value store: one JSON string per learner under ``<prefix><user_id>``"""

    def __init__(self, redis_client: AsyncRedis, key_prefix: str = "pharmalingo_state_"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, key_prefix: str = "pharmalingo_state_") -> 'RedisProgressStore':
        return cls(AsyncRedis.from_url(redis_url), key_prefix=key_prefix)

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}{user_id}"

    @log_execution_time(logger)
    async def load(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(self._key(user_id))
        except RedisError as e:
            raise PersistenceFailure(f"Failed to load progress: {e}", user_id=user_id, cause=e)

        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unparseable progress for {user_id}")
            return None
        return data if isinstance(data, dict) else None

    @log_execution_time(logger)
    async def save(self, user_id: str, data: Dict[str, Any]) -> None:
        try:
            await self.redis.set(self._key(user_id), json.dumps(data, sort_keys=True))
        except RedisError as e:
            raise PersistenceFailure(f"Failed to save progress: {e}", user_id=user_id, cause=e)

    async def delete(self, user_id: str) -> None:
        try:
            await self.redis.delete(self._key(user_id))
        except RedisError as e:
            raise PersistenceFailure(f"Failed to delete progress: {e}", user_id=user_id, cause=e)

    async def close(self) -> None:
        await self.redis.aclose()


async def create_store(config: PersistenceConfig) -> ProgressStore:
    """
    Build the store selected by configuration.

    Args:
        config: Persistence configuration

    Returns:
        A ready-to-use store
    """
    if config.backend == "sqlalchemy":
        store = await SqlAlchemyProgressStore.from_url(config.database_url)
    elif config.backend == "redis":
        store = RedisProgressStore.from_url(config.redis_url, key_prefix=config.key_prefix)
    else:
        store = MemoryProgressStore()
    logger.info(f"Using {type(store).__name__} for progress persistence")
    return store
