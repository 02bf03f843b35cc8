"""Persistent key-value store backing the cache, quotas and checkpoints.

Values are JSON-serialisable dicts. Backends raise ``StorageError``; the
layers above (cache, quota governor, checkpoint store) catch and log it so a
storage failure never stops a run.
"""

import asyncio
import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from geoenrich.errors import StorageError
from geoenrich.models.kv_entry import KVEntry

logger = structlog.get_logger()


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def list_by_prefix(self, prefix: str) -> dict[str, dict[str, Any]]:
        ...

    @abstractmethod
    def set_sync(self, key: str, value: dict[str, Any]) -> None:
        """Blocking write for shutdown hooks where no event loop is available."""

    async def close(self) -> None:
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store for tests and dry runs."""

    def __init__(self):
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    async def get(self, key):
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    async def set(self, key, value):
        self.set_sync(key, value)

    async def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    async def list_by_prefix(self, prefix):
        with self._lock:
            return {k: copy.deepcopy(v) for k, v in self._data.items() if k.startswith(prefix)}

    def set_sync(self, key, value):
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def __len__(self) -> int:
        return len(self._data)


class SQLAlchemyKeyValueStore(KeyValueStore):
    """Store rows in the ``kv_entries`` table through SQLAlchemy."""

    def __init__(self, engine: AsyncEngine, sync_engine_factory=None):
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self._sync_engine_factory = sync_engine_factory
        self._sync_engine = None
        self._sync_lock = threading.Lock()

    async def get(self, key):
        try:
            async with self._session_factory() as session:
                entry = await session.get(KVEntry, key)
                return dict(entry.value) if entry else None
        except SQLAlchemyError as e:
            raise StorageError(f"get {key}: {e}") from e

    async def set(self, key, value):
        try:
            async with self._session_factory() as session:
                await session.merge(
                    KVEntry(key=key, value=value, updated_at=datetime.now(timezone.utc))
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"set {key}: {e}") from e

    async def delete(self, key):
        try:
            async with self._session_factory() as session:
                await session.execute(delete(KVEntry).where(KVEntry.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"delete {key}: {e}") from e

    async def list_by_prefix(self, prefix):
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(KVEntry).where(KVEntry.key.startswith(prefix, autoescape=True))
                )
                return {entry.key: dict(entry.value) for entry in result.scalars().all()}
        except SQLAlchemyError as e:
            raise StorageError(f"list {prefix}: {e}") from e

    def set_sync(self, key, value):
        if self._sync_engine_factory is None:
            raise StorageError("No synchronous engine configured")
        try:
            with self._sync_lock:
                if self._sync_engine is None:
                    self._sync_engine = self._sync_engine_factory()
                with Session(self._sync_engine) as session:
                    session.merge(KVEntry(key=key, value=value, updated_at=datetime.now(timezone.utc)))
                    session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"set_sync {key}: {e}") from e

    async def close(self):
        await self._engine.dispose()
        if self._sync_engine is not None:
            await asyncio.to_thread(self._sync_engine.dispose)


async def open_default_store() -> SQLAlchemyKeyValueStore:
    """Create the table if needed and return a store bound to the configured database."""
    from geoenrich.database import build_sync_engine, create_all_tables, engine

    await create_all_tables(engine)
    logger.info("Key-value store ready", backend=engine.url.get_backend_name())
    return SQLAlchemyKeyValueStore(engine, sync_engine_factory=build_sync_engine)
