"""
Key-value backends for chat history and webhook bookkeeping.

The chat store only needs get / put-with-expiry / delete / list, and the
webhook dedupe needs an atomic add-if-absent. Two implementations are
provided:

- SQLKeyValueBackend: a single SQLAlchemy table, the production backend.
- MemoryKeyValueBackend: process-local dict, for development and tests.

Both raise StorageError on failure and treat expired entries as absent.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from sqlalchemy import create_engine, text, inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from whatsapp_ai.config import settings
from whatsapp_ai.errors import StorageError

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    # check_same_thread=False is required for SQLite when sessions are used from worker threads
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 15}}
    return {"pool_pre_ping": True}


engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_kwargs(settings.DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Create the key-value table.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from whatsapp_ai.models import KVEntry  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and the kv_entries table exists.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("kv_entries"):
            logger.error("Database schema not applied: 'kv_entries' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _expiry(expire_after_seconds: Optional[int], expire_at: Optional[int], now: float) -> Optional[int]:
    if expire_at is not None:
        return int(expire_at)
    if expire_after_seconds is not None:
        return int(now + expire_after_seconds)
    return None


# =============================================================================
# Backend Interface
# =============================================================================

class KeyValueBackend(ABC):
    """Asynchronous string key-value store with absolute per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        value: str,
        expire_after_seconds: Optional[int] = None,
        expire_at: Optional[int] = None,
    ) -> None:
        ...

    @abstractmethod
    async def add(
        self,
        key: str,
        value: str,
        expire_after_seconds: Optional[int] = None,
        expire_at: Optional[int] = None,
    ) -> bool:
        """
        Insert only if no live entry exists for key.

        Returns:
            True if this call created the entry, False if it was already present
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        ...


# =============================================================================
# SQLAlchemy Backend
# =============================================================================

class SQLKeyValueBackend(KeyValueBackend):
    """
    Key-value backend on the kv_entries table.

    Blocking SQLAlchemy work runs in worker threads, one short-lived
    session per call.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def put(
        self,
        key: str,
        value: str,
        expire_after_seconds: Optional[int] = None,
        expire_at: Optional[int] = None,
    ) -> None:
        expires = _expiry(expire_after_seconds, expire_at, self._clock())
        await asyncio.to_thread(self._put, key, value, expires)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def add(
        self,
        key: str,
        value: str,
        expire_after_seconds: Optional[int] = None,
        expire_at: Optional[int] = None,
    ) -> bool:
        expires = _expiry(expire_after_seconds, expire_at, self._clock())
        return await asyncio.to_thread(self._add, key, value, expires)

    async def list_keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._list_keys, prefix)

    async def purge_expired(self) -> int:
        """Physically remove expired rows. Returns the number removed."""
        return await asyncio.to_thread(self._purge_expired)

    def _live(self, query):
        from whatsapp_ai.models import KVEntry

        now = int(self._clock())
        return query.filter((KVEntry.expires_at.is_(None)) | (KVEntry.expires_at > now))

    def _get(self, key: str) -> Optional[str]:
        from whatsapp_ai.models import KVEntry

        try:
            with self._session_factory() as db:
                row = self._live(db.query(KVEntry).filter(KVEntry.key == key)).first()
                return row.value if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read key {key}: {e}")
            raise StorageError(f"read failed: {e}", key=key) from e

    def _put(self, key: str, value: str, expires_at: Optional[int]) -> None:
        from whatsapp_ai.models import KVEntry

        try:
            with self._session_factory() as db:
                db.merge(KVEntry(key=key, value=value, expires_at=expires_at))
                db.commit()
            logger.debug(f"Stored key {key} ({len(value)} chars, expires_at={expires_at})")
        except SQLAlchemyError as e:
            logger.error(f"Failed to write key {key}: {e}")
            raise StorageError(f"write failed: {e}", key=key) from e

    def _delete(self, key: str) -> None:
        from whatsapp_ai.models import KVEntry

        try:
            with self._session_factory() as db:
                db.query(KVEntry).filter(KVEntry.key == key).delete(synchronize_session=False)
                db.commit()
            logger.debug(f"Deleted key {key}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete key {key}: {e}")
            raise StorageError(f"delete failed: {e}", key=key) from e

    def _add(self, key: str, value: str, expires_at: Optional[int]) -> bool:
        from whatsapp_ai.models import KVEntry

        now = int(self._clock())
        try:
            with self._session_factory() as db:
                # An expired row still holds the primary key; clear it so the insert can succeed
                db.query(KVEntry).filter(
                    KVEntry.key == key,
                    KVEntry.expires_at.is_not(None),
                    KVEntry.expires_at <= now,
                ).delete(synchronize_session=False)
                db.add(KVEntry(key=key, value=value, expires_at=expires_at))
                try:
                    db.commit()
                except IntegrityError:
                    # Primary key violation: another writer holds a live entry
                    db.rollback()
                    logger.debug(f"Key {key} already present, add skipped")
                    return False
            logger.debug(f"Added key {key} (expires_at={expires_at})")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to add key {key}: {e}")
            raise StorageError(f"add failed: {e}", key=key) from e

    def _list_keys(self, prefix: str) -> list[str]:
        from whatsapp_ai.models import KVEntry

        try:
            with self._session_factory() as db:
                query = db.query(KVEntry.key)
                if prefix:
                    query = query.filter(KVEntry.key.startswith(prefix, autoescape=True))
                rows = self._live(query).order_by(KVEntry.key.asc()).all()
                return [row.key for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list keys with prefix {prefix!r}: {e}")
            raise StorageError(f"list failed: {e}") from e

    def _purge_expired(self) -> int:
        from whatsapp_ai.models import KVEntry

        now = int(self._clock())
        try:
            with self._session_factory() as db:
                removed = (
                    db.query(KVEntry)
                    .filter(KVEntry.expires_at.is_not(None), KVEntry.expires_at <= now)
                    .delete(synchronize_session=False)
                )
                db.commit()
            logger.info(f"Purged {removed} expired keys")
            return removed
        except SQLAlchemyError as e:
            logger.error(f"Failed to purge expired keys: {e}")
            raise StorageError(f"purge failed: {e}") from e


# =============================================================================
# In-Memory Backend
# =============================================================================

class MemoryKeyValueBackend(KeyValueBackend):
    """Dict-backed backend with the same expiry semantics as the SQL one."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: dict[str, tuple[str, Optional[int]]] = {}
        self._clock = clock

    def _alive(self, expires_at: Optional[int]) -> bool:
        return expires_at is None or expires_at > int(self._clock())

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None or not self._alive(entry[1]):
            return None
        return entry[0]

    async def put(
        self,
        key: str,
        value: str,
        expire_after_seconds: Optional[int] = None,
        expire_at: Optional[int] = None,
    ) -> None:
        self._data[key] = (value, _expiry(expire_after_seconds, expire_at, self._clock()))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def add(
        self,
        key: str,
        value: str,
        expire_after_seconds: Optional[int] = None,
        expire_at: Optional[int] = None,
    ) -> bool:
        # Check and set without an await in between, so no other coroutine can interleave
        entry = self._data.get(key)
        if entry is not None and self._alive(entry[1]):
            return False
        self._data[key] = (value, _expiry(expire_after_seconds, expire_at, self._clock()))
        return True

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(
            key for key, (_, expires_at) in self._data.items()
            if key.startswith(prefix) and self._alive(expires_at)
        )
