"""
Local persistent storage for the chat client.

Three namespaces live in one SQLite database (via SQLAlchemy's async engine):
key pairs, cached message history and derived session secrets. Every public
call runs in its own transaction.

Session secrets are stored as exported key material without an extra at-rest
encryption layer; device compromise is outside this store's threat model.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, String, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .errors import CacheExpired, StorageTransactionError, StorageUnavailableError

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_HISTORY_TTL = timedelta(days=7)


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on round trip)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def history_key(user_id: str, friend_id: str) -> str:
    return f"{user_id}_{friend_id}"


class Namespace(str, Enum):
    KEYPAIRS = "keypairs"
    HISTORY = "history"
    SECRETS = "secrets"


class StoredKeyPair(Base):
    """The device's key pair for one user"""
    __tablename__ = "keypairs"

    user_id = Column(String(128), primary_key=True)
    public_key = Column(JSON, nullable=False)
    private_key = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False)


class CachedHistory(Base):
    """Recently seen messages for one (user, friend) pair"""
    __tablename__ = "history"

    cache_key = Column(String(256), primary_key=True)
    user_id = Column(String(128), index=True, nullable=False)
    friend_id = Column(String(128), nullable=False)
    messages = Column(JSON, nullable=False)
    cached_at = Column(DateTime, nullable=False)


class SessionSecret(Base):
    """Derived session key for a pair, keyed by sorted pair id"""
    __tablename__ = "secrets"

    pair_id = Column(String(256), primary_key=True)
    secret = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False)


MODELS = {
    Namespace.KEYPAIRS: StoredKeyPair,
    Namespace.HISTORY: CachedHistory,
    Namespace.SECRETS: SessionSecret,
}

PRIMARY_KEYS = {
    Namespace.KEYPAIRS: "user_id",
    Namespace.HISTORY: "cache_key",
    Namespace.SECRETS: "pair_id",
}


def _row_to_dict(row) -> Dict[str, Any]:
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


class _KeyLock:
    """Per-key write lock with a count of holders and waiters"""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class _WriteGate:
    """Shared/exclusive gate: ordinary writes share it, clear_all takes it alone."""

    def __init__(self):
        self._cond = asyncio.Condition()
        self._writers = 0
        self._exclusive = False

    @asynccontextmanager
    async def shared(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._exclusive)
            self._writers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._writers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self):
        async with self._cond:
            await self._cond.wait_for(lambda: not self._exclusive and self._writers == 0)
            self._exclusive = True
        try:
            yield
        finally:
            async with self._cond:
                self._exclusive = False
                self._cond.notify_all()


class SecureLocalStore:
    """
    Namespaced, transactional key-value store.

    Construct one per process and pass it to the components that need it.
    """

    def __init__(
        self,
        database_url: str = "sqlite+aiosqlite:///./chat_client.db",
        history_ttl: timedelta = DEFAULT_HISTORY_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            database_url: SQLAlchemy async database URL
            history_ttl: Age after which cached history is dropped on read
            clock: Returns the current naive-UTC time
        """
        self.database_url = database_url
        self.history_ttl = history_ttl
        self.clock = clock
        self.engine = None
        self.async_session: Optional[async_sessionmaker] = None
        self._key_locks: Dict[tuple, _KeyLock] = {}
        self._gate = _WriteGate()

    async def init(self):
        """Open the database and create missing tables. Safe to call twice."""
        if self.async_session is not None:
            return
        try:
            engine = create_async_engine(self.database_url, echo=False)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            logger.error("Local storage unavailable: %s", e)
            raise StorageUnavailableError("Local storage unavailable") from e

        self.engine = engine
        self.async_session = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info("Local storage ready")

    async def close(self):
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.async_session = None

    @asynccontextmanager
    async def _transaction(self, action: str):
        if self.async_session is None:
            raise StorageUnavailableError("Local storage is not initialized")
        try:
            async with self.async_session() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Storage transaction failed during %s: %s", action, e)
            raise StorageTransactionError(f"Storage transaction failed: {action}") from e

    @asynccontextmanager
    async def _write_lock(self, namespace: Namespace, key: str):
        slot = (namespace, key)
        entry = self._key_locks.get(slot)
        if entry is None:
            entry = self._key_locks[slot] = _KeyLock()
        entry.users += 1
        try:
            async with self._gate.shared():
                async with entry.lock:
                    yield
        finally:
            entry.users -= 1
            # Drop the lock once nobody holds or waits for it
            if entry.users == 0 and self._key_locks.get(slot) is entry:
                del self._key_locks[slot]

    # -- generic namespace API --------------------------------------------

    async def put(self, namespace: Namespace, key: str, value: Dict[str, Any]):
        """Insert or replace the row `key` in `namespace`."""
        namespace = Namespace(namespace)
        model = MODELS[namespace]
        fields = dict(value)
        fields[PRIMARY_KEYS[namespace]] = key
        async with self._write_lock(namespace, key):
            async with self._transaction(f"put {namespace.value}") as session:
                await session.merge(model(**fields))

    async def get(self, namespace: Namespace, key: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a row as a dict, or None.

        History rows older than the TTL are deleted and reported as absent.
        """
        namespace = Namespace(namespace)
        async with self._transaction(f"get {namespace.value}") as session:
            row = await session.get(MODELS[namespace], key)
            if row is None:
                return None
            if namespace is Namespace.HISTORY:
                try:
                    self._check_fresh(row)
                except CacheExpired:
                    # Only remove the exact stale version, not a concurrent rewrite
                    await session.execute(
                        delete(CachedHistory)
                        .where(CachedHistory.cache_key == key)
                        .where(CachedHistory.cached_at == row.cached_at)
                    )
                    logger.debug("Evicted expired history %s", key)
                    return None
            return _row_to_dict(row)

    async def delete(self, namespace: Namespace, key: str):
        namespace = Namespace(namespace)
        model = MODELS[namespace]
        pk = getattr(model, PRIMARY_KEYS[namespace])
        async with self._write_lock(namespace, key):
            async with self._transaction(f"delete {namespace.value}") as session:
                await session.execute(delete(model).where(pk == key))

    async def update(
        self,
        namespace: Namespace,
        key: str,
        change: Callable[[Optional[Dict[str, Any]]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Atomic read-modify-write of one row.

        `change` receives the current value (None if absent or expired) and
        returns the new value. Writers to the same key are serialized.
        """
        namespace = Namespace(namespace)
        model = MODELS[namespace]
        async with self._write_lock(namespace, key):
            async with self._transaction(f"update {namespace.value}") as session:
                row = await session.get(model, key)
                current = None
                if row is not None:
                    current = _row_to_dict(row)
                    if namespace is Namespace.HISTORY:
                        try:
                            self._check_fresh(row)
                        except CacheExpired:
                            current = None
                fields = dict(change(current))
                fields[PRIMARY_KEYS[namespace]] = key
                await session.merge(model(**fields))
                return fields

    def _check_fresh(self, row: CachedHistory):
        if self.clock() - row.cached_at > self.history_ttl:
            raise CacheExpired(row.cache_key)

    async def clear_all(self, user_id: str):
        """
        Remove the user's key pair, their history rows and every session
        secret in a single transaction.

        Raises:
            StorageTransactionError: If anything fails; nothing is removed then.
        """
        async with self._gate.exclusive():
            async with self._transaction("clear_all") as session:
                await session.execute(
                    delete(StoredKeyPair).where(StoredKeyPair.user_id == user_id)
                )
                await session.execute(
                    delete(CachedHistory).where(
                        CachedHistory.cache_key.startswith(f"{user_id}_", autoescape=True)
                    )
                )
                await session.execute(delete(SessionSecret))
        logger.info("Cleared local data for user %s", user_id)

    # -- typed helpers ------------------------------------------------------

    async def save_keypair(self, user_id: str, public_key: dict, private_key: dict):
        await self.put(Namespace.KEYPAIRS, user_id, {
            "public_key": public_key,
            "private_key": private_key,
            "created_at": self.clock(),
        })

    async def get_keypair(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.get(Namespace.KEYPAIRS, user_id)

    async def save_history(self, user_id: str, friend_id: str, messages: List[dict]):
        await self.put(Namespace.HISTORY, history_key(user_id, friend_id), {
            "user_id": user_id,
            "friend_id": friend_id,
            "messages": list(messages),
            "cached_at": self.clock(),
        })

    async def get_history(self, user_id: str, friend_id: str) -> Optional[List[dict]]:
        row = await self.get(Namespace.HISTORY, history_key(user_id, friend_id))
        return row["messages"] if row else None

    async def delete_history(self, user_id: str, friend_id: str):
        await self.delete(Namespace.HISTORY, history_key(user_id, friend_id))

    async def save_secret(self, pair_id: str, secret: dict):
        await self.put(Namespace.SECRETS, pair_id, {
            "secret": secret,
            "created_at": self.clock(),
        })

    async def get_secret(self, pair_id: str) -> Optional[dict]:
        row = await self.get(Namespace.SECRETS, pair_id)
        return row["secret"] if row else None
