"""Tests for the local persistent store and history cache."""

import asyncio

import pytest
from sqlalchemy import select, text

from chatclient.errors import StorageTransactionError, StorageUnavailableError
from chatclient.history import HistoryCache
from chatclient.storage import CachedHistory, Namespace, SecureLocalStore


async def _history_row_exists(store, cache_key):
    async with store.async_session() as session:
        result = await session.execute(
            select(CachedHistory).where(CachedHistory.cache_key == cache_key)
        )
        return result.scalar_one_or_none() is not None


@pytest.mark.asyncio
async def test_init_is_idempotent(store):
    await store.init()
    await store.save_secret("a_b", {"kty": "oct", "k": "x"})
    await store.init()
    assert await store.get_secret("a_b") == {"kty": "oct", "k": "x"}


@pytest.mark.asyncio
async def test_calls_before_init_fail(tmp_path):
    store = SecureLocalStore(f"sqlite+aiosqlite:///{tmp_path / 'never.db'}")
    with pytest.raises(StorageUnavailableError):
        await store.get(Namespace.SECRETS, "a_b")


@pytest.mark.asyncio
async def test_init_fails_when_storage_denied(tmp_path):
    store = SecureLocalStore(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
    with pytest.raises(StorageUnavailableError):
        await store.init()


@pytest.mark.asyncio
async def test_put_get_delete(store):
    await store.save_keypair("u1", {"kty": "EC", "x": "1"}, {"kty": "EC", "d": "2"})

    row = await store.get_keypair("u1")
    assert row["user_id"] == "u1"
    assert row["private_key"] == {"kty": "EC", "d": "2"}
    assert row["created_at"] == store.clock()

    await store.save_keypair("u1", {"kty": "EC", "x": "3"}, {"kty": "EC", "d": "4"})
    assert (await store.get_keypair("u1"))["public_key"] == {"kty": "EC", "x": "3"}

    await store.delete(Namespace.KEYPAIRS, "u1")
    assert await store.get_keypair("u1") is None


@pytest.mark.asyncio
async def test_namespaces_are_independent(store):
    await store.save_secret("u1", {"k": "secret"})
    assert await store.get_keypair("u1") is None
    assert await store.get("secrets", "u1") is not None


@pytest.mark.asyncio
async def test_history_expires_after_seven_days(store, clock):
    """Scenario C"""
    cache = HistoryCache(store)
    await cache.set("u1", "f1", [{"id": 1, "text": "hi"}])

    clock.advance(days=6, hours=23)
    assert await cache.get("u1", "f1") == [{"id": 1, "text": "hi"}]

    clock.advance(days=1, hours=2)
    assert await cache.get("u1", "f1") is None
    assert not await _history_row_exists(store, "u1_f1")


@pytest.mark.asyncio
async def test_secrets_do_not_expire(store, clock):
    await store.save_secret("a_b", {"k": "v"})
    clock.advance(days=365)
    assert await store.get_secret("a_b") == {"k": "v"}


@pytest.mark.asyncio
async def test_clear_all_scope(store):
    """Scenario D"""
    await store.save_keypair("u1", {"x": 1}, {"d": 1})
    await store.save_keypair("u2", {"x": 2}, {"d": 2})
    await store.save_history("u1", "f1", [{"id": 1}])
    await store.save_history("u1", "f2", [{"id": 2}])
    await store.save_history("u2", "f1", [{"id": 3}])
    await store.save_history("u10", "f1", [{"id": 4}])
    await store.save_secret("f1_u1", {"k": "a"})
    await store.save_secret("f1_u2", {"k": "b"})

    await store.clear_all("u1")

    assert await store.get_keypair("u1") is None
    assert await store.get_history("u1", "f1") is None
    assert await store.get_history("u1", "f2") is None
    assert await store.get_keypair("u2") is not None
    assert await store.get_history("u2", "f1") == [{"id": 3}]
    assert await store.get_history("u10", "f1") == [{"id": 4}]
    assert await store.get_secret("f1_u1") is None
    assert await store.get_secret("f1_u2") is None


@pytest.mark.asyncio
async def test_clear_all_prefix_is_literal(store):
    """Underscores in user ids are not treated as LIKE wildcards"""
    await store.save_history("ab", "x", [{"id": 2}])
    await store.save_history("a", "_x", [{"id": 3}])

    await store.clear_all("a")

    assert await store.get_history("ab", "x") == [{"id": 2}]
    assert await store.get_history("a", "_x") is None


@pytest.mark.asyncio
async def test_clear_all_is_atomic(store):
    await store.save_keypair("u1", {"x": 1}, {"d": 1})
    await store.save_history("u1", "f1", [{"id": 1}])
    async with store.engine.begin() as conn:
        await conn.execute(text("DROP TABLE secrets"))

    with pytest.raises(StorageTransactionError):
        await store.clear_all("u1")

    assert await store.get_keypair("u1") is not None
    assert await store.get_history("u1", "f1") == [{"id": 1}]


@pytest.mark.asyncio
async def test_append_keeps_order_and_dedupes(store):
    cache = HistoryCache(store)
    await cache.append("u1", "f1", {"id": "m1"})
    await cache.append("u1", "f1", {"id": "m2"})
    await cache.append("u1", "f1", {"id": "m1"})

    assert await cache.get("u1", "f1") == [{"id": "m1"}, {"id": "m2"}]


@pytest.mark.asyncio
async def test_concurrent_appends_are_not_lost(store):
    cache = HistoryCache(store)
    await asyncio.gather(*(cache.append("u1", "f1", {"id": i}) for i in range(20)))

    assert sorted(m["id"] for m in await cache.get("u1", "f1")) == list(range(20))


@pytest.mark.asyncio
async def test_append_to_expired_history_starts_fresh(store, clock):
    cache = HistoryCache(store)
    await cache.set("u1", "f1", [{"id": "old"}])
    clock.advance(days=8)

    assert await cache.append("u1", "f1", {"id": "new"}) == [{"id": "new"}]


@pytest.mark.asyncio
async def test_load_is_stale_while_revalidate(store):
    cache = HistoryCache(store)
    await cache.set("u1", "f1", [{"id": "cached"}])

    async def fetch():
        return [{"id": "cached"}, {"id": "fresh"}]

    seen = [batch async for batch in cache.load("u1", "f1", fetch)]

    assert seen == [[{"id": "cached"}], [{"id": "cached"}, {"id": "fresh"}]]
    assert await cache.get("u1", "f1") == seen[-1]


@pytest.mark.asyncio
async def test_load_without_cache_yields_only_fresh(store):
    cache = HistoryCache(store)

    async def fetch():
        return [{"id": 1}]

    assert [batch async for batch in cache.load("u1", "f1", fetch)] == [[{"id": 1}]]


@pytest.mark.asyncio
async def test_cancelled_refresh_writes_nothing(store):
    cache = HistoryCache(store)
    started = asyncio.Event()

    async def slow_fetch():
        started.set()
        await asyncio.Event().wait()

    task = asyncio.ensure_future(cache.refresh("u1", "f1", slow_fetch))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await cache.get("u1", "f1") is None
    assert not await _history_row_exists(store, "u1_f1")


@pytest.mark.asyncio
async def test_cancel_requested_during_fetch_skips_write(store):
    """A fetch that completes after its task was cancelled is not cached"""
    cache = HistoryCache(store)

    async def fetch_then_cancelled():
        asyncio.current_task().cancel()
        return [{"id": "late"}]

    task = asyncio.ensure_future(cache.refresh("u1", "f1", fetch_then_cancelled))
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not await _history_row_exists(store, "u1_f1")


@pytest.mark.asyncio
async def test_key_locks_are_released(store):
    cache = HistoryCache(store)
    await asyncio.gather(*(cache.append("u1", f"f{i % 3}", {"id": i}) for i in range(12)))
    await store.save_secret("a_b", {"k": "v"})
    await store.delete(Namespace.SECRETS, "a_b")

    assert store._key_locks == {}
    assert len(await cache.get("u1", "f0")) == 4
