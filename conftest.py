"""Shared pytest fixtures."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from chatclient.remote import InMemoryRemoteBackend
from chatclient.storage import SecureLocalStore


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return InMemoryRemoteBackend()


async def _open_store(path, clock):
    store = SecureLocalStore(f"sqlite+aiosqlite:///{path}", clock=clock)
    await store.init()
    return store


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    store = await _open_store(tmp_path / "local.db", clock)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def other_store(tmp_path, clock):
    """A second device's store."""
    store = await _open_store(tmp_path / "other.db", clock)
    yield store
    await store.close()
