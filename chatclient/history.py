"""
Message history cache.

A per-(user, friend) cache of recently seen messages, used to show a chat
immediately while the authoritative list is fetched from the backend.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from .storage import Namespace, SecureLocalStore, history_key

logger = logging.getLogger(__name__)


class HistoryCache:
    """Typed access to the `history` namespace of the local store"""

    def __init__(self, store: SecureLocalStore):
        self.store = store

    async def get(self, user_id: str, friend_id: str) -> Optional[List[dict]]:
        """Cached messages, or None if absent or expired"""
        return await self.store.get_history(user_id, friend_id)

    async def set(self, user_id: str, friend_id: str, messages: List[dict]):
        await self.store.save_history(user_id, friend_id, messages)

    async def append(self, user_id: str, friend_id: str, message: dict) -> List[dict]:
        """
        Append one message in observed order.

        A message whose `id` is already cached is ignored.

        Returns:
            The cached list after the append
        """
        def add(current: Optional[dict]) -> dict:
            messages = list(current["messages"]) if current else []
            message_id = message.get("id")
            if message_id is None or all(m.get("id") != message_id for m in messages):
                messages.append(message)
            return {
                "user_id": user_id,
                "friend_id": friend_id,
                "messages": messages,
                "cached_at": self.store.clock(),
            }

        row = await self.store.update(Namespace.HISTORY, history_key(user_id, friend_id), add)
        return row["messages"]

    async def clear(self, user_id: str, friend_id: str):
        await self.store.delete_history(user_id, friend_id)

    async def refresh(
        self,
        user_id: str,
        friend_id: str,
        fetch: Callable[[], Awaitable[List[dict]]],
    ) -> List[dict]:
        """
        Fetch the authoritative list and cache it.

        If the calling task is cancelled while `fetch` is pending, or before
        the write starts, the CancelledError propagates and nothing is
        written. A cancel that arrives once the commit is running no longer
        stops it.
        """
        fresh = await fetch()
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise asyncio.CancelledError()
        await self.set(user_id, friend_id, fresh)
        return fresh

    async def load(
        self,
        user_id: str,
        friend_id: str,
        fetch: Callable[[], Awaitable[List[dict]]],
    ) -> AsyncIterator[List[dict]]:
        """
        Stale-while-revalidate: yield the cached list first (if any), then the
        fresh list once `fetch` resolves.
        """
        cached = await self.get(user_id, friend_id)
        if cached is not None:
            logger.debug("History cache hit for %s", history_key(user_id, friend_id))
            yield cached
        yield await self.refresh(user_id, friend_id, fetch)
