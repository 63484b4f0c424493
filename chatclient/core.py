"""
Client core.

Wires settings, local store, remote backend, key lifecycle and session keys
together, in the order the application uses them:

    init -> resolve keys -> (restore | setup backup) -> open chats
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from .config import Settings
from .history import HistoryCache
from .keyring import Keyring, KeyState
from .messages import ChatSession
from .remote import HttpRemoteBackend, RemoteBackend
from .session_cache import SessionKeyCache
from .storage import SecureLocalStore

logger = logging.getLogger(__name__)


class ChatCore:
    """End-to-end encryption core for one signed-in user on this device"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[SecureLocalStore] = None,
        remote: Optional[RemoteBackend] = None,
        auth_token: Optional[str] = None,
    ):
        self.settings = settings or Settings()
        self.store = store or SecureLocalStore(
            self.settings.database_url,
            history_ttl=timedelta(days=self.settings.history_ttl_days),
        )
        self.remote = remote or HttpRemoteBackend(
            self.settings.backend_url,
            auth_token=auth_token,
            timeout=self.settings.request_timeout,
        )
        self.keyring = Keyring(self.store, self.remote, self.settings.pbkdf2_iterations)
        self.session_keys = SessionKeyCache(self.store, self.remote, self.keyring.private_key)
        self.history = HistoryCache(self.store)
        self.active_chat: Optional[ChatSession] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.keyring.user_id

    async def start(self, user_id: str) -> KeyState:
        """Open local storage and resolve the user's key state."""
        await self.store.init()
        return await self.keyring.resolve(user_id)

    async def open_chat(self, friend_id: str) -> ChatSession:
        """
        Switch to a chat, cancelling any history refresh still running for the
        previous one.

        Raises:
            KeyNotReadyError: Keys are not ACTIVE yet
            PeerKeyUnavailableError: Friend has not set up keys; retry later
        """
        self._cancel_refresh()
        self.active_chat = None
        self.keyring.keypair  # raises unless ACTIVE
        key = await self.session_keys.get(self.user_id, friend_id)
        self.active_chat = ChatSession(
            self.user_id,
            friend_id,
            key,
            self.remote,
            self.history,
            page_size=self.settings.history_page_size,
            max_attachment_bytes=self.settings.max_attachment_bytes,
        )
        return self.active_chat

    def refresh_in_background(self) -> asyncio.Task:
        """Start refreshing the active chat's history; replaced on chat switch."""
        if self.active_chat is None:
            raise RuntimeError("No chat is open")
        self._cancel_refresh()
        self._refresh_task = asyncio.ensure_future(self.active_chat.refresh_history())
        return self._refresh_task

    def _cancel_refresh(self):
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            logger.debug("Cancelled pending history refresh")
        self._refresh_task = None

    async def logout(self):
        self._cancel_refresh()
        self.active_chat = None
        self.session_keys.clear()
        await self.keyring.logout()

    async def close(self):
        self._cancel_refresh()
        await self.remote.close()
        await self.store.close()
