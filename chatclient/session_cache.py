"""
Session key cache.

Memoizes the derived session key for each chat pair. The local store is
authoritative; the in-memory maps only save re-importing and guarantee that a
pair is derived at most once at a time within the process.
"""

import asyncio
import logging
from typing import Callable, Dict

from cryptography.hazmat.primitives.asymmetric import ec

from chatcrypto.keys import SessionKey, derive_session_key, import_public_key

from .errors import PeerKeyUnavailableError
from .remote import RemoteBackend
from .storage import SecureLocalStore

logger = logging.getLogger(__name__)

PAIR_SEPARATOR = "_"

Deriver = Callable[[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey], SessionKey]


def pair_id_for(user_a: str, user_b: str) -> str:
    """Order-independent id for a two-party relationship"""
    return PAIR_SEPARATOR.join(sorted((user_a, user_b)))


class SessionKeyCache:
    """Per-pair session keys with single-flight derivation"""

    def __init__(
        self,
        store: SecureLocalStore,
        remote: RemoteBackend,
        private_key: Callable[[], ec.EllipticCurvePrivateKey],
        derive: Deriver = derive_session_key,
    ):
        """
        Args:
            store: Local store holding the `secrets` namespace
            remote: Backend used to look up peer public keys
            private_key: Returns the local user's active private key
            derive: Key agreement function
        """
        self.store = store
        self.remote = remote
        self._private_key = private_key
        self._derive = derive
        self._keys: Dict[str, SessionKey] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    async def get(self, my_user_id: str, peer_user_id: str) -> SessionKey:
        """
        Session key for the pair, loading or deriving it as needed.

        Concurrent callers for the same pair share one derivation.

        Raises:
            PeerKeyUnavailableError: Peer has not published a public key yet
        """
        pair_id = pair_id_for(my_user_id, peer_user_id)
        key = self._keys.get(pair_id)
        if key is not None:
            return key

        task = self._inflight.get(pair_id)
        if task is None:
            task = asyncio.ensure_future(self._load_or_derive(pair_id, peer_user_id))
            self._inflight[pair_id] = task
            task.add_done_callback(lambda t: self._finish(pair_id, t))
        # One caller giving up must not cancel the derivation for the others
        return await asyncio.shield(task)

    def _finish(self, pair_id: str, task: asyncio.Task):
        if self._inflight.get(pair_id) is task:
            del self._inflight[pair_id]

    async def _load_or_derive(self, pair_id: str, peer_user_id: str) -> SessionKey:
        stored = await self.store.get_secret(pair_id)
        if stored is not None:
            key = SessionKey.from_portable(stored)
            logger.debug("Loaded session key for %s from local store", pair_id)
        else:
            record = await self.remote.get_user_record(peer_user_id)
            peer_jwk = record.portable_public_key()
            if peer_jwk is None:
                logger.info("Peer %s has no public key yet", peer_user_id)
                raise PeerKeyUnavailableError(peer_user_id)

            key = self._derive(self._private_key(), import_public_key(peer_jwk))
            await self.store.save_secret(pair_id, key.to_portable())
            logger.info("Derived session key for %s", pair_id)

        self._keys[pair_id] = key
        return key

    def forget(self, pair_id: str):
        self._keys.pop(pair_id, None)

    def clear(self):
        """Drop every in-memory key (store rows are removed by clear_all)."""
        self._keys.clear()
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
