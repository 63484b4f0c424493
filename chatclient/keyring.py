"""
Local key lifecycle.

    UNINITIALIZED -> RESTORE_PENDING  (escrow exists remotely, no local key)
                  -> BACKUP_PENDING   (no escrow, no local key)
                  -> ACTIVE           (local key present)

RESTORE_PENDING -> ACTIVE needs the right passphrase. BACKUP_PENDING -> ACTIVE
generates a fresh key pair and escrows it. Logout returns to UNINITIALIZED.
"""

import asyncio
import enum
import logging
from typing import Optional

from chatcrypto.keys import KeyPair, dumps_key, generate_keypair
from chatcrypto.primitives import MalformedKeyError, WrongPassphraseOrTamperedError
from chatcrypto.vault import DEFAULT_ITERATIONS, unwrap_private_key, wrap_private_key

from .errors import (
    InvalidKeyStateError,
    KeyNotReadyError,
    RemoteRecordError,
    RemoteUnavailableError,
)
from .remote import RemoteBackend
from .storage import SecureLocalStore

logger = logging.getLogger(__name__)


class KeyState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    RESTORE_PENDING = "restore_pending"
    BACKUP_PENDING = "backup_pending"
    ACTIVE = "active"


class Keyring:
    """Owns the local user's key pair on this device"""

    def __init__(self, store: SecureLocalStore, remote: RemoteBackend,
                 iterations: int = DEFAULT_ITERATIONS):
        self.store = store
        self.remote = remote
        self.iterations = iterations
        self.state = KeyState.UNINITIALIZED
        self.user_id: Optional[str] = None
        self._keypair: Optional[KeyPair] = None

    @property
    def keypair(self) -> KeyPair:
        if self.state is not KeyState.ACTIVE or self._keypair is None:
            raise KeyNotReadyError(f"Key pair not active (state: {self.state.value})")
        return self._keypair

    def private_key(self):
        return self.keypair.private_key

    def _require(self, *states: KeyState):
        if self.state not in states:
            raise InvalidKeyStateError(
                f"Not allowed in state {self.state.value}"
            )

    async def resolve(self, user_id: str) -> KeyState:
        """
        Work out where this device stands for `user_id`.

        Returns:
            ACTIVE, RESTORE_PENDING or BACKUP_PENDING
        """
        self._require(KeyState.UNINITIALIZED)
        self.user_id = user_id

        stored = await self.store.get_keypair(user_id)
        if stored is not None:
            self._keypair = KeyPair.from_portable(stored["public_key"], stored["private_key"])
            self.state = KeyState.ACTIVE
            logger.info("Loaded local key pair for %s", user_id)
            return self.state

        try:
            record = await self.remote.get_user_record(user_id)
            has_escrow = record.has_escrow
        except (RemoteUnavailableError, RemoteRecordError) as e:
            logger.warning("Could not check key backup for %s: %s", user_id, e)
            has_escrow = False

        self.state = KeyState.RESTORE_PENDING if has_escrow else KeyState.BACKUP_PENDING
        logger.info("Key state for %s: %s", user_id, self.state.value)
        return self.state

    async def setup_backup(self, passphrase: str) -> KeyPair:
        """
        Generate a key pair, escrow it remotely, then store it locally.

        The local row is written only once the escrow is published, so a
        failed upload leaves the device in BACKUP_PENDING.
        """
        self._require(KeyState.BACKUP_PENDING)

        keypair = generate_keypair()
        public_jwk = keypair.export_public()
        private_jwk = keypair.export_private()
        # PBKDF2 is deliberately slow; keep it off the event loop
        wrapped = await asyncio.to_thread(
            wrap_private_key, private_jwk, passphrase, self.iterations
        )

        await self.remote.update_user_record(self.user_id, dumps_key(public_jwk), wrapped)
        await self.store.save_keypair(self.user_id, public_jwk, private_jwk)

        self._keypair = keypair
        self.state = KeyState.ACTIVE
        logger.info("Created and escrowed key pair for %s", self.user_id)
        return keypair

    async def restore(self, passphrase: str) -> KeyPair:
        """
        Recover the escrowed key pair.

        Raises:
            WrongPassphraseOrTamperedError: Passphrase wrong or escrow corrupted;
                the state stays RESTORE_PENDING.
        """
        self._require(KeyState.RESTORE_PENDING)

        record = await self.remote.get_user_record(self.user_id)
        public_jwk = record.portable_public_key()
        if not record.has_escrow or public_jwk is None:
            raise RemoteRecordError(f"No complete key backup for {self.user_id}")

        private_jwk = await asyncio.to_thread(
            unwrap_private_key, record.encrypted_private_key, passphrase, self.iterations
        )
        try:
            keypair = KeyPair.from_portable(public_jwk, private_jwk)
        except MalformedKeyError:
            raise WrongPassphraseOrTamperedError("Cannot unlock key backup") from None

        await self.store.save_keypair(self.user_id, public_jwk, private_jwk)
        self._keypair = keypair
        self.state = KeyState.ACTIVE
        logger.info("Restored key pair for %s", self.user_id)
        return keypair

    def skip_restore(self):
        """Give up on the escrowed key and start over with a new one."""
        self._require(KeyState.RESTORE_PENDING)
        self.state = KeyState.BACKUP_PENDING

    async def logout(self):
        """Wipe local key material and cached data for the user."""
        if self.user_id is not None:
            await self.store.clear_all(self.user_id)
        self._keypair = None
        self.user_id = None
        self.state = KeyState.UNINITIALIZED
