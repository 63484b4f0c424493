"""
Client side of the end-to-end encrypted chat core: local storage, key
lifecycle, session key cache and message composition.
"""

from .config import Settings
from .core import ChatCore
from .errors import (
    AttachmentTooLargeError,
    CacheExpired,
    InvalidKeyStateError,
    KeyNotReadyError,
    PeerKeyUnavailableError,
    RemoteRecordError,
    RemoteUnavailableError,
    StorageTransactionError,
    StorageUnavailableError,
)
from .history import HistoryCache
from .keyring import Keyring, KeyState
from .messages import CANNOT_DECRYPT, ChatSession, FileMetadata
from .remote import (
    HttpRemoteBackend,
    InMemoryRemoteBackend,
    MessageRecord,
    NewMessage,
    RemoteBackend,
    UserRecord,
)
from .session_cache import SessionKeyCache, pair_id_for
from .storage import Namespace, SecureLocalStore

__all__ = [
    'Settings',
    'ChatCore',
    'AttachmentTooLargeError',
    'CacheExpired',
    'InvalidKeyStateError',
    'KeyNotReadyError',
    'PeerKeyUnavailableError',
    'RemoteRecordError',
    'RemoteUnavailableError',
    'StorageTransactionError',
    'StorageUnavailableError',
    'HistoryCache',
    'Keyring',
    'KeyState',
    'CANNOT_DECRYPT',
    'ChatSession',
    'FileMetadata',
    'HttpRemoteBackend',
    'InMemoryRemoteBackend',
    'MessageRecord',
    'NewMessage',
    'RemoteBackend',
    'UserRecord',
    'SessionKeyCache',
    'pair_id_for',
    'Namespace',
    'SecureLocalStore',
]
