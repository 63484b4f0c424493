"""Errors raised by the stateful client layer."""


class ChatClientError(Exception):
    """Base exception for client-side failures"""
    pass


class PeerKeyUnavailableError(ChatClientError):
    """Peer has not published a public key yet. Retry on next chat open."""

    def __init__(self, peer_id: str):
        super().__init__(f"User {peer_id} has not published a public key")
        self.peer_id = peer_id


class StorageUnavailableError(ChatClientError):
    """Local persistent storage could not be opened"""
    pass


class StorageTransactionError(ChatClientError):
    """A local storage transaction failed and was rolled back"""
    pass


class RemoteRecordError(ChatClientError):
    """Remote backend returned a record that is missing or malformed"""
    pass


class RemoteUnavailableError(ChatClientError):
    """Remote backend could not be reached"""
    pass


class KeyNotReadyError(ChatClientError):
    """Operation needs an active local key pair"""
    pass


class InvalidKeyStateError(ChatClientError):
    """Key lifecycle transition is not allowed from the current state"""
    pass


class AttachmentTooLargeError(ValueError):
    """Attachment exceeds the configured upload limit"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Attachment is {size} bytes, maximum is {limit}")
        self.size = size
        self.limit = limit


class CacheExpired(Exception):
    """Cache-miss signal for a history entry older than its TTL. Not a failure."""
    pass
