"""
Message composition and rendering.

Turns plaintext and files into encrypted message records and back. A message
that fails to decrypt is rendered as a fixed placeholder, never as empty text.
"""

import json
import logging
from typing import AsyncIterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatcrypto import cipher
from chatcrypto.keys import SessionKey
from chatcrypto.primitives import DecryptionFailedError

from .errors import AttachmentTooLargeError
from .history import HistoryCache
from .remote import MessageRecord, MessageType, NewMessage, RemoteBackend

logger = logging.getLogger(__name__)

CANNOT_DECRYPT = "🔒 Cannot decrypt message"
DEFAULT_MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024


class FileMetadata(BaseModel):
    """Sent encrypted in the `text` field of file messages"""
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    mime_type: str = Field(alias="mimeType")
    size: int

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True))


def encrypt_text(sender: str, receiver: str, text: str, key: SessionKey) -> NewMessage:
    return NewMessage(
        sender=sender,
        receiver=receiver,
        text=cipher.encrypt(text, key),
        type="text",
    )


def encrypt_attachment(
    sender: str,
    receiver: str,
    data: bytes,
    filename: str,
    mime_type: str,
    key: SessionKey,
    message_type: MessageType = "file",
    max_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES,
) -> NewMessage:
    """
    Encrypt a file and its metadata into an outgoing message.

    Raises:
        AttachmentTooLargeError: If `data` exceeds `max_bytes`
    """
    if len(data) > max_bytes:
        raise AttachmentTooLargeError(len(data), max_bytes)

    metadata = FileMetadata(filename=filename, mime_type=mime_type, size=len(data))
    return NewMessage(
        sender=sender,
        receiver=receiver,
        text=cipher.encrypt(metadata.to_json(), key),
        type=message_type,
        file=cipher.encrypt_binary(data, key),
        filename=f"encrypted_{filename}",
    )


def render_text(record: MessageRecord, key: Optional[SessionKey]) -> str:
    """
    Text to display for a message.

    Text messages show their plaintext, file messages their filename. Anything
    that cannot be decrypted shows CANNOT_DECRYPT.
    """
    if key is None:
        return CANNOT_DECRYPT
    try:
        if record.type == "text":
            return cipher.decrypt_text(record.text, key)
        return decrypt_metadata(record, key).filename
    except DecryptionFailedError:
        logger.debug("Message %s could not be decrypted", record.id)
        return CANNOT_DECRYPT


def decrypt_metadata(record: MessageRecord, key: SessionKey) -> FileMetadata:
    plaintext = cipher.decrypt_text(record.text, key)
    try:
        return FileMetadata.model_validate_json(plaintext)
    except ValidationError:
        raise DecryptionFailedError("Cannot decrypt payload") from None


def decrypt_attachment(record: MessageRecord, body: bytes, key: SessionKey) -> Tuple[FileMetadata, bytes]:
    """Decrypt a downloaded attachment body together with its metadata."""
    metadata = decrypt_metadata(record, key)
    return metadata, cipher.decrypt_binary(body, key)


class ChatSession:
    """An open chat between the local user and one friend"""

    def __init__(
        self,
        user_id: str,
        friend_id: str,
        key: SessionKey,
        remote: RemoteBackend,
        history: HistoryCache,
        page_size: int = 50,
        max_attachment_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES,
    ):
        self.user_id = user_id
        self.friend_id = friend_id
        self.key = key
        self.remote = remote
        self.history = history
        self.page_size = page_size
        self.max_attachment_bytes = max_attachment_bytes

    async def send_text(self, text: str) -> MessageRecord:
        message = encrypt_text(self.user_id, self.friend_id, text.strip(), self.key)
        return await self.remote.create_message_record(message)

    async def send_file(self, data: bytes, filename: str, mime_type: str,
                        message_type: MessageType = "file") -> MessageRecord:
        message = encrypt_attachment(
            self.user_id, self.friend_id, data, filename, mime_type, self.key,
            message_type=message_type, max_bytes=self.max_attachment_bytes,
        )
        return await self.remote.create_message_record(message)

    async def fetch_file(self, record: MessageRecord) -> Tuple[FileMetadata, bytes]:
        body = await self.remote.download_file(record)
        return decrypt_attachment(record, body, self.key)

    async def _fetch(self) -> List[dict]:
        records = await self.remote.list_messages(self.user_id, self.friend_id, self.page_size)
        return [r.model_dump() for r in records]

    async def load_history(self) -> AsyncIterator[List[MessageRecord]]:
        """Cached messages first (if any), then the fresh list from the backend."""
        async for messages in self.history.load(self.user_id, self.friend_id, self._fetch):
            yield [MessageRecord.model_validate(m) for m in messages]

    async def refresh_history(self) -> List[MessageRecord]:
        messages = await self.history.refresh(self.user_id, self.friend_id, self._fetch)
        return [MessageRecord.model_validate(m) for m in messages]

    async def on_remote_message(self, record: MessageRecord) -> bool:
        """
        Record a message pushed by the backend.

        Returns:
            True if it belongs to this chat and was cached
        """
        if not record.involves(self.user_id, self.friend_id):
            return False
        await self.history.append(self.user_id, self.friend_id, record.model_dump())
        return True

    def render(self, record: MessageRecord) -> str:
        return render_text(record, self.key)
