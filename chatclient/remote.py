"""
Remote backend collaborator.

The backend is an opaque record store (PocketBase-style REST API) consulted
for public keys, key escrow and message records. Records are validated here,
at the boundary, so nothing malformed travels further in.
"""

import itertools
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from chatcrypto.keys import PortableKey, loads_key

from .errors import RemoteRecordError, RemoteUnavailableError

logger = logging.getLogger(__name__)

MessageType = Literal["text", "image", "video", "audio", "file"]


def _blank_to_none(value):
    # PocketBase returns "" for unset text fields
    return None if value == "" else value


class UserRecord(BaseModel):
    """User row as seen by this client"""
    model_config = ConfigDict(extra="ignore")

    id: str
    public_key: Optional[str] = None
    encrypted_private_key: Optional[str] = None

    @field_validator("public_key", "encrypted_private_key", mode="before")
    @classmethod
    def unset_is_none(cls, value):
        return _blank_to_none(value)

    @property
    def has_escrow(self) -> bool:
        return bool(self.encrypted_private_key)

    def portable_public_key(self) -> Optional[PortableKey]:
        """Parsed JWK, or None if the user never published one."""
        if not self.public_key:
            return None
        return loads_key(self.public_key)


class NewMessage(BaseModel):
    """Outgoing message; `text` is always an encrypted base64 payload"""
    sender: str
    receiver: str
    text: str
    type: MessageType = "text"
    file: Optional[bytes] = None
    filename: Optional[str] = None


class MessageRecord(BaseModel):
    """Stored message as returned by the backend"""
    model_config = ConfigDict(extra="ignore")

    id: str
    sender: str
    receiver: str
    text: str
    type: MessageType = "text"
    file: Optional[str] = None
    created: Optional[str] = None

    @field_validator("file", "created", mode="before")
    @classmethod
    def unset_is_none(cls, value):
        return _blank_to_none(value)

    def involves(self, user_id: str, friend_id: str) -> bool:
        return {self.sender, self.receiver} == {user_id, friend_id}


def _validate(model, data, what: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("Rejected malformed %s record: %s", what, e.error_count())
        raise RemoteRecordError(f"Malformed {what} record") from e


class RemoteBackend(ABC):
    """Operations this core needs from the backend"""

    @abstractmethod
    async def get_user_record(self, user_id: str) -> UserRecord:
        ...

    @abstractmethod
    async def update_user_record(self, user_id: str, public_key: str, encrypted_private_key: str):
        ...

    @abstractmethod
    async def create_message_record(self, message: NewMessage) -> MessageRecord:
        ...

    @abstractmethod
    async def list_messages(self, user_id: str, friend_id: str, limit: int = 50) -> List[MessageRecord]:
        """Latest `limit` messages between the two users, oldest first."""
        ...

    @abstractmethod
    async def download_file(self, record: MessageRecord) -> bytes:
        ...

    async def close(self):
        pass


class HttpRemoteBackend(RemoteBackend):
    """PocketBase REST client"""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": auth_token} if auth_token else {}
        self.http_client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Backend request %s %s failed: %s", method, url, e)
            raise RemoteUnavailableError(f"Backend unreachable: {e}") from e

        if response.status_code == 404:
            raise RemoteRecordError(f"Record not found: {url}")
        if response.status_code >= 400:
            raise RemoteUnavailableError(
                f"Backend returned {response.status_code} for {method} {url}"
            )
        return response

    @staticmethod
    def _json(response: httpx.Response):
        try:
            return response.json()
        except ValueError as e:
            raise RemoteRecordError("Backend returned invalid JSON") from e

    async def get_user_record(self, user_id: str) -> UserRecord:
        response = await self._request("GET", f"/api/collections/users/records/{user_id}")
        return _validate(UserRecord, self._json(response), "user")

    async def update_user_record(self, user_id: str, public_key: str, encrypted_private_key: str):
        await self._request(
            "PATCH",
            f"/api/collections/users/records/{user_id}",
            json={"public_key": public_key, "encrypted_private_key": encrypted_private_key},
        )

    async def create_message_record(self, message: NewMessage) -> MessageRecord:
        fields = {
            "sender": message.sender,
            "receiver": message.receiver,
            "text": message.text,
            "type": message.type,
        }
        if message.file is not None:
            upload = (message.filename or "encrypted.bin", message.file, "application/octet-stream")
            response = await self._request(
                "POST", "/api/collections/messages/records",
                data=fields, files={"file": upload},
            )
        else:
            response = await self._request("POST", "/api/collections/messages/records", json=fields)
        return _validate(MessageRecord, self._json(response), "message")

    async def list_messages(self, user_id: str, friend_id: str, limit: int = 50) -> List[MessageRecord]:
        pair_filter = (
            f'(sender="{user_id}" && receiver="{friend_id}") || '
            f'(sender="{friend_id}" && receiver="{user_id}")'
        )
        response = await self._request(
            "GET",
            "/api/collections/messages/records",
            params={"page": 1, "perPage": limit, "sort": "-created", "filter": pair_filter},
        )
        payload = self._json(response)
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise RemoteRecordError("Malformed message list")
        records = [_validate(MessageRecord, item, "message") for item in payload["items"]]
        records.reverse()
        return records

    async def download_file(self, record: MessageRecord) -> bytes:
        if not record.file:
            raise RemoteRecordError(f"Message {record.id} has no attachment")
        response = await self._request("GET", f"/api/files/messages/{record.id}/{record.file}")
        return response.content

    async def close(self):
        await self.http_client.aclose()


class InMemoryRemoteBackend(RemoteBackend):
    """Dictionary-backed backend for tests and offline use"""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.messages: List[MessageRecord] = []
        self.files: Dict[str, bytes] = {}
        self.update_calls = 0
        self._ids = itertools.count(1)

    def add_user(self, user_id: str, public_key: Optional[PortableKey] = None,
                 encrypted_private_key: Optional[str] = None) -> UserRecord:
        record = UserRecord(
            id=user_id,
            public_key=json.dumps(public_key) if public_key is not None else None,
            encrypted_private_key=encrypted_private_key,
        )
        self.users[user_id] = record
        return record

    async def get_user_record(self, user_id: str) -> UserRecord:
        try:
            return self.users[user_id]
        except KeyError:
            raise RemoteRecordError(f"Record not found: users/{user_id}") from None

    async def update_user_record(self, user_id: str, public_key: str, encrypted_private_key: str):
        record = await self.get_user_record(user_id)
        self.users[user_id] = record.model_copy(update={
            "public_key": public_key,
            "encrypted_private_key": encrypted_private_key,
        })
        self.update_calls += 1

    async def create_message_record(self, message: NewMessage) -> MessageRecord:
        record_id = f"m{next(self._ids)}"
        filename = None
        if message.file is not None:
            filename = message.filename or "encrypted.bin"
            self.files[record_id] = message.file
        record = MessageRecord(
            id=record_id,
            sender=message.sender,
            receiver=message.receiver,
            text=message.text,
            type=message.type,
            file=filename,
            created=datetime.now(timezone.utc).isoformat(),
        )
        self.messages.append(record)
        return record

    async def list_messages(self, user_id: str, friend_id: str, limit: int = 50) -> List[MessageRecord]:
        relevant = [m for m in self.messages if m.involves(user_id, friend_id)]
        return relevant[-limit:]

    async def download_file(self, record: MessageRecord) -> bytes:
        try:
            return self.files[record.id]
        except KeyError:
            raise RemoteRecordError(f"Message {record.id} has no attachment") from None
