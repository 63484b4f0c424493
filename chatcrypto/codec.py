"""Binary/text encoding helpers used throughout the crypto core."""

import base64
import binascii

from .primitives import MalformedPayloadError


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Strict standard-alphabet decode; rejects non-alphabet characters."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise MalformedPayloadError("Invalid base64 payload") from None


def b64url_encode(data: bytes) -> str:
    """Unpadded base64url, as used by JSON Web Keys."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def text_to_bytes(text: str) -> bytes:
    return text.encode("utf-8")


def bytes_to_text(data: bytes) -> str:
    return data.decode("utf-8")
