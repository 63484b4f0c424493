"""
Message Cipher

AES-256-GCM encryption of message text, file metadata and file bodies under a
pair's session key. Each call uses a fresh random nonce.

Text payloads are base64(nonce || ciphertext + tag). File bodies use the same
layout as raw bytes to avoid base64 overhead on large uploads.
"""

from typing import Union

from .codec import b64decode, b64encode, bytes_to_text, text_to_bytes
from .keys import SessionKey
from .primitives import DecryptionFailedError, aead_decrypt, aead_encrypt


def encrypt(plaintext: Union[str, bytes], key: SessionKey) -> str:
    """
    Encrypt text or bytes into a base64 payload.

    Args:
        plaintext: Message text or raw bytes
        key: Session key for the pair

    Returns:
        base64(nonce || ciphertext + tag)
    """
    if isinstance(plaintext, str):
        plaintext = text_to_bytes(plaintext)
    return b64encode(aead_encrypt(key.key, plaintext))


def decrypt(payload: str, key: SessionKey) -> bytes:
    """
    Decrypt a base64 payload produced by `encrypt`.

    Raises:
        DecryptionFailedError: On bad encoding, wrong key or tampering
    """
    return aead_decrypt(key.key, b64decode(payload))


def decrypt_text(payload: str, key: SessionKey) -> str:
    """Decrypt a base64 payload and decode it as UTF-8."""
    data = decrypt(payload, key)
    try:
        return bytes_to_text(data)
    except UnicodeDecodeError:
        raise DecryptionFailedError("Cannot decrypt payload") from None


def encrypt_binary(data: bytes, key: SessionKey) -> bytes:
    """Encrypt a file body. Returns raw nonce || ciphertext + tag."""
    return aead_encrypt(key.key, data)


def decrypt_binary(data: bytes, key: SessionKey) -> bytes:
    """Decrypt a raw payload produced by `encrypt_binary`."""
    return aead_decrypt(key.key, data)
