"""
Cryptographic Primitives for End-to-End Encryption

Low-level building blocks shared by the key agreement, passphrase vault and
message cipher modules, plus the error taxonomy of the crypto core.
"""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KEY_SIZE = 32
NONCE_SIZE = 12
SALT_SIZE = 16
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyGenerationError(CryptoError):
    """The platform could not produce a keypair"""
    pass


class MalformedKeyError(CryptoError):
    """A portable key does not match the expected schema or curve"""
    pass


class WrongPassphraseOrTamperedError(CryptoError):
    """Escrowed key could not be unwrapped.

    A wrong passphrase and a corrupted blob are deliberately reported the same way.
    """
    pass


class DecryptionFailedError(CryptoError):
    """Authenticated decryption rejected the payload"""
    pass


class MalformedPayloadError(DecryptionFailedError):
    """Payload could not even be split into nonce and ciphertext"""
    pass


def random_bytes(length: int) -> bytes:
    """Return `length` bytes from the OS CSPRNG."""
    return os.urandom(length)


def pbkdf2_sha256(passphrase: bytes, salt: bytes, iterations: int, length: int = KEY_SIZE) -> bytes:
    """
    Derive a key from a passphrase using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: Encoded passphrase
        salt: Random per-call salt
        iterations: Work factor
        length: Output length in bytes

    Returns:
        Derived key bytes
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase)


def aead_encrypt(key: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Encrypt using AES-256-GCM under a fresh random nonce.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = random_bytes(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def aead_decrypt(key: bytes, data: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt nonce + ciphertext + tag produced by `aead_encrypt`.

    Raises:
        DecryptionFailedError: If the data is too short or authentication fails
    """
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise MalformedPayloadError("Cannot decrypt payload")

    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except (InvalidTag, ValueError):
        raise DecryptionFailedError("Cannot decrypt payload") from None
