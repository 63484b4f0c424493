"""
Passphrase Vault

Wraps a private key under a user passphrase so it can be escrowed on the
remote backend and recovered on a new device.

Wire format (base64): salt (16 bytes) || nonce (12 bytes) || ciphertext + tag
"""

import json
import logging

from .codec import b64decode, b64encode, text_to_bytes
from .keys import PortableKey
from .primitives import (
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    DecryptionFailedError,
    WrongPassphraseOrTamperedError,
    aead_decrypt,
    aead_encrypt,
    pbkdf2_sha256,
    random_bytes,
)

logger = logging.getLogger(__name__)

MIN_ITERATIONS = 100_000
DEFAULT_ITERATIONS = MIN_ITERATIONS


def _check_iterations(iterations: int):
    if iterations < MIN_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {MIN_ITERATIONS}")


def wrap_private_key(private_jwk: PortableKey, passphrase: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """
    Encrypt an exported private key under a passphrase.

    Every call draws a new salt and nonce, so wrapping the same key twice
    gives different output.

    Args:
        private_jwk: Exported private key
        passphrase: User-chosen secret
        iterations: PBKDF2 work factor

    Returns:
        base64(salt || nonce || ciphertext)
    """
    _check_iterations(iterations)
    salt = random_bytes(SALT_SIZE)
    wrapping_key = pbkdf2_sha256(text_to_bytes(passphrase), salt, iterations)
    sealed = aead_encrypt(wrapping_key, text_to_bytes(json.dumps(private_jwk)))
    return b64encode(salt + sealed)


def unwrap_private_key(wrapped: str, passphrase: str, iterations: int = DEFAULT_ITERATIONS) -> PortableKey:
    """
    Recover an exported private key from its escrowed form.

    Raises:
        WrongPassphraseOrTamperedError: If the passphrase is wrong or the blob
            was modified; the two cases are indistinguishable.
    """
    _check_iterations(iterations)
    try:
        blob = b64decode(wrapped)
    except DecryptionFailedError:
        raise WrongPassphraseOrTamperedError("Cannot unlock key backup") from None

    if len(blob) < SALT_SIZE + NONCE_SIZE + TAG_SIZE:
        raise WrongPassphraseOrTamperedError("Cannot unlock key backup")

    salt, sealed = blob[:SALT_SIZE], blob[SALT_SIZE:]
    wrapping_key = pbkdf2_sha256(text_to_bytes(passphrase), salt, iterations)
    try:
        plaintext = aead_decrypt(wrapping_key, sealed)
    except DecryptionFailedError:
        logger.info("Key backup unwrap rejected")
        raise WrongPassphraseOrTamperedError("Cannot unlock key backup") from None

    try:
        jwk = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise WrongPassphraseOrTamperedError("Cannot unlock key backup") from None
    if not isinstance(jwk, dict):
        raise WrongPassphraseOrTamperedError("Cannot unlock key backup")
    return jwk
