"""
Cryptographic core for end-to-end encrypted chat.

- ECDH (P-256) key agreement; the shared secret is the AES-256-GCM session key
- PBKDF2-SHA256 + AES-256-GCM passphrase wrapping for key escrow
- AES-256-GCM message and attachment encryption
"""

from .primitives import (
    CryptoError,
    KeyGenerationError,
    MalformedKeyError,
    WrongPassphraseOrTamperedError,
    DecryptionFailedError,
    MalformedPayloadError,
)
from .keys import (
    KeyPair,
    SessionKey,
    generate_keypair,
    export_public_key,
    export_private_key,
    import_public_key,
    import_private_key,
    derive_session_key,
    dumps_key,
    loads_key,
)
from .vault import wrap_private_key, unwrap_private_key
from . import cipher

__all__ = [
    'CryptoError',
    'KeyGenerationError',
    'MalformedKeyError',
    'WrongPassphraseOrTamperedError',
    'DecryptionFailedError',
    'MalformedPayloadError',
    'KeyPair',
    'SessionKey',
    'generate_keypair',
    'export_public_key',
    'export_private_key',
    'import_public_key',
    'import_private_key',
    'derive_session_key',
    'dumps_key',
    'loads_key',
    'wrap_private_key',
    'unwrap_private_key',
    'cipher',
]
