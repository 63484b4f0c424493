"""
Key Agreement

ECDH over NIST P-256 for deriving per-pair session keys. Keys travel between
devices and the remote backend as JSON Web Keys (JWK), the same portable
representation browsers use, so a key exported here can be imported anywhere
that speaks JWK.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.hazmat.primitives.asymmetric import ec

from .codec import b64url_decode, b64url_encode
from .primitives import (
    KEY_SIZE,
    KeyGenerationError,
    MalformedKeyError,
)

logger = logging.getLogger(__name__)

CURVE_NAME = "P-256"
COORDINATE_SIZE = 32

PortableKey = Dict[str, Any]


@dataclass(frozen=True)
class SessionKey:
    """256-bit AES-GCM key shared by the two members of a chat pair."""
    key: bytes

    def __post_init__(self):
        if len(self.key) != KEY_SIZE:
            raise MalformedKeyError("Session key must be 32 bytes")

    def __repr__(self) -> str:
        return "SessionKey(<redacted>)"

    def to_portable(self) -> PortableKey:
        return {"kty": "oct", "k": b64url_encode(self.key), "alg": "A256GCM", "ext": True}

    @classmethod
    def from_portable(cls, jwk: PortableKey) -> "SessionKey":
        if not isinstance(jwk, dict) or jwk.get("kty") != "oct" or "k" not in jwk:
            raise MalformedKeyError("Not a symmetric JWK")
        try:
            raw = b64url_decode(jwk["k"])
        except (ValueError, TypeError):
            raise MalformedKeyError("Invalid key encoding") from None
        return cls(raw)


@dataclass
class KeyPair:
    """P-256 key pair used for session-key agreement."""
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey

    @classmethod
    def generate(cls) -> "KeyPair":
        return generate_keypair()

    @classmethod
    def from_portable(cls, public_jwk: PortableKey, private_jwk: PortableKey) -> "KeyPair":
        """Rebuild a key pair, checking that both halves belong together."""
        private_key = import_private_key(private_jwk)
        public_key = import_public_key(public_jwk)
        if export_public_key(private_key.public_key()) != export_public_key(public_key):
            raise MalformedKeyError("Public key does not match private key")
        return cls(private_key=private_key, public_key=public_key)

    def export_public(self) -> PortableKey:
        return export_public_key(self.public_key)

    def export_private(self) -> PortableKey:
        return export_private_key(self.private_key)


def generate_keypair() -> KeyPair:
    """
    Generate a fresh P-256 key pair.

    Raises:
        KeyGenerationError: If the platform fails to produce key material
    """
    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
    except Exception as e:
        raise KeyGenerationError(f"Key generation failed: {e}") from e
    logger.debug("Generated new %s key pair", CURVE_NAME)
    return KeyPair(private_key=private_key, public_key=private_key.public_key())


def _int_to_b64url(value: int) -> str:
    return b64url_encode(value.to_bytes(COORDINATE_SIZE, "big"))


def _b64url_to_int(jwk: PortableKey, field: str) -> int:
    encoded = jwk.get(field)
    if not isinstance(encoded, str):
        raise MalformedKeyError(f"Missing '{field}' in key")
    try:
        raw = b64url_decode(encoded)
    except ValueError:
        raise MalformedKeyError(f"Invalid encoding for '{field}'") from None
    if len(raw) != COORDINATE_SIZE:
        raise MalformedKeyError(f"Wrong length for '{field}'")
    return int.from_bytes(raw, "big")


def _check_ec_header(jwk: PortableKey):
    if not isinstance(jwk, dict):
        raise MalformedKeyError("Key must be a JSON object")
    if jwk.get("kty") != "EC" or jwk.get("crv") != CURVE_NAME:
        raise MalformedKeyError(f"Expected an EC {CURVE_NAME} key")


def export_public_key(public_key: ec.EllipticCurvePublicKey) -> PortableKey:
    """Serialize a public key to JWK"""
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": CURVE_NAME,
        "x": _int_to_b64url(numbers.x),
        "y": _int_to_b64url(numbers.y),
        "ext": True,
    }


def export_private_key(private_key: ec.EllipticCurvePrivateKey) -> PortableKey:
    """Serialize a private key to JWK (includes the public coordinates)"""
    jwk = export_public_key(private_key.public_key())
    jwk["d"] = _int_to_b64url(private_key.private_numbers().private_value)
    return jwk


def import_public_key(jwk: PortableKey) -> ec.EllipticCurvePublicKey:
    """
    Deserialize a JWK public key.

    Raises:
        MalformedKeyError: On schema, curve or point validation failure
    """
    _check_ec_header(jwk)
    x = _b64url_to_int(jwk, "x")
    y = _b64url_to_int(jwk, "y")
    try:
        return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except ValueError:
        raise MalformedKeyError("Point is not on the curve") from None


def import_private_key(jwk: PortableKey) -> ec.EllipticCurvePrivateKey:
    """
    Deserialize a JWK private key.

    Raises:
        MalformedKeyError: On schema or curve mismatch, or if x/y do not match d
    """
    _check_ec_header(jwk)
    d = _b64url_to_int(jwk, "d")
    try:
        private_key = ec.derive_private_key(d, ec.SECP256R1())
    except ValueError:
        raise MalformedKeyError("Invalid private scalar") from None

    numbers = private_key.public_key().public_numbers()
    if (numbers.x, numbers.y) != (_b64url_to_int(jwk, "x"), _b64url_to_int(jwk, "y")):
        raise MalformedKeyError("Public coordinates do not match private key")
    return private_key


def dumps_key(jwk: PortableKey) -> str:
    """JSON string form stored on relational records"""
    return json.dumps(jwk, sort_keys=True, separators=(",", ":"))


def loads_key(text: str) -> PortableKey:
    try:
        jwk = json.loads(text)
    except (TypeError, ValueError):
        raise MalformedKeyError("Key is not valid JSON") from None
    if not isinstance(jwk, dict):
        raise MalformedKeyError("Key must be a JSON object")
    return jwk


def derive_session_key(
    my_private: ec.EllipticCurvePrivateKey,
    their_public: ec.EllipticCurvePublicKey
) -> SessionKey:
    """
    Run ECDH and use the shared value as an AES-256-GCM key.

    The key is the first 256 bits of the shared x-coordinate (all of it on
    P-256), the same key WebCrypto derives for ECDH -> AES-GCM-256, so both
    sides and browser clients of the same pair agree on it.

    Args:
        my_private: Our private key
        their_public: Peer's public key

    Returns:
        SessionKey
    """
    shared = my_private.exchange(ec.ECDH(), their_public)
    return SessionKey(shared[:KEY_SIZE])
