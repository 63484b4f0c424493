"""Tests for the cryptographic core."""

import json

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from chatcrypto import cipher
from chatcrypto.codec import b64decode, b64encode, b64url_encode
from chatcrypto.keys import (
    KeyPair,
    SessionKey,
    derive_session_key,
    dumps_key,
    export_private_key,
    export_public_key,
    generate_keypair,
    import_private_key,
    import_public_key,
    loads_key,
)
from chatcrypto.primitives import (
    NONCE_SIZE,
    SALT_SIZE,
    DecryptionFailedError,
    MalformedKeyError,
    MalformedPayloadError,
    WrongPassphraseOrTamperedError,
)
from chatcrypto.vault import unwrap_private_key, wrap_private_key


@pytest.fixture
def session_key():
    alice, bob = generate_keypair(), generate_keypair()
    return derive_session_key(alice.private_key, bob.public_key)


def test_dh_agreement_is_commutative():
    """Both sides of a pair derive the same session key"""
    alice = generate_keypair()
    bob = generate_keypair()

    alice_key = derive_session_key(alice.private_key, bob.public_key)
    bob_key = derive_session_key(bob.private_key, alice.public_key)

    assert alice_key == bob_key
    assert len(alice_key.key) == 32


def test_session_key_is_raw_ecdh_output():
    """Session key equals the 32-byte ECDH shared secret, as WebCrypto derives it"""
    alice = generate_keypair()
    bob = generate_keypair()

    shared = alice.private_key.exchange(ec.ECDH(), bob.public_key)
    assert len(shared) == 32
    assert derive_session_key(alice.private_key, bob.public_key).key == shared


def test_session_key_from_fixed_scalars():
    alice = ec.derive_private_key(2, ec.SECP256R1())
    bob = ec.derive_private_key(3, ec.SECP256R1())

    # 2 * 3 * G computed from either side
    expected = ec.derive_private_key(6, ec.SECP256R1()).public_key().public_numbers().x
    key = derive_session_key(alice, bob.public_key())
    assert key.key == expected.to_bytes(32, "big")
    assert key == derive_session_key(bob, alice.public_key())


def test_different_pairs_get_different_keys():
    alice, bob, carol = generate_keypair(), generate_keypair(), generate_keypair()
    assert derive_session_key(alice.private_key, bob.public_key) != \
        derive_session_key(alice.private_key, carol.public_key)


def test_jwk_export_import():
    keypair = generate_keypair()
    public_jwk = export_public_key(keypair.public_key)
    private_jwk = export_private_key(keypair.private_key)

    assert public_jwk["kty"] == "EC" and public_jwk["crv"] == "P-256"
    assert "d" not in public_jwk
    assert "d" in private_jwk

    assert export_public_key(import_public_key(public_jwk)) == public_jwk
    assert export_private_key(import_private_key(private_jwk)) == private_jwk
    assert loads_key(dumps_key(public_jwk)) == public_jwk


def test_imported_keys_derive_same_session_key():
    alice, bob = generate_keypair(), generate_keypair()
    restored = KeyPair.from_portable(alice.export_public(), alice.export_private())

    assert derive_session_key(restored.private_key, bob.public_key) == \
        derive_session_key(alice.private_key, bob.public_key)


@pytest.mark.parametrize("change", [
    {"kty": "RSA"},
    {"crv": "P-384"},
    {"x": b64url_encode(b"\x01" * 31)},
    {"x": b64url_encode((1).to_bytes(32, "big")), "y": b64url_encode((1).to_bytes(32, "big"))},
    {"y": None},
])
def test_import_public_rejects_malformed(change):
    jwk = generate_keypair().export_public()
    jwk.update(change)
    with pytest.raises(MalformedKeyError):
        import_public_key(jwk)


def test_import_private_rejects_mismatched_coordinates():
    jwk = generate_keypair().export_private()
    jwk["x"] = generate_keypair().export_public()["x"]
    with pytest.raises(MalformedKeyError):
        import_private_key(jwk)


def test_keypair_halves_must_match():
    a, b = generate_keypair(), generate_keypair()
    with pytest.raises(MalformedKeyError):
        KeyPair.from_portable(a.export_public(), b.export_private())


def test_loads_key_rejects_non_object():
    with pytest.raises(MalformedKeyError):
        loads_key("[1, 2]")
    with pytest.raises(MalformedKeyError):
        loads_key("{not json")


def test_session_key_portable(session_key):
    jwk = session_key.to_portable()
    assert jwk["kty"] == "oct" and jwk["alg"] == "A256GCM"
    assert SessionKey.from_portable(jwk) == session_key
    assert "redacted" in repr(session_key)

    with pytest.raises(MalformedKeyError):
        SessionKey.from_portable({"kty": "oct", "k": b64url_encode(b"short")})


def test_text_round_trip(session_key):
    for message in ["", "Hello, World!", "héllo ✓ 🔒", "x" * 10000]:
        assert cipher.decrypt_text(cipher.encrypt(message, session_key), session_key) == message


def test_binary_round_trip(session_key):
    data = bytes(range(256)) * 40
    sealed = cipher.encrypt_binary(data, session_key)

    assert isinstance(sealed, bytes)
    assert len(sealed) == NONCE_SIZE + len(data) + 16
    assert cipher.decrypt_binary(sealed, session_key) == data


def test_nonce_is_fresh_per_call(session_key):
    payloads = {cipher.encrypt("same text", session_key) for _ in range(50)}
    assert len(payloads) == 50
    nonces = {b64decode(p)[:NONCE_SIZE] for p in payloads}
    assert len(nonces) == 50


def test_every_bit_flip_is_detected(session_key):
    """Flipping any single bit of the payload breaks authentication"""
    raw = b64decode(cipher.encrypt("tamper me", session_key))

    for byte_index in range(len(raw)):
        for bit in range(8):
            corrupted = bytearray(raw)
            corrupted[byte_index] ^= 1 << bit
            with pytest.raises(DecryptionFailedError):
                cipher.decrypt(b64encode(bytes(corrupted)), session_key)


def test_wrong_key_fails(session_key):
    other = derive_session_key(generate_keypair().private_key, generate_keypair().public_key)
    payload = cipher.encrypt("secret", session_key)
    with pytest.raises(DecryptionFailedError):
        cipher.decrypt(payload, other)


def test_malformed_payloads(session_key):
    with pytest.raises(MalformedPayloadError):
        cipher.decrypt("not base64!!", session_key)
    with pytest.raises(MalformedPayloadError):
        cipher.decrypt(b64encode(b"\x00" * 10), session_key)
    with pytest.raises(DecryptionFailedError):
        cipher.decrypt_binary(b"", session_key)


def test_non_utf8_plaintext_fails_text_decrypt(session_key):
    payload = cipher.encrypt(b"\xff\xfe\xfd", session_key)
    assert cipher.decrypt(payload, session_key) == b"\xff\xfe\xfd"
    with pytest.raises(DecryptionFailedError):
        cipher.decrypt_text(payload, session_key)


def test_passphrase_round_trip():
    private_jwk = generate_keypair().export_private()
    for passphrase in ["correct-horse-battery", "", "pässwörd 🔑"]:
        wrapped = wrap_private_key(private_jwk, passphrase)
        assert unwrap_private_key(wrapped, passphrase) == private_jwk


def test_wrapping_is_not_byte_idempotent():
    private_jwk = generate_keypair().export_private()
    first = wrap_private_key(private_jwk, "pw")
    second = wrap_private_key(private_jwk, "pw")

    assert first != second
    assert b64decode(first)[:SALT_SIZE] != b64decode(second)[:SALT_SIZE]


def test_wrong_passphrase():
    """Scenario B"""
    wrapped = wrap_private_key(generate_keypair().export_private(), "pw-A")
    with pytest.raises(WrongPassphraseOrTamperedError):
        unwrap_private_key(wrapped, "pw-B")


def test_tampered_backup_looks_like_wrong_passphrase():
    wrapped = bytearray(b64decode(wrap_private_key(generate_keypair().export_private(), "pw")))
    wrapped[-1] ^= 0x01

    with pytest.raises(WrongPassphraseOrTamperedError):
        unwrap_private_key(b64encode(bytes(wrapped)), "pw")
    with pytest.raises(WrongPassphraseOrTamperedError):
        unwrap_private_key("garbage!", "pw")
    with pytest.raises(WrongPassphraseOrTamperedError):
        unwrap_private_key(b64encode(b"\x00" * 20), "pw")


def test_iterations_floor():
    with pytest.raises(ValueError):
        wrap_private_key({}, "pw", iterations=1000)


def test_scenario_a_restore_then_derive():
    """Scenario A: escrowed key still derives the same session key"""
    mine = generate_keypair()
    peer = generate_keypair()
    direct = derive_session_key(mine.private_key, peer.public_key)

    wrapped = wrap_private_key(mine.export_private(), "correct-horse-battery")
    recovered = import_private_key(unwrap_private_key(wrapped, "correct-horse-battery"))

    assert derive_session_key(recovered, peer.public_key) == direct


def test_wrapped_blob_contains_serialized_key_only_encrypted():
    private_jwk = generate_keypair().export_private()
    blob = b64decode(wrap_private_key(private_jwk, "pw"))
    assert json.dumps(private_jwk).encode() not in blob
    assert private_jwk["d"].encode() not in blob
