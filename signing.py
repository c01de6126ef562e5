# Hearsay signature verification
# Identities are raw 32-byte Ed25519 public keys, transported as base64.
# Every state-changing request carries a detached signature over a canonical
# message string built by the helpers below.

import base64
import binascii
import logging
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

log = logging.getLogger("hearsay")

PUBLIC_KEY_BYTES = 32


def _b64decode(value) -> Optional[bytes]:
    if isinstance(value, bytes):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_public_key(public_key) -> Optional[Ed25519PublicKey]:
    """Parse a base64 public key. Returns None if it is not a valid Ed25519 key."""
    raw = _b64decode(public_key)
    if raw is None or len(raw) != PUBLIC_KEY_BYTES:
        return None
    try:
        return Ed25519PublicKey.from_public_bytes(raw)
    except ValueError:
        return None


def is_valid_public_key(public_key) -> bool:
    return decode_public_key(public_key) is not None


def verify_signature(message, signature, public_key) -> bool:
    """Verify a detached Ed25519 signature. Never raises on malformed input."""
    key = decode_public_key(public_key)
    sig = _b64decode(signature)
    if key is None or sig is None:
        return False
    if isinstance(message, str):
        message = message.encode("utf-8")
    try:
        key.verify(sig, message)
        return True
    except InvalidSignature:
        return False
    except (TypeError, ValueError) as e:
        log.debug("SIGNATURE malformed input: %s", e)
        return False


# ── Canonical messages ────────────────────────────────────────────────


def submit_message(content: str) -> str:
    return f"SUBMIT:{content}"


def vote_message(rumor_id, vote_value: bool) -> str:
    return f"VOTE:{rumor_id}:{'true' if vote_value else 'false'}"


def delete_message(rumor_id) -> str:
    return f"DELETE:{rumor_id}"


def comment_message(rumor_id, content: str) -> str:
    return f"COMMENT:{rumor_id}:{content}"


# ── Key tooling (CLI + tests) ─────────────────────────────────────────


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Return (private key, base64 public key)."""
    private_key = Ed25519PrivateKey.generate()
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return private_key, base64.b64encode(raw).decode("ascii")


def private_key_to_b64(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(raw).decode("ascii")


def private_key_from_b64(value: str) -> Ed25519PrivateKey:
    return Ed25519PrivateKey.from_private_bytes(base64.b64decode(value))


def sign(private_key: Ed25519PrivateKey, message) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return base64.b64encode(private_key.sign(message)).decode("ascii")
