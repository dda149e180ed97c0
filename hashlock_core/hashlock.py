"""
Hashlock commitments.

A commitment is ``SHA-256(secret)`` over the raw secret bytes, rendered as
``0x``-prefixed lowercase hex.  SHA-256 is the preimage check Bitcoin-style
HTLC scripts use, so a secret revealed here can claim a matching payment on
such a chain.

Secrets and hashes travel as raw ``bytes`` or hex strings (``0x`` optional).
"""

from __future__ import annotations

import hashlib
import hmac
import os

from hashlock_core.errors import InvalidInput

SECRET_SIZE = 32
HASH_SIZE = 32


def _from_hex(value: str, name: str) -> bytes:
    text = value[2:] if value[:2].lower() == "0x" else value
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise InvalidInput(f"{name} must be hex-encoded") from exc


def to_bytes(value: bytes | str, name: str = "secret") -> bytes:
    """Coerce a secret given as bytes or hex text into bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return _from_hex(value, name)
    raise InvalidInput(f"{name} must be bytes or a hex string")


def generate_secret() -> bytes:
    """Return a fresh random 32-byte secret."""
    return os.urandom(SECRET_SIZE)


def hash_secret(secret: bytes | str) -> str:
    """Commitment for *secret*: ``0x`` + hex(SHA-256(secret))."""
    return "0x" + hashlib.sha256(to_bytes(secret)).hexdigest()


def normalize_hash(secret_hash: bytes | str) -> str:
    """Validate a 32-byte commitment and return its canonical hex form."""
    raw = to_bytes(secret_hash, "secret_hash")
    if len(raw) != HASH_SIZE:
        raise InvalidInput(f"secret_hash must be {HASH_SIZE} bytes, got {len(raw)}")
    return "0x" + raw.hex()


def verify_secret(secret: bytes | str, secret_hash: str) -> bool:
    """True iff ``hash_secret(secret) == secret_hash``.  Never raises."""
    try:
        computed = hash_secret(secret)
        expected = normalize_hash(secret_hash)
    except InvalidInput:
        return False
    return hmac.compare_digest(computed, expected)
