"""
Caller identity for signed API requests.

A caller owns a secp256k1 key pair.  Its address is ``0x`` followed by the
last 20 bytes of Keccak-256 over the 64-byte uncompressed public key.  A
request payload is signed as DER over SHA-256 of its canonical JSON
(sorted keys, compact separators), so the server can recover the caller
address without trusting anything the client claims about itself.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.keys import MalformedPointError
from ecdsa.util import sigdecode_der, sigencode_der

from hashlock_core.errors import Unauthorized
from hashlock_core.escrow_id import keccak256


def canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def address_from_public_key(public_key: bytes) -> str:
    """Derive the address for a 64-byte (or 65-byte ``04``-prefixed) key."""
    if len(public_key) == 65 and public_key[0] == 4:
        public_key = public_key[1:]
    if len(public_key) != 64:
        raise ValueError("public key must be 64 bytes uncompressed")
    return "0x" + keccak256(public_key)[-20:].hex()


class Signer:
    """A secp256k1 key pair that signs request payloads."""

    def __init__(self, private_key: bytes):
        self._sk = SigningKey.from_string(private_key, curve=SECP256k1)
        self.public_key: bytes = self._sk.get_verifying_key().to_string()
        self.address = address_from_public_key(self.public_key)

    @classmethod
    def generate(cls) -> Signer:
        return cls(SigningKey.generate(curve=SECP256k1).to_string())

    @classmethod
    def from_seed(cls, seed: str) -> Signer:
        """Deterministic key from a text seed (tests and local tooling)."""
        key = hashlib.sha256(f"hashlock-seed:{seed}".encode()).digest()
        # Reduce into the valid scalar range [1, n-1]
        scalar = int.from_bytes(key, "big") % (SECP256k1.order - 1) + 1
        return cls(scalar.to_bytes(32, "big"))

    def sign(self, payload: dict[str, Any]) -> bytes:
        return self._sk.sign_deterministic(
            canonical_json(payload), hashfunc=hashlib.sha256, sigencode=sigencode_der,
        )

    def signed_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Envelope accepted by the API's signed endpoints."""
        return {
            "public_key": self.public_key.hex(),
            "signature": self.sign(payload).hex(),
            "payload": payload,
        }


def verify_request(public_key_hex: str, signature_hex: str, payload: dict[str, Any]) -> str:
    """Check a signed payload and return the caller's address.

    Raises ``Unauthorized`` on any malformed key or bad signature.
    """
    try:
        public_key = bytes.fromhex(public_key_hex)
        signature = bytes.fromhex(signature_hex)
        if len(public_key) == 65 and public_key[0] == 4:
            public_key = public_key[1:]
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        vk.verify(
            signature, canonical_json(payload),
            hashfunc=hashlib.sha256, sigdecode=sigdecode_der,
        )
    except (ValueError, TypeError, BadSignatureError, MalformedPointError, UnexpectedDER) as exc:
        raise Unauthorized("Invalid request signature") from exc
    return address_from_public_key(public_key)
