"""
Deterministic escrow identifiers.

The identifier is Keccak-256 over a sequence of 32-byte big-endian words,
in this exact order:

    sender, receiver, token_address,
    amount.low, amount.high,
    secret_hash.low, secret_hash.high,
    timelock,
    order_id.low, order_id.high,
    created_at

Addresses become a word as ``keccak256(utf8(address))``.  256-bit values
(amount, secret_hash, order_id) are split into 128-bit limbs, low limb
first.  The field order is part of the identifier format; changing it
changes every identifier.
"""

from __future__ import annotations

from Crypto.Hash import keccak

WORD_SIZE = 32
LIMB_BITS = 128
LIMB_MASK = (1 << LIMB_BITS) - 1
UINT256_MAX = (1 << 256) - 1

ZERO_ESCROW_ID = "0x" + "00" * WORD_SIZE


def keccak256(data: bytes) -> bytes:
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def _word(value: int) -> bytes:
    if value < 0 or value > UINT256_MAX:
        raise OverflowError(f"value {value} does not fit in a 256-bit word")
    return value.to_bytes(WORD_SIZE, "big")


def split_u256(value: int) -> tuple[int, int]:
    """Split a 256-bit integer into ``(low, high)`` 128-bit limbs."""
    if value < 0 or value > UINT256_MAX:
        raise OverflowError(f"value {value} does not fit in 256 bits")
    return value & LIMB_MASK, value >> LIMB_BITS


def address_word(address: str) -> bytes:
    return keccak256(address.encode("utf-8"))


def _u256_words(value: int) -> bytes:
    low, high = split_u256(value)
    return _word(low) + _word(high)


def encode_creation_tuple(
    sender: str,
    receiver: str,
    token_address: str,
    amount: int,
    secret_hash: str,
    timelock: int,
    order_id: int,
    created_at: int,
) -> bytes:
    """Serialise the creation tuple into the hashed preimage."""
    hash_int = int(secret_hash[2:] if secret_hash.startswith("0x") else secret_hash, 16)
    return b"".join((
        address_word(sender),
        address_word(receiver),
        address_word(token_address),
        _u256_words(amount),
        _u256_words(hash_int),
        _word(timelock),
        _u256_words(order_id),
        _word(created_at),
    ))


def derive_escrow_id(
    sender: str,
    receiver: str,
    token_address: str,
    amount: int,
    secret_hash: str,
    timelock: int,
    order_id: int,
    created_at: int,
) -> str:
    """Return ``0x`` + 64 hex chars identifying the escrow."""
    preimage = encode_creation_tuple(
        sender, receiver, token_address, amount,
        secret_hash, timelock, order_id, created_at,
    )
    return "0x" + keccak256(preimage).hex()


def normalize_escrow_id(escrow_id: str) -> str:
    """Lower-case and ``0x``-prefix an identifier supplied by a caller."""
    text = escrow_id.strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text
