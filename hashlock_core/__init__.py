"""
Hashlock - hash time-locked escrows for atomic conditional transfers.

Key features:
- Deterministic Keccak-256 escrow identifiers
- SHA-256 secret commitments, revealed on withdrawal
- Sender refunds after an absolute timelock
- One escrow per external order id
- Pluggable value-transfer channels and escrow stores (memory, SQLite)
- Signed aiohttp REST API
"""

__version__ = "0.3.0"
__all__ = [
    "errors",
    "hashlock",
    "escrow_id",
    "context",
    "token",
    "events",
    "escrow",
    "storage",
    "service",
    "auth",
    "api",
    "config",
    "logging_config",
]
