"""
Error taxonomy for Hashlock escrow operations.

Every precondition failure aborts the whole operation before any state
is written.  Each class carries a short machine-readable ``code`` and the
HTTP status the API layer answers with.

    EscrowError
      ├── InvalidInput        (also a ValueError)
      ├── Conflict
      ├── NotFound            (also a LookupError)
      ├── InvalidState
      │     └── TimelockExpired
      ├── Unauthorized
      ├── InvalidProof
      ├── TimelockNotExpired
      ├── InsufficientFunds
      └── TransferFailed
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base class for all escrow failures."""
    code = "escrow_error"
    http_status = 400

    def __init__(self, message: str = "", escrow_id: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.escrow_id = escrow_id

    def to_dict(self) -> dict:
        d = {"error": self.code, "message": self.message}
        if self.escrow_id:
            d["escrow_id"] = self.escrow_id
        return d


class InvalidInput(EscrowError, ValueError):
    """Zero address, non-positive amount, past timelock, zero order id..."""
    code = "invalid_input"
    http_status = 400


class Conflict(EscrowError):
    """Identifier collision or order id already registered."""
    code = "conflict"
    http_status = 409


class NotFound(EscrowError, LookupError):
    code = "not_found"
    http_status = 404


class InvalidState(EscrowError):
    """Operation attempted on an escrow that is already terminal."""
    code = "invalid_state"
    http_status = 409


class TimelockExpired(InvalidState):
    """Withdrawal attempted at or after the timelock (strict deadline mode)."""
    code = "timelock_expired"


class Unauthorized(EscrowError):
    code = "unauthorized"
    http_status = 403


class InvalidProof(EscrowError):
    """Secret does not hash to the stored commitment."""
    code = "invalid_proof"
    http_status = 403


class TimelockNotExpired(EscrowError):
    code = "timelock_not_expired"
    http_status = 409


class InsufficientFunds(EscrowError):
    code = "insufficient_funds"
    http_status = 402


class TransferFailed(EscrowError):
    """The value-transfer channel refused or failed a movement."""
    code = "transfer_failed"
    http_status = 502
