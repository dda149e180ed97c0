"""
Hash time-locked escrow records and the in-memory escrow store.

An escrow locks ``amount`` of one token and is released when:
  - the receiver reveals a secret whose SHA-256 equals ``secret_hash``, or
  - the sender cancels it once ``timelock`` has passed.

Exactly one of those happens, once.  Records are never deleted.
"""

from __future__ import annotations

import contextlib
import copy
from dataclasses import dataclass, fields
from enum import Enum
from typing import Iterator, Protocol

from hashlock_core.errors import Conflict
from hashlock_core.escrow_id import ZERO_ESCROW_ID


class EscrowState(str, Enum):
    ABSENT = "absent"
    LOCKED = "locked"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


@dataclass
class HTLCEscrow:
    """A single hash time-locked escrow."""
    escrow_id: str          # derived identifier (see escrow_id.py)
    sender: str             # funder, refunded on cancel
    receiver: str           # paid on withdraw
    amount: int             # locked quantity, > 0 for real records
    secret_hash: str        # 0x-hex SHA-256 commitment
    timelock: int           # Unix timestamp; cancel allowed at or after
    token_address: str      # which channel holds the funds
    order_id: int           # external correlation id, unique
    created_at: int         # Unix timestamp at creation
    withdrawn: bool = False
    cancelled: bool = False

    @classmethod
    def empty(cls) -> HTLCEscrow:
        """Zero-valued record returned for unknown identifiers."""
        return cls(
            escrow_id=ZERO_ESCROW_ID, sender="", receiver="", amount=0,
            secret_hash="0x" + "00" * 32, timelock=0, token_address="",
            order_id=0, created_at=0,
        )

    @property
    def exists(self) -> bool:
        return self.amount != 0

    @property
    def is_terminal(self) -> bool:
        return self.withdrawn or self.cancelled

    @property
    def state(self) -> EscrowState:
        if not self.exists:
            return EscrowState.ABSENT
        if self.withdrawn:
            return EscrowState.WITHDRAWN
        if self.cancelled:
            return EscrowState.CANCELLED
        return EscrowState.LOCKED

    def is_expired(self, now: int) -> bool:
        return now >= self.timelock

    def can_cancel(self, now: int) -> bool:
        """Exists, not resolved, and the timelock has passed."""
        return self.exists and not self.is_terminal and self.is_expired(now)

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "sender": self.sender,
            "receiver": self.receiver,
            "amount": self.amount,
            "secret_hash": self.secret_hash,
            "timelock": self.timelock,
            "token_address": self.token_address,
            "order_id": self.order_id,
            "created_at": self.created_at,
            "withdrawn": self.withdrawn,
            "cancelled": self.cancelled,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> HTLCEscrow:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


class EscrowStore(Protocol):
    """Storage capability set used by ``EscrowService``.

    ``get`` returns ``None`` for unknown identifiers; the zero-valued
    sentinel only exists at the query boundary.
    """

    def get(self, escrow_id: str) -> HTLCEscrow | None: ...

    def put(self, escrow_id: str, escrow: HTLCEscrow) -> None: ...

    def exists(self, escrow_id: str) -> bool: ...

    def get_by_order(self, order_id: int) -> str | None: ...

    def reserve_order(self, order_id: int, escrow_id: str) -> None: ...

    def iter_escrows(self) -> Iterator[HTLCEscrow]: ...

    def transaction(self) -> contextlib.AbstractContextManager: ...


class MemoryEscrowStore:
    """Dict-backed ``EscrowStore``."""

    def __init__(self):
        self.escrows: dict[str, HTLCEscrow] = {}
        self.order_index: dict[int, str] = {}
        self._depth = 0

    def get(self, escrow_id: str) -> HTLCEscrow | None:
        entry = self.escrows.get(escrow_id)
        # Hand out copies so callers cannot mutate stored state in place
        return copy.copy(entry) if entry is not None else None

    def put(self, escrow_id: str, escrow: HTLCEscrow) -> None:
        self.escrows[escrow_id] = copy.copy(escrow)

    def exists(self, escrow_id: str) -> bool:
        return escrow_id in self.escrows

    def get_by_order(self, order_id: int) -> str | None:
        return self.order_index.get(order_id)

    def reserve_order(self, order_id: int, escrow_id: str) -> None:
        if order_id in self.order_index:
            raise Conflict(f"Order {order_id} already mapped to {self.order_index[order_id]}")
        self.order_index[order_id] = escrow_id

    def iter_escrows(self) -> Iterator[HTLCEscrow]:
        for entry in list(self.escrows.values()):
            yield copy.copy(entry)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Restore both maps if the block raises.  Nested blocks join the outer one."""
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return
        escrows = dict(self.escrows)
        order_index = dict(self.order_index)
        self._depth = 1
        try:
            yield
        except BaseException:
            self.escrows = escrows
            self.order_index = order_index
            raise
        finally:
            self._depth = 0

    def __len__(self) -> int:
        return len(self.escrows)
