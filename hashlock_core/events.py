"""
Escrow events and the append-only event log.

Events are appended only after the operation that produced them has
committed.  ``EscrowWithdrawn`` carries the plaintext secret: publishing
it is what lets the counterparty of a linked HTLC claim their side.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Union

logger = logging.getLogger("hashlock_events")


@dataclass(frozen=True)
class EscrowCreated:
    escrow_id: str
    sender: str
    receiver: str
    amount: int
    secret_hash: str
    timelock: int
    token_address: str
    order_id: int

    name = "EscrowCreated"


@dataclass(frozen=True)
class EscrowWithdrawn:
    escrow_id: str
    receiver: str
    secret: str     # hex, revealed on purpose
    order_id: int

    name = "EscrowWithdrawn"


@dataclass(frozen=True)
class EscrowCancelled:
    escrow_id: str
    sender: str
    order_id: int

    name = "EscrowCancelled"


EscrowEvent = Union[EscrowCreated, EscrowWithdrawn, EscrowCancelled]


@dataclass(frozen=True)
class LoggedEvent:
    """An event together with its position in the log."""
    seq: int
    event: EscrowEvent

    def to_dict(self) -> dict:
        return {"seq": self.seq, "type": self.event.name, **asdict(self.event)}


class EventLog:
    """Append-only, in-memory event log with synchronous subscribers."""

    def __init__(self):
        self._entries: list[LoggedEvent] = []
        self._subscribers: list[Callable[[LoggedEvent], None]] = []

    def emit(self, event: EscrowEvent) -> LoggedEvent:
        entry = LoggedEvent(seq=len(self._entries) + 1, event=event)
        self._entries.append(entry)
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception:
                # A faulty subscriber must not undo a committed operation
                logger.exception(f"Event subscriber failed on {event.name} #{entry.seq}")
        return entry

    def subscribe(self, callback: Callable[[LoggedEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[LoggedEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def since(self, seq: int = 0, limit: int | None = None) -> list[LoggedEvent]:
        """Entries with sequence number greater than *seq*."""
        out = self._entries[max(seq, 0):]
        if limit is not None:
            out = out[:limit]
        return out

    def for_escrow(self, escrow_id: str) -> list[LoggedEvent]:
        return [e for e in self._entries if e.event.escrow_id == escrow_id]

    @property
    def last_seq(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
