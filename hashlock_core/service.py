"""
Escrow lifecycle: creation, secret-gated withdrawal, time-gated
cancellation, and read-only queries.

Per escrow identifier:

    Absent --create--> Locked --withdraw--> Withdrawn
                              --cancel----> Cancelled

Withdrawn and Cancelled are terminal.  Every mutating operation holds the
service lock for its whole duration and runs its store writes and its fund
transfer inside one ``store.transaction()``: a failed transfer leaves no
trace in the store.  Events are emitted only after the transaction commits.
Queries take the same (re-entrant) lock, so concurrent callers see either
the state before an operation or the state after it, never the middle.

All operations take an ``ExecutionContext`` carrying the trusted caller and
current time.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Callable, Iterator

from hashlock_core.config import ServiceConfig
from hashlock_core.context import ExecutionContext
from hashlock_core.errors import (
    Conflict,
    EscrowError,
    InsufficientFunds,
    InvalidInput,
    InvalidProof,
    InvalidState,
    NotFound,
    TimelockExpired,
    TimelockNotExpired,
    TransferFailed,
    Unauthorized,
)
from hashlock_core.escrow import EscrowStore, HTLCEscrow, MemoryEscrowStore
from hashlock_core.escrow_id import (
    UINT256_MAX,
    ZERO_ESCROW_ID,
    derive_escrow_id,
    normalize_escrow_id,
)
from hashlock_core.events import EscrowCancelled, EscrowCreated, EscrowWithdrawn, EventLog
from hashlock_core.hashlock import normalize_hash, to_bytes, verify_secret
from hashlock_core.token import TokenChannel, TokenRegistry, is_zero_address

logger = logging.getLogger("hashlock_escrow")


def _require_uint(value: object, name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer")
    if value < 0 or value > UINT256_MAX:
        raise InvalidInput(f"{name} out of range")
    return value


class EscrowService:
    """Owns the escrow store and drives every state transition."""

    def __init__(
        self,
        tokens: TokenRegistry,
        store: EscrowStore | None = None,
        events: EventLog | None = None,
        config: ServiceConfig | None = None,
    ):
        self.tokens = tokens
        self.store: EscrowStore = store if store is not None else MemoryEscrowStore()
        self.events = events if events is not None else EventLog()
        self.config = config or ServiceConfig(custody_address=tokens.custody)
        self._lock = threading.RLock()

    @property
    def custody(self) -> str:
        return self.tokens.custody

    # ── helpers ──────────────────────────────────────────────────

    @contextlib.contextmanager
    def _operation(self, name: str, escrow_id: str = "") -> Iterator[None]:
        """Serialise a mutating operation and log its rejection."""
        with self._lock:
            try:
                yield
            except EscrowError as exc:
                if not exc.escrow_id:
                    exc.escrow_id = escrow_id
                logger.warning(
                    f"{name} rejected [{exc.code}] {exc.escrow_id or '-'}: {exc.message}",
                    extra={"escrow_id": exc.escrow_id, "operation": name, "code": exc.code},
                )
                raise

    def _channel(self, token_address: str) -> TokenChannel:
        channel = self.tokens.get(token_address)
        if channel is None:
            raise TransferFailed(f"No channel registered for token {token_address}")
        return channel

    @staticmethod
    def _transfer(call: Callable[..., None], *args) -> None:
        """Invoke a channel method; foreign failures become TransferFailed."""
        try:
            call(*args)
        except EscrowError:
            raise
        except Exception as exc:
            raise TransferFailed(f"Value transfer failed: {exc}") from exc

    def _load(self, escrow_id: str) -> HTLCEscrow:
        escrow = self.store.get(escrow_id)
        if escrow is None or not escrow.exists:
            raise NotFound(f"Escrow {escrow_id} not found", escrow_id)
        return escrow

    @staticmethod
    def _require_live(escrow: HTLCEscrow) -> None:
        if escrow.withdrawn:
            raise InvalidState("Escrow already withdrawn", escrow.escrow_id)
        if escrow.cancelled:
            raise InvalidState("Escrow already cancelled", escrow.escrow_id)

    # ── creation ─────────────────────────────────────────────────

    def create_escrow(
        self,
        ctx: ExecutionContext,
        token_address: str,
        amount: int,
        secret_hash: bytes | str,
        timelock: int,
        receiver: str,
        order_id: int,
    ) -> str:
        """Lock *amount* of *token_address* from ``ctx.caller`` for *receiver*.

        Returns the derived escrow identifier.
        """
        sender = ctx.caller
        with self._operation("create"):
            if is_zero_address(token_address) or token_address not in self.tokens:
                raise InvalidInput(f"Invalid token address: {token_address!r}")
            amount = _require_uint(amount, "amount")
            if amount == 0:
                raise InvalidInput("amount must be positive")
            timelock = _require_uint(timelock, "timelock")
            if timelock <= ctx.now:
                raise InvalidInput(f"timelock {timelock} must be after {ctx.now}")
            if is_zero_address(receiver):
                raise InvalidInput("receiver must be non-zero")
            order_id = _require_uint(order_id, "order_id")
            if order_id == 0:
                raise InvalidInput("order_id must be non-zero")
            if is_zero_address(sender):
                raise InvalidInput("sender must be non-zero")
            secret_hash = normalize_hash(secret_hash)

            escrow_id = derive_escrow_id(
                sender, receiver, token_address, amount,
                secret_hash, timelock, order_id, ctx.now,
            )
            if self.store.exists(escrow_id):
                raise Conflict(f"Escrow {escrow_id} already exists", escrow_id)
            if self.store.get_by_order(order_id) is not None:
                raise Conflict(f"Order {order_id} already has an escrow", escrow_id)

            channel = self._channel(token_address)
            if self.config.require_balance_check:
                have = channel.balance_of(sender)
                if have < amount:
                    raise InsufficientFunds(
                        f"{sender} holds {have}, escrow needs {amount}", escrow_id,
                    )

            escrow = HTLCEscrow(
                escrow_id=escrow_id,
                sender=sender,
                receiver=receiver,
                amount=amount,
                secret_hash=secret_hash,
                timelock=timelock,
                token_address=token_address,
                order_id=order_id,
                created_at=ctx.now,
            )
            with self.store.transaction():
                self.store.put(escrow_id, escrow)
                self.store.reserve_order(order_id, escrow_id)
                self._transfer(channel.transfer_from, sender, self.custody, amount)

            logger.info(
                f"Escrow {escrow_id} created: {amount} {token_address} "
                f"{sender} -> {receiver}, order {order_id}, timelock {timelock}",
                extra={"escrow_id": escrow_id, "operation": "create"},
            )
            self.events.emit(EscrowCreated(
                escrow_id=escrow_id,
                sender=sender,
                receiver=receiver,
                amount=amount,
                secret_hash=secret_hash,
                timelock=timelock,
                token_address=token_address,
                order_id=order_id,
            ))
        return escrow_id

    # ── withdrawal ───────────────────────────────────────────────

    def withdraw(
        self, ctx: ExecutionContext, escrow_id: str, secret: bytes | str,
    ) -> HTLCEscrow:
        """Release the escrow to its receiver against the secret."""
        escrow_id = normalize_escrow_id(escrow_id)
        with self._operation("withdraw", escrow_id):
            escrow = self._load(escrow_id)
            self._require_live(escrow)
            if ctx.caller != escrow.receiver:
                raise Unauthorized("Only the receiver can withdraw", escrow_id)
            if not verify_secret(secret, escrow.secret_hash):
                raise InvalidProof("Secret does not match the commitment", escrow_id)
            if self.config.enforce_withdraw_deadline and escrow.is_expired(ctx.now):
                raise TimelockExpired(
                    f"Timelock {escrow.timelock} has passed", escrow_id,
                )

            channel = self._channel(escrow.token_address)
            escrow.withdrawn = True
            with self.store.transaction():
                self.store.put(escrow_id, escrow)
                self._transfer(channel.transfer, escrow.receiver, escrow.amount)

            logger.info(
                f"Escrow {escrow_id} withdrawn by {escrow.receiver}",
                extra={"escrow_id": escrow_id, "operation": "withdraw"},
            )
            self.events.emit(EscrowWithdrawn(
                escrow_id=escrow_id,
                receiver=escrow.receiver,
                secret="0x" + to_bytes(secret).hex(),
                order_id=escrow.order_id,
            ))
        return escrow

    # ── cancellation ─────────────────────────────────────────────

    def cancel(self, ctx: ExecutionContext, escrow_id: str) -> HTLCEscrow:
        """Refund the sender once the timelock has passed."""
        escrow_id = normalize_escrow_id(escrow_id)
        with self._operation("cancel", escrow_id):
            escrow = self._load(escrow_id)
            self._require_live(escrow)
            if ctx.caller != escrow.sender:
                raise Unauthorized("Only the sender can cancel", escrow_id)
            if not escrow.is_expired(ctx.now):
                raise TimelockNotExpired(
                    f"Cannot cancel before {escrow.timelock}", escrow_id,
                )

            channel = self._channel(escrow.token_address)
            escrow.cancelled = True
            with self.store.transaction():
                self.store.put(escrow_id, escrow)
                self._transfer(channel.transfer, escrow.sender, escrow.amount)

            logger.info(
                f"Escrow {escrow_id} cancelled, {escrow.amount} refunded to {escrow.sender}",
                extra={"escrow_id": escrow_id, "operation": "cancel"},
            )
            self.events.emit(EscrowCancelled(
                escrow_id=escrow_id,
                sender=escrow.sender,
                order_id=escrow.order_id,
            ))
        return escrow

    # ── queries ──────────────────────────────────────────────────

    def find_escrow(self, escrow_id: str) -> HTLCEscrow | None:
        with self._lock:
            return self.store.get(normalize_escrow_id(escrow_id))

    def get_escrow(self, escrow_id: str) -> HTLCEscrow:
        """Stored record, or the zero-valued record if unknown."""
        return self.find_escrow(escrow_id) or HTLCEscrow.empty()

    def get_escrow_by_order_id(self, order_id: int) -> tuple[str, HTLCEscrow]:
        with self._lock:
            escrow_id = self.store.get_by_order(order_id)
            if escrow_id is None:
                return ZERO_ESCROW_ID, HTLCEscrow.empty()
            return escrow_id, self.get_escrow(escrow_id)

    def verify_secret(self, escrow_id: str, secret: bytes | str) -> bool:
        """Does *secret* open this escrow's commitment?  No side effects."""
        escrow = self.find_escrow(escrow_id)
        if escrow is None:
            return False
        return verify_secret(secret, escrow.secret_hash)

    def can_cancel(self, escrow_id: str, now: int) -> bool:
        escrow = self.find_escrow(escrow_id)
        return escrow is not None and escrow.can_cancel(now)

    def get_escrow_balance(self, escrow_id: str) -> int:
        """Custody balance of the escrow's token channel.

        This is the whole custody holding for that token, shared by every
        escrow in it.  See ``locked_amount`` for the escrow's own share.
        """
        with self._lock:
            escrow = self.find_escrow(escrow_id)
            if escrow is None:
                return 0
            channel = self.tokens.get(escrow.token_address)
            return channel.balance_of(self.custody) if channel is not None else 0

    def locked_amount(self, escrow_id: str) -> int:
        escrow = self.find_escrow(escrow_id)
        if escrow is None or escrow.is_terminal:
            return 0
        return escrow.amount

    def get_escrows_for_account(self, address: str) -> list[HTLCEscrow]:
        with self._lock:
            return [e for e in self.store.iter_escrows()
                    if address in (e.sender, e.receiver) and not e.is_terminal]

    def get_pending_count(self) -> int:
        with self._lock:
            return sum(1 for e in self.store.iter_escrows() if not e.is_terminal)

    def total_locked(self, token_address: str | None = None) -> int:
        with self._lock:
            return sum(e.amount for e in self.store.iter_escrows()
                       if not e.is_terminal
                       and (token_address is None or e.token_address == token_address))
