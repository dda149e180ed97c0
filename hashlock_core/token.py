"""
Value-transfer channels.

The escrow core only talks to a ``TokenChannel``: something that can pull
funds from a principal into custody, pay funds out of custody, and report
balances.  Either a call fully succeeds or it raises; the core performs no
partial-failure recovery of its own.

``BalanceBook`` is the in-process reference ledger: integer balances for a
single asset.  ``CustodyChannel`` binds a book to the custody address so
that ``transfer(to, amount)`` always pays out of custody.
``TokenRegistry`` maps token addresses to channels.

A book can be given a ``BalanceJournal`` callback, invoked with
``(token, address, new_balance)`` after every change, so that a persistent
store can record balances next to the escrows that move them.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol, runtime_checkable

from hashlock_core.errors import InsufficientFunds, InvalidInput, TransferFailed

logger = logging.getLogger("hashlock_token")

# Sentinel token address for the native/base asset.
NATIVE_TOKEN = "native"

BalanceJournal = Callable[[str, str, int], None]


def is_zero_address(address: str | None) -> bool:
    """True for empty addresses and ``0x000…`` style zero addresses."""
    if not address:
        return True
    text = address.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    return text == "" or set(text) == {"0"}


@runtime_checkable
class TokenChannel(Protocol):
    def transfer_from(self, sender: str, recipient: str, amount: int) -> None: ...

    def transfer(self, recipient: str, amount: int) -> None: ...

    def balance_of(self, address: str) -> int: ...


class BalanceBook:
    """Integer balances for one asset."""

    def __init__(self, symbol: str = NATIVE_TOKEN, journal: Optional[BalanceJournal] = None):
        self.symbol = symbol
        self.balances: dict[str, int] = {}
        self.journal = journal

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    def _set(self, address: str, amount: int) -> None:
        self.balances[address] = amount
        if self.journal is not None:
            self.journal(self.symbol, address, amount)

    def restore(self, address: str, amount: int) -> None:
        """Load a recorded balance without journaling it again."""
        self.balances[address] = amount

    def mint(self, address: str, amount: int) -> None:
        if amount < 0:
            raise InvalidInput("mint amount must be non-negative")
        self._set(address, self.balance_of(address) + amount)

    def move(self, src: str, dst: str, amount: int) -> None:
        """Move *amount* from *src* to *dst*; nothing changes on failure."""
        if not isinstance(amount, int) or amount <= 0:
            raise TransferFailed(f"Invalid transfer amount: {amount!r}")
        if is_zero_address(dst):
            raise TransferFailed("Transfer to the zero address")
        have = self.balance_of(src)
        if have < amount:
            raise InsufficientFunds(
                f"{src} holds {have} {self.symbol}, needs {amount}"
            )
        self._set(src, have - amount)
        self._set(dst, self.balance_of(dst) + amount)

    def total_supply(self) -> int:
        return sum(self.balances.values())


class CustodyChannel:
    """``TokenChannel`` over a ``BalanceBook`` with a fixed custody address."""

    def __init__(self, book: BalanceBook, custody: str):
        self.book = book
        self.custody = custody

    def transfer_from(self, sender: str, recipient: str, amount: int) -> None:
        self.book.move(sender, recipient, amount)
        logger.debug(f"{self.book.symbol}: pulled {amount} from {sender} to {recipient}")

    def transfer(self, recipient: str, amount: int) -> None:
        self.book.move(self.custody, recipient, amount)
        logger.debug(f"{self.book.symbol}: paid {amount} from custody to {recipient}")

    def balance_of(self, address: str) -> int:
        return self.book.balance_of(address)


class TokenRegistry:
    """Token address -> channel.  The native token is always present.

    Books created through ``add_book`` share the registry's *journal*.
    """

    def __init__(self, custody: str, journal: Optional[BalanceJournal] = None):
        if is_zero_address(custody):
            raise InvalidInput("custody address must be non-zero")
        self.custody = custody
        self.journal = journal
        self.channels: dict[str, TokenChannel] = {}
        self.books: dict[str, BalanceBook] = {}
        self.add_book(NATIVE_TOKEN)

    def add_book(self, token_address: str) -> BalanceBook:
        """Register an in-process ``BalanceBook`` for *token_address*."""
        book = self.books.get(token_address)
        if book is None:
            book = BalanceBook(token_address, journal=self.journal)
            self.books[token_address] = book
            self.channels[token_address] = CustodyChannel(book, self.custody)
        return book

    def register(self, token_address: str, channel: TokenChannel) -> None:
        """Register an externally supplied channel."""
        if is_zero_address(token_address):
            raise InvalidInput("token address must be non-zero")
        self.channels[token_address] = channel

    def get(self, token_address: str) -> TokenChannel | None:
        return self.channels.get(token_address)

    def __contains__(self, token_address: str) -> bool:
        return token_address in self.channels

    def tokens(self) -> list[str]:
        return sorted(self.channels)
