"""
Shared pytest fixtures for the Hashlock test suite.
"""

import pytest

from hashlock_core.context import ExecutionContext
from hashlock_core.escrow import MemoryEscrowStore
from hashlock_core.events import EventLog
from hashlock_core.hashlock import hash_secret
from hashlock_core.service import EscrowService
from hashlock_core.token import TokenRegistry

CUSTODY = "rCustody"
TOKEN = "rTokenT"
T0 = 1_700_000_000
SECRET = bytes.fromhex("11" * 32)


@pytest.fixture
def registry():
    """Token registry with a funded ``rTokenT`` book."""
    reg = TokenRegistry(CUSTODY)
    book = reg.add_book(TOKEN)
    book.mint("rSender", 1_000)
    book.mint("rOther", 500)
    return reg


@pytest.fixture
def book(registry):
    return registry.books[TOKEN]


@pytest.fixture
def store():
    return MemoryEscrowStore()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def service(registry, store, events):
    return EscrowService(registry, store=store, events=events)


@pytest.fixture
def sender_ctx():
    return ExecutionContext(caller="rSender", now=T0)


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def secret_hash():
    return hash_secret(SECRET)


@pytest.fixture
def created(service, sender_ctx, secret_hash):
    """Scenario baseline: 100 T locked for rReceiver, order 42, one hour."""
    return service.create_escrow(
        sender_ctx, TOKEN, 100, secret_hash, T0 + 3600, "rReceiver", 42,
    )
