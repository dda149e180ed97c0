"""
Tests for the REST API layer.

Covers:
  - Token bucket rate limiter
  - API key enforcement on POST routes
  - Signed create / withdraw / cancel round trips
  - Error rendering (status codes and JSON bodies)
  - Query routes: zero record, order lookup, balance, verify, events
"""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from hashlock_core.api import APIServer, _TokenBucket
from hashlock_core.auth import Signer
from hashlock_core.config import APIConfig
from hashlock_core.escrow_id import ZERO_ESCROW_ID
from hashlock_core.hashlock import hash_secret
from hashlock_core.service import EscrowService
from hashlock_core.token import TokenRegistry

CUSTODY = "rCustody"
TOKEN = "rTokenT"
T0 = 1_700_000_000
SECRET = bytes.fromhex("22" * 32)

ALICE = Signer.from_seed("alice")
BOB = Signer.from_seed("bob")
MALLORY = Signer.from_seed("mallory")


# ─── Helpers ────────────────────────────────────────────────────────

class _Clock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)


def _build_api_config(**overrides) -> APIConfig:
    defaults = {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 0,
        "api_key": "",
        "rate_limit_rpm": 0,
        "max_body_bytes": 65_536,
    }
    defaults.update(overrides)
    return APIConfig(**defaults)


def _make_service() -> EscrowService:
    reg = TokenRegistry(CUSTODY)
    reg.add_book(TOKEN).mint(ALICE.address, 1_000)
    return EscrowService(reg)


def _make_test_client(api_config=None, service=None, clock=None):
    service = service or _make_service()
    clock = clock or _Clock()
    api = APIServer(service, host="127.0.0.1", port=0, api_config=api_config, clock=clock)
    return TestClient(TestServer(api.build_app())), service, clock


def _create_payload(**overrides) -> dict:
    payload = {
        "token_address": TOKEN,
        "amount": 100,
        "secret_hash": hash_secret(SECRET),
        "timelock": T0 + 3600,
        "receiver": BOB.address,
        "order_id": 42,
    }
    payload.update(overrides)
    return payload


async def _create(client, signer=ALICE, **overrides):
    return await client.post(
        "/tx/escrow/create", json=signer.signed_request(_create_payload(**overrides)),
    )


# ═══════════════════════════════════════════════════════════════════
#  Rate limiter
# ═══════════════════════════════════════════════════════════════════

class TestTokenBucket:
    def test_unlimited_always_allows(self):
        bucket = _TokenBucket(0)
        for _ in range(500):
            assert bucket.allow("1.2.3.4")

    def test_allows_up_to_limit(self):
        bucket = _TokenBucket(3)
        for _ in range(3):
            assert bucket.allow("1.2.3.4")
        assert not bucket.allow("1.2.3.4")
        assert bucket.allow("5.6.7.8")

    def test_refill(self):
        bucket = _TokenBucket(60)
        for _ in range(60):
            bucket.allow("x")
        assert not bucket.allow("x")
        bucket._buckets["x"][1] -= 2.0
        assert bucket.allow("x")

    @pytest.mark.asyncio
    async def test_rate_limit_returns_429(self):
        client, _, _ = _make_test_client(_build_api_config(rate_limit_rpm=2))
        async with client:
            await client.get("/health")
            await client.get("/health")
            resp = await client.get("/health")
            assert resp.status == 429
            assert resp.headers.get("Retry-After") == "5"


# ═══════════════════════════════════════════════════════════════════
#  API key
# ═══════════════════════════════════════════════════════════════════

class TestAPIKeyAuth:
    @pytest.mark.asyncio
    async def test_get_allowed_without_key(self):
        client, _, _ = _make_test_client(_build_api_config(api_key="k3y"))
        async with client:
            resp = await client.get("/health")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_post_rejected_without_key(self):
        client, service, _ = _make_test_client(_build_api_config(api_key="k3y"))
        async with client:
            resp = await _create(client)
            assert resp.status == 401
        assert service.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_post_allowed_with_header_key(self):
        client, _, _ = _make_test_client(_build_api_config(api_key="k3y"))
        async with client:
            resp = await client.post(
                "/tx/escrow/create",
                json=ALICE.signed_request(_create_payload()),
                headers={"X-API-Key": "k3y"},
            )
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_query_param_key_ignored(self):
        client, _, _ = _make_test_client(_build_api_config(api_key="k3y"))
        async with client:
            resp = await client.post(
                "/tx/escrow/create?api_key=k3y",
                json=ALICE.signed_request(_create_payload()),
            )
            assert resp.status == 401


# ═══════════════════════════════════════════════════════════════════
#  Signed transactions
# ═══════════════════════════════════════════════════════════════════

class TestSignedFlow:
    @pytest.mark.asyncio
    async def test_create_then_withdraw(self):
        client, service, _ = _make_test_client()
        async with client:
            resp = await _create(client)
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "escrow_created"
            escrow_id = data["escrow_id"]

            resp = await client.get(f"/escrow/{escrow_id}")
            record = await resp.json()
            assert record["sender"] == ALICE.address
            assert record["state"] == "locked"

            resp = await client.post(
                "/tx/escrow/withdraw",
                json=BOB.signed_request({"escrow_id": escrow_id, "secret": SECRET.hex()}),
            )
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "escrow_withdrawn"
            assert data["escrow"]["withdrawn"] is True

            resp = await client.get("/events")
            events = (await resp.json())["events"]
            assert [e["type"] for e in events] == ["EscrowCreated", "EscrowWithdrawn"]
            assert events[1]["secret"] == "0x" + SECRET.hex()
        assert service.tokens.books[TOKEN].balance_of(BOB.address) == 100

    @pytest.mark.asyncio
    async def test_cancel_after_timelock(self):
        client, service, clock = _make_test_client()
        async with client:
            escrow_id = (await (await _create(client)).json())["escrow_id"]
            cancel = ALICE.signed_request({"escrow_id": escrow_id})

            resp = await client.post("/tx/escrow/cancel", json=cancel)
            assert resp.status == 409
            assert (await resp.json())["error"] == "timelock_not_expired"

            clock.now = T0 + 3600
            resp = await client.get(f"/escrow/{escrow_id}/can_cancel")
            assert (await resp.json())["can_cancel"] is True

            resp = await client.post("/tx/escrow/cancel", json=cancel)
            assert resp.status == 200
            assert (await resp.json())["escrow"]["cancelled"] is True
        assert service.tokens.books[TOKEN].balance_of(ALICE.address) == 1_000

    @pytest.mark.asyncio
    async def test_wrong_secret_is_403(self):
        client, _, _ = _make_test_client()
        async with client:
            escrow_id = (await (await _create(client)).json())["escrow_id"]
            resp = await client.post(
                "/tx/escrow/withdraw",
                json=BOB.signed_request({"escrow_id": escrow_id, "secret": "33" * 32}),
            )
            assert resp.status == 403
            body = await resp.json()
            assert body["error"] == "invalid_proof"
            assert body["escrow_id"] == escrow_id

    @pytest.mark.asyncio
    async def test_only_receiver_withdraws(self):
        client, _, _ = _make_test_client()
        async with client:
            escrow_id = (await (await _create(client)).json())["escrow_id"]
            resp = await client.post(
                "/tx/escrow/withdraw",
                json=MALLORY.signed_request({"escrow_id": escrow_id, "secret": SECRET.hex()}),
            )
            assert resp.status == 403
            assert (await resp.json())["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_duplicate_order_is_409(self):
        client, _, _ = _make_test_client()
        async with client:
            assert (await _create(client)).status == 200
            resp = await _create(client, amount=5)
            assert resp.status == 409
            assert (await resp.json())["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_402(self):
        client, service, _ = _make_test_client()
        async with client:
            resp = await _create(client, amount=5_000)
            assert resp.status == 402
        assert service.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_escrow_withdraw_is_404(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await client.post(
                "/tx/escrow/withdraw",
                json=BOB.signed_request({"escrow_id": "0x" + "ab" * 32, "secret": SECRET.hex()}),
            )
            assert resp.status == 404


# ═══════════════════════════════════════════════════════════════════
#  Input validation
# ═══════════════════════════════════════════════════════════════════

class TestInputValidation:
    @pytest.mark.asyncio
    async def test_tampered_signature_is_403(self):
        client, _, _ = _make_test_client()
        async with client:
            env = ALICE.signed_request(_create_payload())
            env["payload"]["amount"] = 1
            resp = await client.post("/tx/escrow/create", json=env)
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await client.post(
                "/tx/escrow/create", data=b"{not json",
                headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_missing_payload(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await client.post("/tx/escrow/create", json={"public_key": "", "signature": ""})
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_float_amount_rejected(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await _create(client, amount=1.5)
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_past_timelock_rejected(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await _create(client, timelock=T0)
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_oversized_body_is_413(self):
        client, _, _ = _make_test_client(_build_api_config(max_body_bytes=256))
        async with client:
            resp = await client.post("/escrow/0x01/verify", json={"secret": "ab" * 500})
            assert resp.status == 413


# ═══════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    @pytest.mark.asyncio
    async def test_health(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await client.get("/health")
            data = await resp.json()
            assert data["ok"] is True
            assert data["custody"] == CUSTODY
            assert TOKEN in data["tokens"]
            assert data["pending_escrows"] == 0

    @pytest.mark.asyncio
    async def test_unknown_escrow_is_zero_record(self):
        client, _, _ = _make_test_client()
        async with client:
            resp = await client.get("/escrow/0x" + "cd" * 32)
            assert resp.status == 200
            data = await resp.json()
            assert data["amount"] == 0
            assert data["state"] == "absent"

    @pytest.mark.asyncio
    async def test_order_lookup(self):
        client, _, _ = _make_test_client()
        async with client:
            escrow_id = (await (await _create(client)).json())["escrow_id"]
            data = await (await client.get("/escrow/order/42")).json()
            assert data["escrow_id"] == escrow_id
            assert data["escrow"]["order_id"] == 42
            data = await (await client.get("/escrow/order/43")).json()
            assert data["escrow_id"] == ZERO_ESCROW_ID
            resp = await client.get("/escrow/order/abc")
            assert resp.status == 400
            for raw in ("1_000", "%2042", "%2B42", "\u0664\u0662"):
                resp = await client.get(f"/escrow/order/{raw}")
                assert resp.status == 400, raw

    @pytest.mark.asyncio
    async def test_balance_and_verify(self):
        client, _, _ = _make_test_client()
        async with client:
            escrow_id = (await (await _create(client)).json())["escrow_id"]
            data = await (await client.get(f"/escrow/{escrow_id}/balance")).json()
            assert data["custody_balance"] == 100
            assert data["locked_amount"] == 100

            resp = await client.post(f"/escrow/{escrow_id}/verify", json={"secret": SECRET.hex()})
            assert (await resp.json())["valid"] is True
            resp = await client.post(f"/escrow/{escrow_id}/verify", json={"secret": "00"})
            assert (await resp.json())["valid"] is False

    @pytest.mark.asyncio
    async def test_account_escrows(self):
        client, _, _ = _make_test_client()
        async with client:
            await _create(client)
            data = await (await client.get(f"/account/{BOB.address}/escrows")).json()
            assert len(data["escrows"]) == 1
            data = await (await client.get(f"/account/{MALLORY.address}/escrows")).json()
            assert data["escrows"] == []

    @pytest.mark.asyncio
    async def test_events_paging(self):
        client, _, _ = _make_test_client()
        async with client:
            await _create(client, order_id=1)
            await _create(client, order_id=2)
            data = await (await client.get("/events?since=1")).json()
            assert [e["seq"] for e in data["events"]] == [2]
            assert data["last_seq"] == 2
            data = await (await client.get("/events?limit=1")).json()
            assert [e["seq"] for e in data["events"]] == [1]
            for raw in ("%2B1", "%201", "1_0"):
                resp = await client.get(f"/events?since={raw}")
                assert resp.status == 400, raw
