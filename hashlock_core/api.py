"""
REST / HTTP API server for Hashlock nodes.

Built on ``aiohttp``.

Endpoints
---------
GET  /health                          Liveness and escrow counters
GET  /escrow/{escrow_id}              Escrow record (zero record if unknown)
GET  /escrow/order/{order_id}         Escrow id + record for an order id
GET  /escrow/{escrow_id}/can_cancel   Whether the sender may cancel now
GET  /escrow/{escrow_id}/balance      Custody balance and locked amount
POST /escrow/{escrow_id}/verify       Check a secret against the commitment
GET  /account/{address}/escrows       Live escrows for an address
GET  /events?since=N&limit=M          Event log page
POST /tx/escrow/create                Create an escrow        (signed)
POST /tx/escrow/withdraw              Withdraw with a secret  (signed)
POST /tx/escrow/cancel                Cancel after timelock   (signed)

Signed endpoints take ``{"public_key", "signature", "payload"}`` (see
``auth.Signer.signed_request``); the caller is the address of the key that
signed the payload.  The current time is the server's wall clock.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(service, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable

from aiohttp import web

from hashlock_core.auth import verify_request
from hashlock_core.context import ExecutionContext
from hashlock_core.errors import EscrowError, InvalidInput, Unauthorized

if TYPE_CHECKING:
    from hashlock_core.config import APIConfig
    from hashlock_core.service import EscrowService

logger = logging.getLogger("hashlock_api")

MAX_EVENTS_PAGE = 500


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int.  Accepts JSON ints and plain ASCII digit strings."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    # int() would also take "1_000", " 42 " and "+7"
    if isinstance(value, str) and not (value.isascii() and value.isdigit()):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _require_str(body: dict, name: str) -> str:
    value = body.get(name, "")
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} is required")
    return value


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST requests.

    Only reads the key from the ``X-API-Key`` header, never from query
    params, so keys stay out of access logs.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


@web.middleware
async def escrow_error_middleware(request: web.Request, handler):
    """Render ``EscrowError`` as a JSON body with the error's HTTP status."""
    try:
        return await handler(request)
    except EscrowError as exc:
        return web.json_response(exc.to_dict(), status=exc.http_status)


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is not None:
        if cfg.rate_limit_rpm > 0:
            middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        if cfg.api_key:
            middlewares.append(_make_api_key_middleware(cfg.api_key))
    middlewares.append(escrow_error_middleware)
    return middlewares


class APIServer:
    """Thin aiohttp wrapper around an ``EscrowService``."""

    def __init__(
        self,
        service: EscrowService,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self._api_config = api_config
        self._clock = clock or time.time
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        max_body = self._api_config.max_body_bytes if self._api_config else 65_536
        app = web.Application(
            middlewares=build_middlewares(self._api_config),
            client_max_size=max_body,
        )
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/escrow/order/{order_id}", self._escrow_by_order)
        app.router.add_get("/escrow/{escrow_id}", self._escrow)
        app.router.add_get("/escrow/{escrow_id}/can_cancel", self._can_cancel)
        app.router.add_get("/escrow/{escrow_id}/balance", self._balance)
        app.router.add_post("/escrow/{escrow_id}/verify", self._verify_secret)
        app.router.add_get("/account/{address}/escrows", self._account_escrows)
        app.router.add_get("/events", self._events)
        app.router.add_post("/tx/escrow/create", self._submit_escrow_create)
        app.router.add_post("/tx/escrow/withdraw", self._submit_escrow_withdraw)
        app.router.add_post("/tx/escrow/cancel", self._submit_escrow_cancel)

    def _now(self) -> int:
        return int(self._clock())

    async def _signed_context(self, request: web.Request) -> tuple[ExecutionContext, dict]:
        """Verify a signed envelope; return the caller context and payload."""
        body = await _read_json(request)
        payload = body.get("payload")
        if not isinstance(payload, dict):
            raise InvalidInput("payload must be a JSON object")
        public_key = body.get("public_key", "")
        signature = body.get("signature", "")
        if not isinstance(public_key, str) or not isinstance(signature, str):
            raise Unauthorized("public_key and signature must be hex strings")
        caller = verify_request(public_key, signature, payload)
        return ExecutionContext(caller=caller, now=self._now()), payload

    # ── queries ──────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "custody": self.service.custody,
            "tokens": self.service.tokens.tokens(),
            "pending_escrows": self.service.get_pending_count(),
            "last_event_seq": self.service.events.last_seq,
        })

    async def _escrow(self, request: web.Request) -> web.Response:
        escrow = self.service.get_escrow(request.match_info["escrow_id"])
        return web.json_response(escrow.to_dict())

    async def _escrow_by_order(self, request: web.Request) -> web.Response:
        order_id = _safe_int(request.match_info["order_id"], "order_id")
        escrow_id, escrow = self.service.get_escrow_by_order_id(order_id)
        return web.json_response({"escrow_id": escrow_id, "escrow": escrow.to_dict()})

    async def _can_cancel(self, request: web.Request) -> web.Response:
        escrow_id = request.match_info["escrow_id"]
        now = self._now()
        return web.json_response({
            "escrow_id": escrow_id,
            "now": now,
            "can_cancel": self.service.can_cancel(escrow_id, now),
        })

    async def _balance(self, request: web.Request) -> web.Response:
        escrow_id = request.match_info["escrow_id"]
        escrow = self.service.get_escrow(escrow_id)
        return web.json_response({
            "escrow_id": escrow_id,
            "token_address": escrow.token_address,
            "custody_balance": self.service.get_escrow_balance(escrow_id),
            "locked_amount": self.service.locked_amount(escrow_id),
        })

    async def _verify_secret(self, request: web.Request) -> web.Response:
        escrow_id = request.match_info["escrow_id"]
        body = await _read_json(request)
        secret = _require_str(body, "secret")
        return web.json_response({
            "escrow_id": escrow_id,
            "valid": self.service.verify_secret(escrow_id, secret),
        })

    async def _account_escrows(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        escrows = self.service.get_escrows_for_account(address)
        return web.json_response({
            "address": address,
            "escrows": [e.to_dict() for e in escrows],
        })

    async def _events(self, request: web.Request) -> web.Response:
        since = _safe_int(request.query.get("since", 0), "since")
        limit = _safe_int(request.query.get("limit", 100), "limit")
        limit = max(1, min(limit, MAX_EVENTS_PAGE))
        entries = self.service.events.since(since, limit)
        return web.json_response({
            "events": [e.to_dict() for e in entries],
            "last_seq": self.service.events.last_seq,
        })

    # ── signed transactions ──────────────────────────────────────

    async def _submit_escrow_create(self, request: web.Request) -> web.Response:
        """POST /tx/escrow/create"""
        ctx, payload = await self._signed_context(request)
        escrow_id = self.service.create_escrow(
            ctx,
            token_address=_require_str(payload, "token_address"),
            amount=_safe_int(payload.get("amount"), "amount"),
            secret_hash=_require_str(payload, "secret_hash"),
            timelock=_safe_int(payload.get("timelock"), "timelock"),
            receiver=_require_str(payload, "receiver"),
            order_id=_safe_int(payload.get("order_id"), "order_id"),
        )
        return web.json_response({"status": "escrow_created", "escrow_id": escrow_id})

    async def _submit_escrow_withdraw(self, request: web.Request) -> web.Response:
        """POST /tx/escrow/withdraw"""
        ctx, payload = await self._signed_context(request)
        escrow = self.service.withdraw(
            ctx,
            _require_str(payload, "escrow_id"),
            _require_str(payload, "secret"),
        )
        return web.json_response({"status": "escrow_withdrawn", "escrow": escrow.to_dict()})

    async def _submit_escrow_cancel(self, request: web.Request) -> web.Response:
        """POST /tx/escrow/cancel"""
        ctx, payload = await self._signed_context(request)
        escrow = self.service.cancel(ctx, _require_str(payload, "escrow_id"))
        return web.json_response({"status": "escrow_cancelled", "escrow": escrow.to_dict()})
