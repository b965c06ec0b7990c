"""
REST / HTTP API server for StakeFlow.

Built on ``aiohttp``.  Handlers only validate request shape and delegate
to ``StakingEngine`` / ``AdminControls``; engine errors are mapped to HTTP
statuses by ``error_middleware``.

Endpoints
---------
GET  /health                               Liveness + pool count
GET  /stats                                Aggregate counters
GET  /pools/{pool_id}                      Pool record + live accumulator
GET  /pools/{pool_id}/users/{user_id}      Position + claimable rewards
GET  /pools/{pool_id}/pending/{user_id}    Claimable rewards only
GET  /users/{user_id}/positions            Every position of a user
GET  /strategies/{strategy_id}             Strategy record
GET  /events                               Recent events (?limit=&type=&user=)
POST /tx/stake                             {"user", "pool_id", "amount"}
POST /tx/withdraw                          {"user", "pool_id", "amount"?}
POST /tx/harvest                           {"user", "pool_id"}
POST /tx/restake                           {"user", "pool_id"}
POST /tx/emergency_withdraw                {"user", "pool_id"}
POST /tx/strategy                          {"user", "strategy_id", "amount"}
POST /admin/pools                          create a pool
POST /admin/pools/{pool_id}/rate           {"reward_rate"}
POST /admin/pools/{pool_id}/toggle
POST /admin/pools/{pool_id}/capacity       {"capacity"}
POST /admin/strategies                     {"allocations": [[pool_id, bps], ...], "name"}
POST /admin/strategies/{strategy_id}/toggle
POST /admin/pause                          {"paused": true|false}
POST /admin/log_level                      {"level"}

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key``
  (``hmac.compare_digest``).
- Every /tx/ request acts for the body's ``"user"`` and must carry
  ``X-User-Signature`` and ``X-User-Nonce``: that user's registered key
  signing ``access.signing_payload(method, path, nonce, raw body)``.
  Users with no registered key cannot act over HTTP.
- Admin endpoints take ``X-Admin-Signature`` and ``X-Admin-Nonce`` the
  same way with the owner key.  With no owner key configured they answer
  403.
- Nonces are millisecond timestamps, strictly increasing per key and
  within the configured window of server time.
- Per-IP token-bucket rate limiter, CORS allow-list, body size cap.

Usage:
    api = APIServer(engine, admin, host="127.0.0.1", port=8080)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from stakeflow_core.access import signing_payload
from stakeflow_core.errors import (
    InvariantViolation,
    NotOwnerError,
    PausedError,
    ReentrancyError,
    StakingError,
    TransferFailure,
)
from stakeflow_core.logging_config import set_level

if TYPE_CHECKING:
    from stakeflow_core.admin import AdminControls
    from stakeflow_core.config import APIConfig
    from stakeflow_core.engine import StakingEngine

logger = logging.getLogger("stakeflow_api")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_uint(value: Any, name: str = "value") -> int:
    """Non-negative integer from JSON (int or decimal string); floats rejected."""
    if isinstance(value, bool):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().isdecimal():
        result = int(value.strip())
    else:
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if result < 0:
        raise web.HTTPBadRequest(text=f"{name} must be non-negative")
    return result


def _path_uint(request: web.Request, name: str) -> int:
    return _safe_uint(request.match_info[name], name)


def _require_str(body: dict, name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value.strip():
        raise web.HTTPBadRequest(text=f"{name} required")
    return value.strip()


def _parse_json_object(raw: bytes) -> dict:
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON object expected")
    return body


def _nonce_header(request: web.Request, header: str) -> int:
    raw = request.headers.get(header, "").strip()
    if not raw.isdecimal():
        raise web.HTTPForbidden(text=f"Missing or malformed {header}")
    return int(raw)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

_ERROR_STATUS: list[tuple[type[StakingError], int]] = [
    (NotOwnerError, 403),
    (PausedError, 409),
    (ReentrancyError, 409),
    (TransferFailure, 402),
    (InvariantViolation, 500),
]


def status_for(exc: StakingError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render engine errors as ``{"error": code, "message": ...}``."""
    try:
        return await handler(request)
    except StakingError as exc:
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {exc}")
            message = "internal accounting error"
        else:
            message = str(exc)
        return web.json_response({"error": exc.code, "message": message}, status=status)


def _make_rate_limit_middleware(bucket: _TokenBucket):
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
    """Require ``X-API-Key`` on POST/PUT/DELETE (header only, never query)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """CORS headers for an explicit origin allow-list (``*`` is ignored)."""
    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)
        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, X-API-Key, X-Admin-Signature, X-Admin-Nonce, "
                "X-User-Signature, X-User-Nonce"
            )
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is not None:
        if cfg.rate_limit_rpm > 0:
            middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        if cfg.cors_origins:
            middlewares.append(_make_cors_middleware(cfg.cors_origins))
        if cfg.api_key:
            middlewares.append(_make_api_key_middleware(cfg.api_key))
    middlewares.append(error_middleware)
    return middlewares


class APIServer:
    """Thin aiohttp wrapper around a ``StakingEngine``."""

    def __init__(
        self,
        engine: StakingEngine,
        admin: AdminControls,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.engine = engine
        self.admin = admin
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        max_body = self._api_config.max_body_bytes if self._api_config else 1_048_576
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
        app.router.add_get("/stats", self._stats)
        app.router.add_get("/pools/{pool_id}", self._pool_info)
        app.router.add_get("/pools/{pool_id}/users/{user_id}", self._user_info)
        app.router.add_get("/pools/{pool_id}/pending/{user_id}", self._pending)
        app.router.add_get("/users/{user_id}/positions", self._user_positions)
        app.router.add_get("/strategies/{strategy_id}", self._strategy_info)
        app.router.add_get("/events", self._events)
        # User mutations
        app.router.add_post("/tx/stake", self._submit_stake)
        app.router.add_post("/tx/withdraw", self._submit_withdraw)
        app.router.add_post("/tx/harvest", self._submit_harvest)
        app.router.add_post("/tx/restake", self._submit_restake)
        app.router.add_post("/tx/emergency_withdraw", self._submit_emergency_withdraw)
        app.router.add_post("/tx/strategy", self._submit_strategy)
        # Admin
        app.router.add_post("/admin/pools", self._admin_create_pool)
        app.router.add_post("/admin/pools/{pool_id}/rate", self._admin_pool_rate)
        app.router.add_post("/admin/pools/{pool_id}/toggle", self._admin_pool_toggle)
        app.router.add_post("/admin/pools/{pool_id}/capacity", self._admin_pool_capacity)
        app.router.add_post("/admin/strategies", self._admin_create_strategy)
        app.router.add_post(
            "/admin/strategies/{strategy_id}/toggle", self._admin_strategy_toggle,
        )
        app.router.add_post("/admin/pause", self._admin_pause)
        app.router.add_post("/admin/log_level", self._admin_log_level)

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "pools": len(self.engine.state.pools),
            "paused": self.engine.access.paused,
            "busy": self.engine.guard.busy,
        })

    async def _stats(self, _request: web.Request) -> web.Response:
        return web.json_response(self.engine.stats(), dumps=_json_dumps)

    async def _pool_info(self, request: web.Request) -> web.Response:
        pool_id = _path_uint(request, "pool_id")
        return web.json_response(self.engine.pool_info(pool_id), dumps=_json_dumps)

    async def _user_info(self, request: web.Request) -> web.Response:
        pool_id = _path_uint(request, "pool_id")
        info = self.engine.user_info(pool_id, request.match_info["user_id"])
        return web.json_response(info, dumps=_json_dumps)

    async def _pending(self, request: web.Request) -> web.Response:
        pool_id = _path_uint(request, "pool_id")
        user_id = request.match_info["user_id"]
        amount = self.engine.pending_rewards(pool_id, user_id)
        return web.json_response({"pool_id": pool_id, "user_id": user_id, "pending": amount})

    async def _user_positions(self, request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        return web.json_response(
            {"user_id": user_id, "positions": self.engine.user_positions(user_id)},
            dumps=_json_dumps,
        )

    async def _strategy_info(self, request: web.Request) -> web.Response:
        strategy_id = _path_uint(request, "strategy_id")
        return web.json_response(self.engine.strategy_info(strategy_id), dumps=_json_dumps)

    async def _events(self, request: web.Request) -> web.Response:
        limit = min(_safe_uint(request.query.get("limit", "100"), "limit"), 1000)
        events = self.engine.events.recent(
            limit=limit,
            event_type=request.query.get("type"),
            user_id=request.query.get("user"),
        )
        return web.json_response(
            {"events": [e.to_dict() for e in events], "count": len(events)},
            dumps=_json_dumps,
        )

    # ── request authentication ───────────────────────────────────

    async def _user_body(self, request: web.Request) -> tuple[str, dict]:
        """Authenticate the acting user's signature and return ``(user, body)``."""
        raw = await request.read()
        body = _parse_json_object(raw)
        user = _require_str(body, "user")
        access = self.engine.access
        public_key = access.user_public_keys.get(user, "")
        if not public_key:
            raise web.HTTPForbidden(text=f"No signing key registered for {user}")
        nonce = _nonce_header(request, "X-User-Nonce")
        message = signing_payload(request.method, request.path_qs, nonce, raw)
        if not access.verify_user_signature(
            user, message, request.headers.get("X-User-Signature", ""),
        ):
            raise web.HTTPForbidden(text=f"Invalid or missing signature for {user}")
        if not access.accept_nonce(public_key, nonce):
            raise web.HTTPForbidden(text="Stale or reused nonce")
        return user, body

    async def _admin_body(self, request: web.Request) -> tuple[str, dict]:
        """Authenticate the owner signature and return ``(caller, body)``."""
        access = self.engine.access
        if not access.owner_public_key:
            raise web.HTTPForbidden(text="Admin API disabled: no owner key configured")
        raw = await request.read()
        nonce = _nonce_header(request, "X-Admin-Nonce")
        message = signing_payload(request.method, request.path_qs, nonce, raw)
        if not access.verify_owner_signature(
            message, request.headers.get("X-Admin-Signature", ""),
        ):
            raise web.HTTPForbidden(text="Invalid or missing admin signature")
        if not access.accept_nonce(access.owner_public_key, nonce):
            raise web.HTTPForbidden(text="Stale or reused nonce")
        return access.owner, _parse_json_object(raw)

    # ── user mutation handlers ───────────────────────────────────

    async def _submit_stake(self, request: web.Request) -> web.Response:
        user, body = await self._user_body(request)
        result = self.engine.stake(
            _safe_uint(body.get("pool_id"), "pool_id"),
            user,
            _safe_uint(body.get("amount"), "amount"),
        )
        return web.json_response({"status": "staked", **result.to_dict()})

    async def _submit_withdraw(self, request: web.Request) -> web.Response:
        user, body = await self._user_body(request)
        result = self.engine.withdraw(
            _safe_uint(body.get("pool_id"), "pool_id"),
            user,
            _safe_uint(body.get("amount", 0), "amount"),
        )
        return web.json_response({"status": "withdrawn", **result.to_dict()})

    async def _submit_harvest(self, request: web.Request) -> web.Response:
        user, body = await self._user_body(request)
        result = self.engine.harvest(
            _safe_uint(body.get("pool_id"), "pool_id"), user,
        )
        return web.json_response({"status": "harvested", **result.to_dict()})

    async def _submit_restake(self, request: web.Request) -> web.Response:
        user, body = await self._user_body(request)
        result = self.engine.restake(
            _safe_uint(body.get("pool_id"), "pool_id"), user,
        )
        return web.json_response({"status": "restaked", **result.to_dict()})

    async def _submit_emergency_withdraw(self, request: web.Request) -> web.Response:
        user, body = await self._user_body(request)
        result = self.engine.emergency_withdraw(
            _safe_uint(body.get("pool_id"), "pool_id"), user,
        )
        return web.json_response({"status": "emergency_withdrawn", **result.to_dict()})

    async def _submit_strategy(self, request: web.Request) -> web.Response:
        user, body = await self._user_body(request)
        result = self.engine.execute_strategy(
            _safe_uint(body.get("strategy_id"), "strategy_id"),
            _safe_uint(body.get("amount"), "amount"),
            user,
        )
        return web.json_response({"status": "executed", **result.to_dict()})

    # ── admin handlers ───────────────────────────────────────────

    async def _admin_create_pool(self, request: web.Request) -> web.Response:
        caller, body = await self._admin_body(request)
        pool = self.admin.create_pool(
            caller,
            _require_str(body, "staking_asset"),
            _require_str(body, "reward_asset"),
            _safe_uint(body.get("reward_rate"), "reward_rate"),
            _safe_uint(body.get("capacity"), "capacity"),
        )
        return web.json_response(pool.to_dict(), status=201, dumps=_json_dumps)

    async def _admin_pool_rate(self, request: web.Request) -> web.Response:
        caller, body = await self._admin_body(request)
        pool = self.admin.update_pool_rate(
            caller,
            _path_uint(request, "pool_id"),
            _safe_uint(body.get("reward_rate"), "reward_rate"),
        )
        return web.json_response(pool.to_dict(), dumps=_json_dumps)

    async def _admin_pool_toggle(self, request: web.Request) -> web.Response:
        caller, _body = await self._admin_body(request)
        pool_id = _path_uint(request, "pool_id")
        active = self.admin.toggle_pool_active(caller, pool_id)
        return web.json_response({"pool_id": pool_id, "active": active})

    async def _admin_pool_capacity(self, request: web.Request) -> web.Response:
        caller, body = await self._admin_body(request)
        pool = self.admin.set_pool_capacity(
            caller,
            _path_uint(request, "pool_id"),
            _safe_uint(body.get("capacity"), "capacity"),
        )
        return web.json_response(pool.to_dict(), dumps=_json_dumps)

    async def _admin_create_strategy(self, request: web.Request) -> web.Response:
        caller, body = await self._admin_body(request)
        raw_allocs = body.get("allocations")
        if not isinstance(raw_allocs, list):
            raise web.HTTPBadRequest(text="allocations must be a list of [pool_id, bps]")
        allocations: list[tuple[int, int]] = []
        for entry in raw_allocs:
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                raise web.HTTPBadRequest(text="allocations must be a list of [pool_id, bps]")
            allocations.append((_safe_uint(entry[0], "pool_id"), _safe_uint(entry[1], "bps")))
        name = body.get("name", "")
        strategy = self.admin.create_strategy(
            caller, allocations, name=name if isinstance(name, str) else "",
        )
        return web.json_response(strategy.to_dict(), status=201, dumps=_json_dumps)

    async def _admin_strategy_toggle(self, request: web.Request) -> web.Response:
        caller, _body = await self._admin_body(request)
        strategy_id = _path_uint(request, "strategy_id")
        active = self.admin.toggle_strategy_active(caller, strategy_id)
        return web.json_response({"strategy_id": strategy_id, "active": active})

    async def _admin_pause(self, request: web.Request) -> web.Response:
        caller, body = await self._admin_body(request)
        paused = body.get("paused", True)
        if not isinstance(paused, bool):
            raise web.HTTPBadRequest(text="paused must be a boolean")
        if paused:
            self.admin.pause(caller)
        else:
            self.admin.unpause(caller)
        return web.json_response({"paused": self.engine.access.paused})

    async def _admin_log_level(self, request: web.Request) -> web.Response:
        _caller, body = await self._admin_body(request)
        level = body.get("level", "")
        if not isinstance(level, str):
            raise web.HTTPBadRequest(text="level must be a string")
        try:
            changed = set_level(level)
        except ValueError as exc:
            raise web.HTTPBadRequest(text=str(exc)) from exc
        return web.json_response({"level": level.upper(), "loggers": changed})
