"""Operator control HTTP API (aiohttp.web)."""

from __future__ import annotations

import hashlib
import hmac
import inspect
import json
import logging
from typing import Any, Awaitable, Callable

from aiohttp import web

from config import ApiSettings, ConfigError
from trading.controller import TradingController
from utils.audit_log import redact
from utils.errors import NotFoundError, TradingError, ValidationError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
ACTOR_HEADER = "X-Actor"

Handler = Callable[[dict[str, Any], web.Request], Any]


def ok(data: Any = None, *, status: int = 200) -> web.Response:
    return web.json_response({"success": True, "error": None, "code": None, "data": data}, status=status, dumps=_dumps)


def fail(error: str, code: str, *, status: int) -> web.Response:
    return web.json_response({"success": False, "error": error, "code": code, "data": None}, status=status, dumps=_dumps)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


def _int_query(request: web.Request, name: str, default: int, upper: int = 1000) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return max(1, min(upper, int(raw)))
    except ValueError:
        raise ValidationError(f"{name} must be an integer", code="VALIDATION_INVALID_NUMBER") from None


class ControlApiServer:
    def __init__(self, controller: TradingController, settings: ApiSettings) -> None:
        self.controller = controller
        self.ctx = controller.ctx
        self.settings = settings
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    # Wiring

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        r = app.router
        r.add_get("/health", self._health)
        r.add_get("/status", self._status)
        r.add_get("/positions", self._positions)
        r.add_get("/trades", self._trades)
        r.add_get("/opportunities", self._opportunities)
        r.add_get("/opportunities/stats", self._opportunity_stats)
        r.add_get("/learning/weights", self._weights)
        r.add_get("/learning/parameters", self._learning_parameters)
        r.add_get("/learning/patterns", self._patterns)
        r.add_get("/blacklist", self._blacklist)
        r.add_get("/safety/rejections", self._rejections)
        r.add_get("/wallets", self._wallets)
        r.add_get("/rpc/nodes", self._rpc_nodes)
        r.add_get("/executions", self._executions)
        r.add_get("/paper", self._paper)
        r.add_get("/settings", self._settings)
        r.add_get("/alerts", self._alerts)
        r.add_get("/audit", self._audit)

        mutations: list[tuple[str, str, str, Handler]] = [
            ("POST", "/control/start", "bot_start", self._do_start),
            ("POST", "/control/stop", "bot_stop", self._do_stop),
            ("POST", "/control/pause", "bot_pause", self._do_pause),
            ("POST", "/control/resume", "bot_resume", self._do_resume),
            ("POST", "/control/kill", "kill_switch_activate", self._do_kill),
            ("POST", "/control/kill/reset", "kill_switch_reset", self._do_kill_reset),
            ("POST", "/risk/resume", "risk_resume", self._do_risk_resume),
            ("POST", "/settings", "settings_update", self._do_settings),
            ("POST", "/regime/override", "regime_override_set", self._do_regime_override),
            ("DELETE", "/regime/override", "regime_override_clear", self._do_regime_clear),
            ("POST", "/analyze", "token_analyze", self._do_analyze),
            ("POST", "/opportunities", "opportunity_submit", self._do_submit),
            ("POST", "/wallets", "wallet_add", self._do_wallet_add),
            ("PATCH", "/wallets/{address}", "wallet_update", self._do_wallet_update),
            ("DELETE", "/wallets/{address}", "wallet_remove", self._do_wallet_remove),
            ("POST", "/blacklist", "blacklist_add", self._do_blacklist_add),
            ("DELETE", "/blacklist/{address}", "blacklist_remove", self._do_blacklist_remove),
            ("POST", "/learning/weights/reset", "weights_reset", self._do_weights_reset),
            ("POST", "/learning/weights/{name}/lock", "weight_lock", self._do_weight_lock),
            ("POST", "/learning/weights/{name}/unlock", "weight_unlock", self._do_weight_unlock),
            ("POST", "/learning/mode", "learning_mode", self._do_learning_mode),
            ("POST", "/positions/{position_id}/close", "position_close", self._do_position_close),
            ("POST", "/paper/pause", "paper_pause", self._do_paper_pause),
            ("POST", "/paper/resume", "paper_resume", self._do_paper_resume),
            ("POST", "/paper/reset", "paper_reset", self._do_paper_reset),
            ("POST", "/paper/close", "paper_close", self._do_paper_close),
            ("POST", "/rpc/promote", "rpc_promote", self._do_rpc_promote),
        ]
        for method, path, action, handler in mutations:
            r.add_route(method, path, self._mutation(action, handler))
        return app

    async def start(self) -> None:
        if not self.settings.api_keys:
            raise ConfigError("CONTROL_API_KEYS is required to expose the control API")
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.settings.host, self.settings.port)
        await self.site.start()
        logger.info("Control API listening on %s:%s", self.settings.host, self.settings.port)

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
        self.runner = None
        self.site = None

    # Plumbing

    def _key_valid(self, presented: str) -> bool:
        return any(hmac.compare_digest(presented.encode(), key.encode()) for key in self.settings.api_keys)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]):
        if request.path != "/health":
            presented = request.headers.get(API_KEY_HEADER, "")
            if not presented or not self._key_valid(presented):
                logger.warning("API_UNAUTHORIZED method=%s path=%s remote=%s", request.method, request.path, request.remote)
                return fail("unauthorized", "UNAUTHORIZED", status=401)
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except TradingError as exc:
            return fail(exc.message, exc.code, status=exc.http_status)
        except ConfigError as exc:
            return fail(str(exc), "CONFIG_INVALID", status=400)
        except Exception:
            logger.exception("API_ERROR method=%s path=%s", request.method, request.path)
            return fail("internal error", "INTERNAL_ERROR", status=500)

    @staticmethod
    def _actor(request: web.Request) -> str:
        named = request.headers.get(ACTOR_HEADER, "").strip()
        key = request.headers.get(API_KEY_HEADER, "")
        fingerprint = hashlib.sha256(key.encode()).hexdigest()[:8]
        return f"{named[:64]}@api:{fingerprint}" if named else f"api:{fingerprint}"

    @staticmethod
    async def _payload(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("request body must be JSON", code="VALIDATION_INVALID_JSON") from None
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object", code="VALIDATION_INVALID_JSON")
        return payload

    def _mutation(self, action: str, handler: Handler) -> Callable[[web.Request], Awaitable[web.Response]]:
        """Run a state change and write exactly one audit entry for it, success or not."""

        async def run(request: web.Request) -> web.Response:
            actor = self._actor(request)
            details: dict[str, Any] = {"path": request.path, "params": dict(request.match_info)}
            try:
                payload = await self._payload(request)
                details["request"] = payload
                result = handler(payload, request)
                if inspect.isawaitable(result):
                    result = await result
            except TradingError as exc:
                details["error_code"] = exc.code
                self.ctx.audit.record(action, details, actor=actor, status="failed")
                return fail(exc.message, exc.code, status=exc.http_status)
            except ConfigError as exc:
                details["error_code"] = "CONFIG_INVALID"
                self.ctx.audit.record(action, details, actor=actor, status="failed")
                return fail(str(exc), "CONFIG_INVALID", status=400)
            except Exception:
                details["error_code"] = "INTERNAL_ERROR"
                self.ctx.audit.record(action, details, actor=actor, status="failed")
                raise
            self.ctx.audit.record(action, details, actor=actor, status="success")
            return ok(result)

        return run

    # Reads

    async def _health(self, request: web.Request) -> web.Response:
        return ok(self.controller.health())

    async def _status(self, request: web.Request) -> web.Response:
        data = self.controller.status()
        data["wallet"] = await self.controller.wallet_status()
        return ok(data)

    async def _positions(self, request: web.Request) -> web.Response:
        rows = []
        for book in self.ctx.books():
            for position in book.open_positions():
                row = position.to_dict()
                row["book"] = book.label
                row["exit_in_flight"] = book.in_flight(position.position_id)
                rows.append(row)
        return ok(rows)

    async def _trades(self, request: web.Request) -> web.Response:
        limit = _int_query(request, "limit", 50)
        label = request.query.get("book") or self.ctx.primary_book.label
        book = next((b for b in self.ctx.books() if b.label == label), None)
        if book is None:
            raise NotFoundError(f"unknown book: {label}", code="BOOK_NOT_FOUND")
        if self.ctx.store is not None:
            trades = self.ctx.store.list_trades(label, limit)
        else:
            trades = [t.to_dict() for t in book.recent_trades(limit)]
        return ok({"book": label, "trades": trades, "stats": book.stats()})

    async def _opportunities(self, request: web.Request) -> web.Response:
        limit = _int_query(request, "limit", 100)
        status = request.query.get("status") or None
        rows = self.ctx.opportunities.recent(limit=limit, status=status)
        return ok([o.to_dict() for o in rows])

    async def _opportunity_stats(self, request: web.Request) -> web.Response:
        return ok(self.ctx.opportunities.stats())

    async def _weights(self, request: web.Request) -> web.Response:
        return ok({"weights": self.ctx.weights.to_list(), "total": round(sum(self.ctx.weights.as_map().values()), 6)})

    async def _learning_parameters(self, request: web.Request) -> web.Response:
        return ok(self.ctx.learning.parameters())

    async def _patterns(self, request: web.Request) -> web.Response:
        return ok(self.ctx.learning.patterns())

    async def _blacklist(self, request: web.Request) -> web.Response:
        kind = request.query.get("kind") or None
        return ok([e.to_dict() for e in self.ctx.blacklist.entries(kind)])

    async def _rejections(self, request: web.Request) -> web.Response:
        limit = _int_query(request, "limit", 50, upper=200)
        return ok({"rejections": self.ctx.safety.recent_rejections(limit), "stats": self.ctx.safety.runtime_stats()})

    async def _wallets(self, request: web.Request) -> web.Response:
        return ok([w.to_dict() for w in self.ctx.wallets.wallets()])

    async def _rpc_nodes(self, request: web.Request) -> web.Response:
        rpc = self.ctx.rpc
        if rpc is None:
            return ok({"nodes": [], "congested": False, "failovers": 0})
        return ok({"nodes": rpc.snapshot(), "congested": rpc.is_congested(), "failovers": rpc.failovers})

    async def _executions(self, request: web.Request) -> web.Response:
        limit = _int_query(request, "limit", 50, upper=500)
        managers = [m for m in (self.ctx.execution, self.ctx.paper.execution) if m is not None]
        return ok({m.label: {"recent": m.recent(limit), "metrics": m.metrics()} for m in managers})

    async def _paper(self, request: web.Request) -> web.Response:
        return ok(self.ctx.paper.status())

    async def _settings(self, request: web.Request) -> web.Response:
        return ok(redact(self.ctx.settings.to_dict()))

    async def _alerts(self, request: web.Request) -> web.Response:
        limit = _int_query(request, "limit", 50, upper=200)
        return ok(self.ctx.alerts.recent(limit))

    async def _audit(self, request: web.Request) -> web.Response:
        limit = _int_query(request, "limit", 100)
        action = request.query.get("action") or None
        if self.ctx.store is not None:
            return ok(self.ctx.store.list_audit(limit, action))
        return ok([e.to_dict() for e in self.ctx.audit.recent(limit, action)])

    # Mutations

    async def _do_start(self, payload: dict[str, Any], request: web.Request) -> Any:
        return await self.controller.start()

    async def _do_stop(self, payload: dict[str, Any], request: web.Request) -> Any:
        return await self.controller.stop()

    def _do_pause(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.controller.pause(str(payload.get("reason") or "operator"))

    def _do_resume(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.controller.resume()

    async def _do_kill(self, payload: dict[str, Any], request: web.Request) -> Any:
        reason = str(payload.get("reason") or "operator kill")
        return await self.controller.kill(reason, actor=self._actor(request))

    def _do_kill_reset(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.controller.reset_kill_switch(actor=self._actor(request))

    def _do_risk_resume(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.risk.resume(actor=self._actor(request)).to_dict()

    def _do_settings(self, payload: dict[str, Any], request: web.Request) -> Any:
        section = str(payload.get("section") or "")
        fields = payload.get("fields")
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("fields must be a non-empty object", code="VALIDATION_INVALID_SETTINGS")
        updated = self.ctx.settings.updated(section, fields)
        self.ctx.apply_settings(updated)
        logger.info("SETTINGS_UPDATED section=%s fields=%s", section, sorted(fields))
        return redact(updated.to_dict()[section])

    def _do_regime_override(self, payload: dict[str, Any], request: web.Request) -> Any:
        regime = str(payload.get("regime") or "").strip().upper()
        try:
            state = self.ctx.regime.set_override(regime, actor=self._actor(request))
        except ValueError:
            raise ValidationError(f"unknown regime: {regime!r}", code="VALIDATION_INVALID_REGIME") from None
        return state.to_dict()

    def _do_regime_clear(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.regime.clear_override(actor=self._actor(request)).to_dict()

    async def _do_analyze(self, payload: dict[str, Any], request: web.Request) -> Any:
        return await self.controller.analyze(payload)

    def _do_submit(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.controller.submit_opportunity(payload).to_dict()

    def _do_wallet_add(self, payload: dict[str, Any], request: web.Request) -> Any:
        wallet = self.ctx.wallets.add(
            str(payload.get("address") or ""),
            tier=payload.get("tier", 2),
            label=str(payload.get("label") or ""),
            score=payload.get("score", 50.0),
        )
        return wallet.to_dict()

    def _do_wallet_update(self, payload: dict[str, Any], request: web.Request) -> Any:
        wallet = self.ctx.wallets.update(
            request.match_info["address"],
            tier=payload.get("tier"),
            active=payload.get("active"),
            score=payload.get("score"),
        )
        return wallet.to_dict()

    def _do_wallet_remove(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.wallets.remove(request.match_info["address"]).to_dict()

    def _do_blacklist_add(self, payload: dict[str, Any], request: web.Request) -> Any:
        ttl = payload.get("ttl_seconds")
        try:
            ttl_seconds = float(ttl) if ttl not in (None, "") else None
        except (TypeError, ValueError):
            raise ValidationError("ttl_seconds must be numeric", code="VALIDATION_INVALID_NUMBER") from None
        entry = self.ctx.blacklist.add(
            str(payload.get("address") or ""),
            str(payload.get("reason") or "operator"),
            kind=str(payload.get("kind") or "token"),
            ttl_seconds=ttl_seconds,
            added_by=self._actor(request),
        )
        return entry.to_dict()

    def _do_blacklist_remove(self, payload: dict[str, Any], request: web.Request) -> Any:
        address = request.match_info["address"]
        kind = request.query.get("kind") or str(payload.get("kind") or "token")
        if not self.ctx.blacklist.remove(address, kind=kind):
            raise NotFoundError(f"{kind} {address} is not blacklisted", code="BLACKLIST_NOT_FOUND")
        return {"address": address.lower(), "kind": kind, "removed": True}

    def _do_weights_reset(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.weights.reset()

    def _do_weight_lock(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.weights.lock(request.match_info["name"]).to_dict()

    def _do_weight_unlock(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.weights.unlock(request.match_info["name"]).to_dict()

    def _do_learning_mode(self, payload: dict[str, Any], request: web.Request) -> Any:
        mode = self.ctx.learning.set_mode(str(payload.get("mode") or ""))
        return {"mode": mode.value}

    async def _do_position_close(self, payload: dict[str, Any], request: web.Request) -> Any:
        position_id = request.match_info["position_id"]
        for book in self.ctx.books():
            if book.get(position_id) is not None:
                result = await book.close_position(position_id)
                return result.to_dict()
        raise NotFoundError(f"no open position {position_id}", code="POSITION_NOT_FOUND")

    def _do_paper_pause(self, payload: dict[str, Any], request: web.Request) -> Any:
        self.ctx.paper.pause()
        return self.ctx.paper.status()

    def _do_paper_resume(self, payload: dict[str, Any], request: web.Request) -> Any:
        self.ctx.paper.resume()
        return self.ctx.paper.status()

    def _do_paper_reset(self, payload: dict[str, Any], request: web.Request) -> Any:
        return self.ctx.paper.reset()

    async def _do_paper_close(self, payload: dict[str, Any], request: web.Request) -> Any:
        result = await self.ctx.paper.close(str(payload.get("token_address") or ""))
        return result.to_dict()

    async def _do_rpc_promote(self, payload: dict[str, Any], request: web.Request) -> Any:
        if self.ctx.rpc is None:
            raise NotFoundError("rpc gateway is not configured in paper mode", code="RPC_NOT_CONFIGURED")
        node = await self.ctx.rpc.promote(str(payload.get("name") or ""))
        return node.to_dict()
