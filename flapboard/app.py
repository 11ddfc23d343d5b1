"""HTTP entrypoint for the high-score service.

This server does NOT serve the game client. Host the static game separately.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine

from aiohttp import web

from flapboard.board import protocol
from flapboard.board.config import ServerConfig
from flapboard.board.errors import AuthError, LeaderboardError, ServerMisconfiguration, StoreUnavailable, ValidationError
from flapboard.board.systems import abuse, admin, dedup, query
from flapboard.storage.base import ScoreStore, StoreBackend
from flapboard.storage.memory import MemoryBackend
from flapboard.storage.sqlite import SqliteBackend

logger = logging.getLogger(__name__)


def make_backend(config: ServerConfig) -> StoreBackend:
    if config.store == "memory":
        return MemoryBackend()
    if config.store == "sqlite":
        return SqliteBackend(config.sqlite_path, timeout=config.store_timeout)
    if config.store == "redis":
        if not config.redis_url:
            raise ServerMisconfiguration("FLAP_STORE=redis needs REDIS_URL")
        from flapboard.storage.redis_store import RedisBackend

        return RedisBackend(config.redis_url, timeout=config.store_timeout)
    raise ServerMisconfiguration(f"unknown store backend: {config.store}")


class LeaderboardService:
    def __init__(self, config: ServerConfig, backend: StoreBackend | None = None):
        self.config = config
        self.server_id = str(uuid.uuid4())
        self.start_time = time.time()
        self.backend = backend or make_backend(config)
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self.backend.init()
        try:
            async with self.session() as store:
                await abuse.migrate_legacy(store)
        except LeaderboardError as e:
            # is_blocked still reads the legacy set, so serving can continue.
            logger.warning("legacy blocklist migration skipped: %s", e.message)

    async def stop(self) -> None:
        await self.drain()
        self.backend.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[ScoreStore]:
        store = await self.backend.connect()
        try:
            yield store
        finally:
            await store.close()

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run fn(store, ...) on a fresh connection under the request deadline."""

        async def run():
            async with self.session() as store:
                return await fn(store, *args, **kwargs)

        try:
            return await asyncio.wait_for(run(), timeout=self.config.request_timeout)
        except asyncio.TimeoutError:
            logger.error("%s exceeded %.1fs deadline", getattr(fn, "__name__", fn), self.config.request_timeout)
            raise StoreUnavailable("request timed out, try again")

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def submit(self, sub: protocol.SubmitScore, origin: str) -> dedup.SubmitResult:
        async def run(store: ScoreStore) -> dedup.SubmitResult:
            if await abuse.is_blocked(store, origin):
                logger.info("submission from blocked origin %s dropped (name=%s score=%d)", origin, sub.name, sub.score)
                return dedup.SubmitResult(accepted=True, recordId=None, status=dedup.BLOCKED)
            return await dedup.submit(
                store,
                sub.name,
                sub.score,
                sub.mode,
                sub.date,
                origin,
                retries=self.config.submit_retries,
            )

        return await self.call(run)

    async def auto_block(self, origin: str, sub: protocol.SubmitScore) -> None:
        # Detached from the request: failures are logged, never raised.
        try:
            entry = await self.call(
                abuse.auto_block,
                origin,
                sub.name,
                sub.score,
                sub.date,
                self.config.auto_block_threshold,
            )
            if entry is not None:
                logger.warning("auto-blocked %s after score %d on %s", origin, sub.score, sub.date)
        except Exception:
            logger.exception("automatic block of %s failed", origin)

    def scan_opts(self) -> dict[str, int]:
        return {"scan_count": self.config.scan_count, "scan_max_iterations": self.config.scan_max_iterations}

    def require_admin(self, supplied: Any) -> None:
        expected = self.config.admin_password
        if not expected:
            logger.error("ADMIN_PASSWORD is not configured")
            raise ServerMisconfiguration("server misconfigured: admin password not set")
        if not isinstance(supplied, str) or not supplied:
            raise AuthError("wrong or missing password")
        if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
            raise AuthError("wrong or missing password")

    def version_payload(self) -> dict[str, Any]:
        return {
            "serverId": self.server_id,
            "serverVersion": self.config.server_version,
            "store": self.backend.name,
        }


def origin_address(request: web.Request) -> str:
    fwd = request.headers.get("X-Forwarded-For")
    if fwd:
        first = fwd.split(",")[0].strip()
        if first:
            return first
    real = request.headers.get("X-Real-IP")
    if real and real.strip():
        return real.strip()
    return request.remote or ""


def _cors_headers(config: ServerConfig, origin: str | None) -> dict[str, str]:
    if not origin:
        return {}
    if config.cors_allow_all:
        return {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}
    if origin in config.cors_allowed_origins:
        return {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}
    return {}


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        origin = request.headers.get("Origin")
        headers = {
            **_cors_headers(request.app["config"], origin),
            "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type,admin-password",
            "Access-Control-Max-Age": "86400",
        }
        return web.Response(status=204, headers=headers)

    resp = await handler(request)

    # Responses flushed early by the handler already carry their headers.
    if resp.prepared:
        return resp
    origin = request.headers.get("Origin")
    resp.headers.update(_cors_headers(request.app["config"], origin))
    resp.headers.setdefault("Cache-Control", "no-store")
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except LeaderboardError as e:
        if e.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e.message)
        return web.json_response({"success": False, "error": e.message}, status=e.status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("request body must be an object")
    return body


async def _send_now(request: web.Request, payload: Any) -> web.Response:
    # Flush the response before the handler returns so detached work runs after it.
    resp = web.json_response(payload)
    resp.headers.update(_cors_headers(request.app["config"], request.headers.get("Origin")))
    resp.headers["Cache-Control"] = "no-store"
    await resp.prepare(request)
    await resp.write_eof()
    return resp


def create_app(config: ServerConfig, backend: StoreBackend | None = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    svc = LeaderboardService(config, backend=backend)

    app["config"] = config
    app["svc"] = svc

    async def on_startup(_: web.Application):
        await svc.start()

    async def on_cleanup(_: web.Application):
        await svc.stop()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    async def root(_: web.Request):
        return web.json_response(
            {
                "ok": True,
                "service": "flapboard",
                **svc.version_payload(),
                "endpoints": {
                    "health": "/health",
                    "version": "/version",
                    "submitScore": "/api/submit-score",
                    "getScores": "/api/get-scores",
                    "topQualifies": "/api/top-qualifies",
                    "getLeaderboard": "/api/get-leaderboard",
                    "deleteRecord": "/api/delete-record",
                    "clearLeaderboard": "/api/clear-leaderboard",
                    "blockIp": "/api/block-ip",
                    "verifyAdmin": "/api/verify-admin",
                    "adminRecords": "/api/admin-records",
                },
            }
        )

    async def health(_: web.Request):
        return web.json_response(
            {
                "ok": True,
                "uptimeSec": time.time() - svc.start_time,
                "pendingTasks": len(svc._tasks),
                **svc.version_payload(),
            }
        )

    async def version(_: web.Request):
        return web.json_response(svc.version_payload())

    async def submit_score(request: web.Request):
        body = await _json_body(request)
        sub = protocol.SubmitScore.parse(body, max_name_len=config.max_name_len)
        origin = origin_address(request)
        result = await svc.submit(sub, origin)
        # Identical reply for created, ignored and blocked submissions.
        resp = await _send_now(request, {"success": True})
        if result.status != dedup.BLOCKED and abuse.should_auto_block(sub.mode, sub.score, config.auto_block_threshold):
            svc.spawn(svc.auto_block(origin, sub))
        return resp

    async def get_scores(request: web.Request):
        scope = protocol.Scope.parse(request.query)
        records = await svc.call(query.public_board, scope.mode, scope.date, config.top_n, **svc.scan_opts())
        return web.json_response([r.public() for r in records])

    async def top_qualifies(request: web.Request):
        q = protocol.Qualifies.parse(request.query)
        ok = await svc.call(query.top_n_qualifies, q.score, q.mode, q.date, config.top_n)
        return web.json_response({"qualifies": ok})

    async def get_leaderboard(request: web.Request):
        params: dict[str, Any] = dict(request.query)
        body = await _json_body(request) if request.method == "POST" else {}
        params.update(body)
        # The secret never travels in the URL.
        svc.require_admin(request.headers.get("admin-password") or body.get("password"))
        q = protocol.LeaderboardQuery.parse(
            params,
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )
        page = await svc.call(query.query, q, **svc.scan_opts())
        logger.info("admin leaderboard page=%d size=%d -> %d/%d", q.page, q.pageSize, len(page.records), page.totalCount)
        return web.json_response(page.to_json())

    async def delete_record(request: web.Request):
        body = await _json_body(request)
        svc.require_admin(request.headers.get("admin-password") or body.get("password"))
        d = protocol.DeleteRecord.parse(body)
        rec = await svc.call(admin.delete_record, d.id, retries=config.submit_retries)
        return web.json_response(
            {"success": True, "message": f"deleted record: player={rec.playerName}, score={rec.rawScore}"}
        )

    async def clear_leaderboard(request: web.Request):
        body = await _json_body(request)
        svc.require_admin(request.headers.get("admin-password") or body.get("password"))
        scope = protocol.Scope.parse(body)
        n = await svc.call(admin.clear_leaderboard, scope.mode, scope.date, **svc.scan_opts())
        return web.json_response({"success": True, "message": f"cleared {n} records", "deletedCount": n})

    async def block_ip(request: web.Request):
        body = await _json_body(request)
        svc.require_admin(request.headers.get("admin-password") or body.get("password"))
        act = protocol.BlockAction.parse(body)
        if act.action == "block":
            await svc.call(abuse.block, act.ip, act.reason or "blocked by admin")
            return web.json_response({"success": True, "message": f"IP {act.ip} blocked"})
        if act.action == "unblock":
            await svc.call(abuse.unblock, act.ip)
            return web.json_response({"success": True, "message": f"IP {act.ip} unblocked"})
        if act.action == "check":
            blocked = await svc.call(abuse.is_blocked, act.ip)
            return web.json_response({"success": True, "isBlocked": blocked})
        entries = await svc.call(abuse.list_blocked)
        return web.json_response(
            {
                "success": True,
                "blockedIps": [e.originAddress for e in entries],
                "entries": [e.to_json() for e in entries],
            }
        )

    async def verify_admin(request: web.Request):
        body = await _json_body(request)
        svc.require_admin(body.get("password"))
        return web.json_response({"success": True})

    async def admin_records(request: web.Request):
        svc.require_admin(request.headers.get("admin-password"))
        try:
            limit = int(request.query.get("limit", "100"))
        except ValueError:
            limit = 100
        limit = max(1, min(limit, 1000))
        out = await svc.call(admin.dump_records, limit, **svc.scan_opts())
        return web.json_response(out)

    app.router.add_get("/", root)
    app.router.add_get("/health", health)
    app.router.add_get("/version", version)
    app.router.add_post("/api/submit-score", submit_score)
    app.router.add_get("/api/get-scores", get_scores)
    app.router.add_get("/api/top-qualifies", top_qualifies)
    app.router.add_get("/api/get-leaderboard", get_leaderboard)
    app.router.add_post("/api/get-leaderboard", get_leaderboard)
    app.router.add_post("/api/delete-record", delete_record)
    app.router.add_post("/api/clear-leaderboard", clear_leaderboard)
    app.router.add_post("/api/block-ip", block_ip)
    app.router.add_post("/api/verify-admin", verify_admin)
    app.router.add_get("/api/admin-records", admin_records)
    async def preflight(_: web.Request):
        return web.Response(status=204)

    app.router.add_route("OPTIONS", "/{tail:.*}", preflight)

    return app


def main() -> None:
    config = ServerConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
