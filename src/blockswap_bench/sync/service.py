"""HTTP coordination service for multi-process runs.

Exposes a :class:`MemorySyncService` per run over aiohttp. Blocking reads
and barrier waits are long polls: the server holds the request for up to
``wait`` seconds and answers with whatever it has, and clients re-issue the
poll until they are satisfied.

Endpoints (all JSON)::

    POST /runs/{run}/topics/{name}            {"payload": ...} -> {"seq": n}
    GET  /runs/{run}/topics/{name}?cursor&wait                 -> {"entries": [...], "next": n}
    POST /runs/{run}/states/{name}/signal                      -> {"count": n}
    GET  /runs/{run}/states/{name}?target&wait                 -> {"count": n, "released": bool}
    GET  /health
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import web

from blockswap_bench.errors import CoordinationError
from blockswap_bench.sync.memory import MemorySyncService

logger = logging.getLogger(__name__)

MAX_POLL_WAIT = 60.0


def _query_int(request: web.Request, key: str, default: int | None = None) -> int:
    raw = request.query.get(key)
    if raw is None:
        if default is None:
            raise web.HTTPBadRequest(text=f"missing query parameter {key!r}")
        return default
    try:
        return int(raw)
    except ValueError:
        raise web.HTTPBadRequest(text=f"invalid integer for {key!r}: {raw!r}") from None


def _poll_wait(request: web.Request) -> float:
    try:
        wait = float(request.query.get("wait", "30"))
    except ValueError:
        raise web.HTTPBadRequest(text="invalid wait") from None
    return max(0.0, min(wait, MAX_POLL_WAIT))


class SyncServer:
    """aiohttp server hosting topics and barrier states.

    Args:
        instance_count: Fleet size; when set, counters are capped at it and
            over-signalling is answered with HTTP 409.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 5050,
        instance_count: int | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.instance_count = instance_count
        self._runs: dict[str, MemorySyncService] = {}
        self._runner: web.AppRunner | None = None
        self.app = web.Application()

        self.app.router.add_post("/runs/{run}/topics/{name}", self._handle_publish)
        self.app.router.add_get("/runs/{run}/topics/{name}", self._handle_read)
        self.app.router.add_post("/runs/{run}/states/{name}/signal", self._handle_signal)
        self.app.router.add_get("/runs/{run}/states/{name}", self._handle_barrier)
        self.app.router.add_get("/health", self._handle_health)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def service(self, run_id: str) -> MemorySyncService:
        if run_id not in self._runs:
            self._runs[run_id] = MemorySyncService(self.instance_count)
            logger.info("Opened sync state for run %s", run_id)
        return self._runs[run_id]

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        if self.port == 0:
            self.port = self._runner.addresses[0][1]
        logger.info("Sync service listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Sync service stopped")

    # ── Handlers ─────────────────────────────────────────────────

    async def _handle_publish(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="body must be JSON") from None
        if not isinstance(body, dict) or "payload" not in body:
            raise web.HTTPBadRequest(text="body must contain 'payload'")
        svc = self.service(request.match_info["run"])
        seq = await svc.append(request.match_info["name"], body["payload"])
        return web.json_response({"seq": seq})

    async def _handle_read(self, request: web.Request) -> web.Response:
        cursor = _query_int(request, "cursor", 0)
        if cursor < 0:
            raise web.HTTPBadRequest(text="cursor must be non-negative")
        svc = self.service(request.match_info["run"])
        entries: list[Any] = []
        try:
            entries = await asyncio.wait_for(
                svc.read(request.match_info["name"], cursor), _poll_wait(request),
            )
        except asyncio.TimeoutError:
            pass
        return web.json_response({"entries": entries, "next": cursor + len(entries)})

    async def _handle_signal(self, request: web.Request) -> web.Response:
        svc = self.service(request.match_info["run"])
        try:
            count = await svc.signal(request.match_info["name"])
        except CoordinationError as e:
            return web.json_response({"status": "error", "detail": str(e)}, status=409)
        return web.json_response({"count": count})

    async def _handle_barrier(self, request: web.Request) -> web.Response:
        target = _query_int(request, "target")
        name = request.match_info["name"]
        svc = self.service(request.match_info["run"])
        try:
            count = await asyncio.wait_for(svc.wait(name, target), _poll_wait(request))
        except asyncio.TimeoutError:
            count = svc.counter(name)
        except CoordinationError as e:
            return web.json_response({"status": "error", "detail": str(e)}, status=409)
        return web.json_response({"count": count, "released": count >= target})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "runs": len(self._runs)})
