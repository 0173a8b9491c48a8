"""Host: the instance's network endpoint.

Uses aiohttp for HTTP-based exchange. Each instance runs a small HTTP
server that reports its identity and serves whatever routes the exchange
service registers, and dials peers with an aiohttp client session.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Awaitable, Callable

from aiohttp import ClientError, ClientSession, ClientTimeout, web

from blockswap_bench.errors import ConnectError
from blockswap_bench.network.peer import AddressRecord, Peer, PeerState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = ClientTimeout(total=10)
CONNECT_TIMEOUT = ClientTimeout(total=5)
WILDCARD_HOSTS = {"0.0.0.0", "::", ""}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class Host:
    """HTTP host for one benchmark instance.

    Runs an aiohttp server for incoming requests and keeps one client
    session for outgoing ones. ``port=0`` binds an ephemeral port; the real
    port is known after :meth:`start`.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 0,
        advertise_host: str | None = None,
        peer_id: str | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.peer_id = peer_id or secrets.token_hex(16)
        self._advertise_host = advertise_host
        self._app = web.Application()
        self._runner: web.AppRunner | None = None
        self._session: ClientSession | None = None
        self._peers: dict[str, Peer] = {}

        self._app.router.add_get("/id", self._handle_id)
        self._app.router.add_get("/health", self._handle_health)

    def add_route(self, method: str, path: str, handler: Handler) -> None:
        """Register an extra route. Must be called before :meth:`start`."""
        self._app.router.add_route(method, path, handler)

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("Host not started")
        return self._session

    async def start(self) -> None:
        """Start the HTTP server and client session."""
        self._session = ClientSession(timeout=DEFAULT_TIMEOUT)
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        if self.port == 0:
            self.port = self._runner.addresses[0][1]
        logger.info("Host %s listening on %s:%d", self.peer_id[:12], self.host, self.port)

    async def stop(self) -> None:
        """Gracefully shut down the host."""
        if self._session:
            await self._session.close()
            self._session = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Host stopped")

    async def __aenter__(self) -> Host:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Addresses ────────────────────────────────────────────────

    def listen_addresses(self) -> list[str]:
        """Dialable ``host:port`` endpoints for this instance."""
        host = self._advertise_host
        if host is None:
            host = "127.0.0.1" if self.host in WILDCARD_HOSTS else self.host
        return [f"{host}:{self.port}"]

    def address_record(self) -> AddressRecord:
        return AddressRecord(peer_id=self.peer_id, addrs=self.listen_addresses())

    # ── Peers ────────────────────────────────────────────────────

    @property
    def connected_peers(self) -> list[Peer]:
        return [p for p in self._peers.values() if p.state == PeerState.CONNECTED]

    async def connect(self, record: AddressRecord) -> Peer:
        """Dial a peer, trying each advertised address in turn.

        Raises:
            ConnectError: If no address answers with the expected identity.
        """
        errors: list[str] = []
        for endpoint in record.addrs:
            peer = Peer(peer_id=record.peer_id, endpoint=endpoint, state=PeerState.CONNECTING)
            started = time.monotonic()
            try:
                async with self.session.get(f"http://{endpoint}/id", timeout=CONNECT_TIMEOUT) as resp:
                    if resp.status != 200:
                        errors.append(f"{endpoint}: HTTP {resp.status}")
                        continue
                    data = await resp.json()
            except (ClientError, asyncio.TimeoutError, ValueError) as e:
                errors.append(f"{endpoint}: {e!r}")
                continue

            if data.get("peer_id") != record.peer_id:
                errors.append(f"{endpoint}: peer id mismatch ({data.get('peer_id')})")
                continue

            peer.state = PeerState.CONNECTED
            peer.latency_ms = (time.monotonic() - started) * 1000
            peer.mark_seen()
            self._peers[record.peer_id] = peer
            logger.info("Connected to %s at %s (%.1f ms)", record.peer_id[:12], endpoint, peer.latency_ms)
            return peer

        raise ConnectError(f"could not connect to {record.peer_id}: {'; '.join(errors) or 'no addresses'}")

    # ── Handlers ─────────────────────────────────────────────────

    async def _handle_id(self, request: web.Request) -> web.Response:
        return web.json_response({"peer_id": self.peer_id, "addrs": self.listen_addresses()})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({"status": "healthy", "port": self.port})
