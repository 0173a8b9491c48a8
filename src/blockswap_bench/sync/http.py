"""HTTP client for :class:`~blockswap_bench.sync.service.SyncServer`."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout

from blockswap_bench.errors import CoordinationError
from blockswap_bench.sync.client import State, SyncClient

logger = logging.getLogger(__name__)

DEFAULT_POLL_WAIT = 30.0


class HttpSyncClient(SyncClient):
    """Coordination client speaking to a sync server over long polls.

    Topic and state names are scoped by ``run_id`` so several runs can share
    one server.
    """

    def __init__(
        self,
        base_url: str,
        run_id: str,
        poll_wait: float = DEFAULT_POLL_WAIT,
        session: ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.run_id = run_id
        self.poll_wait = poll_wait
        self._session = session
        self._owns_session = session is None

    def _url(self, kind: str, name: str, suffix: str = "") -> str:
        return f"{self.base_url}/runs/{quote(self.run_id, safe='')}/{kind}/{quote(name, safe='')}{suffix}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=self.poll_wait + 15))
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                if resp.status != 200:
                    detail = await resp.text()
                    raise CoordinationError(f"{method} {url} returned {resp.status}: {detail}")
                return await resp.json()
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise CoordinationError(f"{method} {url} failed: {e!r}") from e

    async def signal_entry(self, state: State) -> int:
        data = await self._request("POST", self._url("states", state.name, "/signal"))
        return int(data["count"])

    async def barrier(self, state: State, target: int) -> None:
        url = self._url("states", state.name)
        params = {"target": str(target), "wait": str(self.poll_wait)}
        while True:
            data = await self._request("GET", url, params=params)
            if data.get("released"):
                return
            logger.debug("Barrier %s at %s/%d, polling again", state.name, data.get("count"), target)

    async def _append(self, name: str, payload: Any) -> int:
        data = await self._request("POST", self._url("topics", name), json={"payload": payload})
        return int(data["seq"])

    async def _read(self, name: str, cursor: int) -> list[Any]:
        url = self._url("topics", name)
        while True:
            data = await self._request(
                "GET", url, params={"cursor": str(cursor), "wait": str(self.poll_wait)},
            )
            entries = data.get("entries", [])
            if entries:
                return entries

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
