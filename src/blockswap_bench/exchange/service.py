"""Block exchange service: the protocol under test.

A deliberately small stand-in for a real block-exchange engine. Announced
blocks are served at ``GET /blocks/{cid}`` on the instance's host; ``get``
answers from the local store when possible, otherwise pulls the block from
connected peers, verifies it against its identifier, and keeps a copy.
There is no wantlist negotiation and no provider routing: the requestor only
asks peers it has dialed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from aiohttp import ClientError, ClientTimeout, web

from blockswap_bench.errors import ExchangeError
from blockswap_bench.exchange.blocks import Block, ContentIdentifier
from blockswap_bench.exchange.blockstore import MemoryBlockstore
from blockswap_bench.network.host import Host

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = ClientTimeout(total=60)


class Exchange(Protocol):
    """What the workflows need from an exchange service."""

    async def put(self, block: Block) -> None: ...

    def has(self, cid: ContentIdentifier) -> bool: ...

    async def announce(self, block: Block) -> None: ...

    async def get(self, cid: ContentIdentifier) -> Block: ...


class BlockExchange:
    """HTTP block exchange bound to a :class:`Host`.

    Construct before ``host.start()`` so the block route is registered.
    """

    def __init__(self, host: Host, blockstore: MemoryBlockstore | None = None) -> None:
        self.host = host
        self.blockstore = blockstore or MemoryBlockstore()
        self._announced: set[ContentIdentifier] = set()
        self.blocks_served = 0
        self.blocks_fetched = 0
        host.add_route("GET", "/blocks/{cid}", self._handle_get_block)

    async def put(self, block: Block) -> None:
        """Store a block locally."""
        self.blockstore.put(block)

    def has(self, cid: ContentIdentifier) -> bool:
        return self.blockstore.has(cid)

    async def announce(self, block: Block) -> None:
        """Make a locally stored block servable to peers."""
        if not self.blockstore.has(block.cid):
            raise ExchangeError("cannot announce a block that is not stored", cid=block.cid, phase="announce")
        self._announced.add(block.cid)
        logger.debug("Announced %s", block.cid)

    async def get(self, cid: ContentIdentifier) -> Block:
        """Return the block for ``cid``, fetching it from peers if needed.

        Raises:
            ExchangeError: If no connected peer returns a block that
                matches ``cid``.
        """
        local = self.blockstore.get(cid)
        if local is not None:
            return local

        peers = self.host.connected_peers
        if not peers:
            raise ExchangeError("no connected peers to fetch from", cid=cid, phase="get")

        errors: list[str] = []
        for peer in peers:
            url = f"http://{peer.endpoint}/blocks/{cid}"
            try:
                async with self.host.session.get(url, timeout=FETCH_TIMEOUT) as resp:
                    if resp.status != 200:
                        errors.append(f"{peer.endpoint}: HTTP {resp.status}")
                        continue
                    data = await resp.read()
            except (ClientError, asyncio.TimeoutError) as e:
                errors.append(f"{peer.endpoint}: {e!r}")
                continue

            if not cid.matches(data):
                errors.append(f"{peer.endpoint}: returned data does not match identifier")
                continue

            block = Block(cid=cid, data=data)
            self.blockstore.put(block)
            self.blocks_fetched += 1
            peer.mark_seen()
            return block

        raise ExchangeError(f"fetch failed: {'; '.join(errors)}", cid=cid, phase="get")

    async def _handle_get_block(self, request: web.Request) -> web.Response:
        try:
            cid = ContentIdentifier.parse(request.match_info["cid"])
        except ValueError:
            return web.json_response({"status": "error", "detail": "invalid cid"}, status=400)

        block = self.blockstore.get(cid) if cid in self._announced else None
        if block is None:
            return web.json_response({"status": "error", "detail": "not found"}, status=404)

        self.blocks_served += 1
        return web.Response(body=block.data, content_type="application/octet-stream")
