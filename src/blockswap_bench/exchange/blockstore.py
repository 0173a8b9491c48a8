"""In-memory block store keyed by content identifier."""

from __future__ import annotations

import logging
from collections import OrderedDict

from blockswap_bench.errors import ExchangeError
from blockswap_bench.exchange.blocks import Block, ContentIdentifier

logger = logging.getLogger(__name__)


class MemoryBlockstore:
    """Holds blocks for the lifetime of an instance.

    Blocks are immutable and content-addressed, so storing the same block
    twice is a no-op. A put whose bytes do not hash to the claimed CID is
    rejected.
    """

    def __init__(self) -> None:
        self._blocks: OrderedDict[ContentIdentifier, Block] = OrderedDict()

    def put(self, block: Block) -> None:
        if not block.cid.matches(block.data):
            raise ExchangeError("block data does not match its identifier", cid=block.cid, phase="put")
        self._blocks.setdefault(block.cid, block)

    def has(self, cid: ContentIdentifier) -> bool:
        return cid in self._blocks

    def get(self, cid: ContentIdentifier) -> Block | None:
        return self._blocks.get(cid)

    def __len__(self) -> int:
        return len(self._blocks)

    @property
    def total_bytes(self) -> int:
        return sum(b.size for b in self._blocks.values())
