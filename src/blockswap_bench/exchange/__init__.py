"""Content-addressed blocks and the exchange service under test."""

from blockswap_bench.exchange.blocks import Block, ContentIdentifier, PayloadSource
from blockswap_bench.exchange.blockstore import MemoryBlockstore
from blockswap_bench.exchange.service import BlockExchange

__all__ = ["Block", "ContentIdentifier", "PayloadSource", "MemoryBlockstore", "BlockExchange"]
