"""Provider workflow.

Advertise -> ready barrier -> generate and announce ``count`` blocks ->
done barrier. Any store, announce or coordination failure aborts the
workflow before another identifier is published.
"""

from __future__ import annotations

import logging

from blockswap_bench.exchange.blocks import Block, ContentIdentifier, PayloadSource
from blockswap_bench.exchange.service import Exchange
from blockswap_bench.network.peer import AddressRecord
from blockswap_bench.plan.protocol import (
    BLOCK_TOPIC,
    DONE_STATE,
    PROVIDER_TOPIC,
    READY_STATE,
    transfer_count,
)
from blockswap_bench.runenv import RunEnv
from blockswap_bench.sync.client import SyncClient

logger = logging.getLogger(__name__)


def payload_source(env: RunEnv) -> PayloadSource:
    """Seeded per instance when a ``seed`` parameter is given."""
    if "seed" not in env.params:
        return PayloadSource()
    return PayloadSource(env.int_param("seed") + env.seq)


async def run_provider(
    env: RunEnv,
    sync: SyncClient,
    exchange: Exchange,
    record: AddressRecord,
    payloads: PayloadSource | None = None,
) -> list[ContentIdentifier]:
    """Run the provider side of the speed test.

    Returns:
        The published identifiers, in publication order.
    """
    size = env.size_param("size")
    count = transfer_count(env)
    payloads = payloads or payload_source(env)

    await sync.publish(PROVIDER_TOPIC, record)
    env.record_message("advertised provider %s at %s", record.peer_id, ",".join(record.addrs))

    await sync.signal_and_wait(READY_STATE, env.instance_count)
    env.record_message("all %d instances ready", env.instance_count)

    published: list[ContentIdentifier] = []
    for i in range(count):
        env.record_message("generating %d-sized random block (%d/%d)", size, i + 1, count)
        block = Block.from_data(payloads.generate(size))
        await exchange.put(block)
        await exchange.announce(block)
        logger.debug("Stored and announced %s (%d bytes)", block.cid, block.size)
        await sync.publish(BLOCK_TOPIC, block.cid)
        published.append(block.cid)
        env.record_message("publishing block %s", block.cid)

    await sync.signal_and_wait(DONE_STATE, env.instance_count)
    env.record_message("all instances done, provider exiting")
    return published
