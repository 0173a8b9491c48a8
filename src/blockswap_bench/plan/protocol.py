"""Shared coordination names for the speed test.

Phase sequence, for every instance::

    advertise / discover  ->  ready barrier  ->  transfer  ->  done barrier

The provider waits on ``done`` for the whole fleet before tearing down its
exchange service; requestors only signal it.
"""

from __future__ import annotations

from blockswap_bench.errors import ConfigurationError, CoordinationError
from blockswap_bench.exchange.blocks import ContentIdentifier
from blockswap_bench.network.peer import AddressRecord
from blockswap_bench.runenv import RunEnv
from blockswap_bench.sync.client import State, Topic

READY_STATE = State("ready")
DONE_STATE = State("done")
INITIALIZED_STATE = State("initialized")


def _decode_record(payload: object) -> AddressRecord:
    try:
        return AddressRecord.model_validate(payload)
    except ValueError as e:
        raise CoordinationError(f"malformed address record on the provider topic: {e}") from e


def _decode_cid(payload: object) -> ContentIdentifier:
    try:
        return ContentIdentifier.parse(payload)
    except ValueError as e:
        raise CoordinationError(f"malformed identifier on the blocks topic: {e}") from e


PROVIDER_TOPIC = Topic(
    "provider",
    encode=lambda record: record.model_dump(mode="json"),
    decode=_decode_record,
)

BLOCK_TOPIC = Topic(
    "blocks",
    encode=str,
    decode=_decode_cid,
)


def transfer_count(env: RunEnv) -> int:
    """Number of blocks exchanged in a run: exactly ``count`` items."""
    count = env.int_param("count")
    if count < 0:
        raise ConfigurationError(f"count must be non-negative, got {count}")
    return count
