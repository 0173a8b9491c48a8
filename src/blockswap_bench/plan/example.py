"""``example`` test case: a fleet smoke test with no data transfer.

Parses the network-profile parameters, waits until every instance is up,
and records which role it plays.
"""

from __future__ import annotations

from blockswap_bench.plan.protocol import INITIALIZED_STATE
from blockswap_bench.plan.roles import Role, resolve_role
from blockswap_bench.runenv import RunEnv, parse_duration
from blockswap_bench.sync.client import SyncClient


async def run_example(env: RunEnv, sync: SyncClient) -> None:
    role = resolve_role(env.group_id)
    size = env.size_param("size", 0)
    # Index 0 is the unshaped baseline.
    bandwidths = [0] + env.size_array_param("bandwidths", [])
    latencies = [0.0] + [parse_duration(v) for v in env.string_array_param("latencies", [])]

    await sync.signal_and_wait(INITIALIZED_STATE, env.instance_count)
    env.record_message("all instances running")

    if role == Role.PROVIDER:
        env.record_message("I'm a provider, serving a %d size file", size)
    else:
        env.record_message("I'm a requestor")
    env.record_message(
        "network profiles: bandwidths=%s latencies=%s",
        bandwidths, [f"{lat:g}s" for lat in latencies],
    )
