"""Test case dispatch and the per-instance entry point.

``run_instance`` picks the test case, wires the host, exchange and sync
client for this instance, runs the workflow for its role, and turns the
result into an outcome event. It returns ``True`` on success; every
failure is recorded with its reason and reported as ``False``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Awaitable, Callable

from blockswap_bench.errors import BenchError, ConfigurationError
from blockswap_bench.exchange.service import BlockExchange
from blockswap_bench.network.host import Host
from blockswap_bench.plan.example import run_example
from blockswap_bench.plan.provider import run_provider
from blockswap_bench.plan.requestor import run_requestor
from blockswap_bench.plan.roles import Role, resolve_role
from blockswap_bench.runenv import RunEnv
from blockswap_bench.stats.measurements import ResultsWriter
from blockswap_bench.sync.client import SyncClient
from blockswap_bench.sync.http import HttpSyncClient

logger = logging.getLogger(__name__)

CaseFn = Callable[[RunEnv, SyncClient], Awaitable[None]]


async def run_speed_test(env: RunEnv, sync: SyncClient) -> None:
    """Block transfer speed test between one provider and N requestors."""
    role = resolve_role(env.group_id)
    env.record_message("running speed-test as %s", role.value)

    host = Host(host=env.listen_host)
    exchange = BlockExchange(host)
    async with host:
        for addr in host.listen_addresses():
            env.record_message("listening on addr %s", addr)

        if role == Role.PROVIDER:
            await run_provider(env, sync, exchange, host.address_record())
            env.record_message(
                "served %d requests for %d stored blocks (%d bytes)",
                exchange.blocks_served, len(exchange.blockstore), exchange.blockstore.total_bytes,
            )
            return

        results = None
        if env.outputs_dir:
            results = ResultsWriter(
                Path(env.outputs_dir) / "results.csv",
                run_id=env.run_id,
                instance_seq=env.seq,
            )
        report = await run_requestor(env, sync, exchange, host, results)
        env.record_message(
            "transferred %d/%d blocks in %.6fs",
            len(report.successes), len(report.records), report.total_seconds or 0.0,
        )
        if report.failures:
            env.record_message("failed items: %s", report.summary()["outcomes"])


TEST_CASES: dict[str, CaseFn] = {
    "speed-test": run_speed_test,
    "example": run_example,
}


def resolve_test_case(name: str) -> CaseFn:
    case = TEST_CASES.get(name)
    if case is None:
        raise ConfigurationError(f"unknown test case {name!r} (expected one of {sorted(TEST_CASES)})")
    return case


async def run_instance(env: RunEnv, sync: SyncClient | None = None) -> bool:
    """Run this instance's test case to completion and record the outcome.

    Args:
        env: The instance's run environment.
        sync: Coordination handle; built from ``env.sync_url`` when omitted.
    """
    owns_sync = sync is None
    try:
        case = resolve_test_case(env.test_case)
        if sync is None:
            if not env.sync_url:
                raise ConfigurationError("no sync service URL configured (BENCH_SYNC_URL)")
            sync = HttpSyncClient(env.sync_url, env.run_id)
        await case(env, sync)
    except BenchError as e:
        env.record_failure(e)
        return False
    except Exception as e:
        logger.exception("Instance %d crashed", env.seq)
        env.record_crash(e)
        return False
    finally:
        if owns_sync and sync is not None:
            await sync.close()

    env.record_success()
    return True
