"""Requestor workflow.

Discover provider -> connect -> subscribe to identifiers -> ready barrier ->
drain ``count`` identifiers in publication order, timing each fetch ->
record the aggregate -> signal done.

The identifier subscription is opened *before* the ready barrier. The
provider only starts publishing once every instance has passed the
barrier, so nothing published can predate the subscription.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from blockswap_bench.errors import CoordinationError, ExchangeError, FetchError
from blockswap_bench.exchange.blocks import ContentIdentifier
from blockswap_bench.exchange.service import Exchange
from blockswap_bench.network.host import Host
from blockswap_bench.plan.protocol import (
    BLOCK_TOPIC,
    DONE_STATE,
    PROVIDER_TOPIC,
    READY_STATE,
    transfer_count,
)
from blockswap_bench.runenv import RunEnv
from blockswap_bench.stats.measurements import (
    FetchOutcome,
    FetchRecord,
    ResultsWriter,
    TransferReport,
)
from blockswap_bench.sync.client import Subscription, SyncClient

logger = logging.getLogger(__name__)


@dataclass
class DrainOptions:
    """How the drain loop reacts to per-item trouble.

    ``strict`` aborts the run on the first failed item; otherwise the
    failure is recorded and draining continues. Timeouts of ``None`` wait
    indefinitely.
    """

    strict: bool = True
    fetch_timeout: float | None = None
    announce_timeout: float | None = None

    @classmethod
    def from_env(cls, env: RunEnv) -> DrainOptions:
        return cls(
            strict=env.bool_param("strict", True),
            fetch_timeout=env.duration_param("fetch_timeout", "0") or None,
            announce_timeout=env.duration_param("announce_timeout", "0") or None,
        )


async def run_requestor(
    env: RunEnv,
    sync: SyncClient,
    exchange: Exchange,
    host: Host,
    results: ResultsWriter | None = None,
) -> TransferReport:
    """Run the requestor side of the speed test."""
    count = transfer_count(env)
    options = DrainOptions.from_env(env)

    async with sync.subscribe(PROVIDER_TOPIC) as providers:
        record = await providers.next()
    env.record_message("will contact the provider at %s", ",".join(record.addrs))

    await host.connect(record)

    report = TransferReport()
    blocks = sync.subscribe(BLOCK_TOPIC)
    try:
        await sync.signal_and_wait(READY_STATE, env.instance_count)
        env.record_message("all %d instances ready", env.instance_count)
        try:
            await drain_blocks(env, blocks, exchange, count, options, report, results)
        except Exception:
            await _release_provider(sync)
            raise
        finally:
            if results is not None:
                results.finalize(report)
    finally:
        blocks.close()

    await sync.signal_entry(DONE_STATE)
    return report


async def drain_blocks(
    env: RunEnv,
    blocks: Subscription,
    exchange: Exchange,
    count: int,
    options: DrainOptions,
    report: TransferReport,
    results: ResultsWriter | None = None,
) -> TransferReport:
    """Fetch ``count`` identifiers from ``blocks`` one at a time, in order.

    Every drained position gets exactly one record in ``report``. A failed
    item is never recorded as a success.

    Raises:
        FetchError: On the first failed item when ``options.strict``.
    """
    begin = time.perf_counter()
    for position in range(count):
        try:
            cid = await blocks.next(timeout=options.announce_timeout)
        except asyncio.TimeoutError:
            rec = FetchRecord(
                position=position,
                cid=None,
                outcome=FetchOutcome.NOT_PUBLISHED,
                error=f"no identifier announced within {options.announce_timeout}s",
            )
            _store(env, report, results, rec)
            report.total_seconds = time.perf_counter() - begin
            if options.strict:
                raise FetchError(rec) from None
            # Identifiers arrive in order; nothing later can show up either.
            break

        env.record_message("downloading block %s", cid)
        rec = await _fetch_one(exchange, cid, position, options.fetch_timeout)
        _store(env, report, results, rec)
        if not rec.ok and options.strict:
            report.total_seconds = time.perf_counter() - begin
            raise FetchError(rec)

    if report.total_seconds is None:
        report.total_seconds = time.perf_counter() - begin
    env.record_metric("total_time", report.total_seconds, "s")
    return report


async def _fetch_one(
    exchange: Exchange,
    cid: ContentIdentifier,
    position: int,
    timeout: float | None,
) -> FetchRecord:
    started = time.perf_counter()
    try:
        block = await asyncio.wait_for(exchange.get(cid), timeout)
    except asyncio.TimeoutError:
        return FetchRecord(
            position=position,
            cid=str(cid),
            outcome=FetchOutcome.TIMED_OUT,
            seconds=time.perf_counter() - started,
            error=f"fetch exceeded {timeout}s",
        )
    except ExchangeError as e:
        return FetchRecord(
            position=position,
            cid=str(cid),
            outcome=FetchOutcome.FAILED,
            seconds=time.perf_counter() - started,
            error=str(e),
        )
    elapsed = time.perf_counter() - started

    if block.cid != cid:
        return FetchRecord(
            position=position,
            cid=str(cid),
            outcome=FetchOutcome.FAILED,
            seconds=elapsed,
            error=f"exchange returned {block.cid}",
        )
    return FetchRecord(
        position=position,
        cid=str(cid),
        outcome=FetchOutcome.OK,
        seconds=elapsed,
        size=block.size,
    )


def _store(
    env: RunEnv,
    report: TransferReport,
    results: ResultsWriter | None,
    rec: FetchRecord,
) -> None:
    report.records.append(rec)
    if results is not None:
        results.record(rec)
    if rec.ok:
        env.record_message("downloaded block %s", rec.cid)
        env.record_metric("download_time", rec.seconds, "s")
    else:
        env.record_message("block #%d %s: %s (%s)", rec.position, rec.outcome.value, rec.cid, rec.error)


async def _release_provider(sync: SyncClient) -> None:
    """Signal done on the way out of a failed drain so the provider can exit."""
    try:
        await sync.signal_entry(DONE_STATE)
    except CoordinationError:
        logger.warning("Could not signal %s after a failed drain", DONE_STATE.name, exc_info=True)
