"""Tests for the coordination contract over the in-process sync service."""

from __future__ import annotations

import asyncio

import pytest

from blockswap_bench.errors import CoordinationError
from blockswap_bench.sync.client import State, Topic
from blockswap_bench.sync.memory import MemorySyncService

NUMBERS = Topic("numbers")
READY = State("ready")


@pytest.fixture
def service():
    return MemorySyncService(instance_count=3)


# ── Topics ───────────────────────────────────────────────────────

class TestTopics:
    @pytest.mark.asyncio
    async def test_publish_returns_sequence(self, service):
        client = service.client()
        assert await client.publish(NUMBERS, 1) == 1
        assert await client.publish(NUMBERS, 2) == 2
        assert service.topic_log("numbers") == [1, 2]

    @pytest.mark.asyncio
    async def test_subscribe_delivers_in_order(self, service):
        client = service.client()
        sub = client.subscribe(NUMBERS)
        for i in range(5):
            await client.publish(NUMBERS, i)
        assert [await sub.next() for _ in range(5)] == [0, 1, 2, 3, 4]
        sub.close()

    @pytest.mark.asyncio
    async def test_late_subscriber_replays_history(self, service):
        producer = service.client()
        for i in range(3):
            await producer.publish(NUMBERS, i)
        late = service.client().subscribe(NUMBERS)
        assert [await late.next(timeout=1) for _ in range(3)] == [0, 1, 2]
        late.close()

    @pytest.mark.asyncio
    async def test_every_subscriber_sees_every_value(self, service):
        a = service.client().subscribe(NUMBERS)
        b = service.client().subscribe(NUMBERS)
        await service.client().publish(NUMBERS, "x")
        assert await a.next(timeout=1) == "x"
        assert await b.next(timeout=1) == "x"

    @pytest.mark.asyncio
    async def test_blocks_until_published(self, service):
        client = service.client()
        sub = client.subscribe(NUMBERS)
        reader = asyncio.create_task(sub.next())
        await asyncio.sleep(0.05)
        assert not reader.done()
        await client.publish(NUMBERS, 42)
        assert await asyncio.wait_for(reader, 1) == 42

    @pytest.mark.asyncio
    async def test_next_timeout(self, service):
        sub = service.client().subscribe(NUMBERS)
        with pytest.raises(asyncio.TimeoutError):
            await sub.next(timeout=0.05)
        # A timed-out read loses nothing.
        await service.client().publish(NUMBERS, 7)
        assert await sub.next(timeout=1) == 7

    @pytest.mark.asyncio
    async def test_decode_applied(self, service):
        topic = Topic("typed", encode=str, decode=int)
        client = service.client()
        await client.publish(topic, 12)
        assert service.topic_log("typed") == ["12"]
        sub = client.subscribe(topic)
        assert await sub.next(timeout=1) == 12

    @pytest.mark.asyncio
    async def test_async_iteration(self, service):
        client = service.client()
        for i in range(3):
            await client.publish(NUMBERS, i)
        seen = []
        async with client.subscribe(NUMBERS) as sub:
            async for value in sub:
                seen.append(value)
                if len(seen) == 3:
                    break
        assert seen == [0, 1, 2]
        assert sub.closed

    @pytest.mark.asyncio
    async def test_delivered_counter(self, service):
        client = service.client()
        await client.publish(NUMBERS, 1)
        await client.publish(NUMBERS, 2)
        sub = client.subscribe(NUMBERS)
        await sub.next()
        assert sub.delivered == 1


# ── Subscription close ───────────────────────────────────────────

class TestClose:
    @pytest.mark.asyncio
    async def test_close_wakes_pending_read(self, service):
        sub = service.client().subscribe(NUMBERS)
        reader = asyncio.create_task(sub.next())
        await asyncio.sleep(0.05)
        sub.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(reader, 1)

    @pytest.mark.asyncio
    async def test_next_after_close(self, service):
        client = service.client()
        await client.publish(NUMBERS, 1)
        sub = client.subscribe(NUMBERS)
        sub.close()
        with pytest.raises(StopAsyncIteration):
            await sub.next()

    @pytest.mark.asyncio
    async def test_close_twice(self, service):
        sub = service.client().subscribe(NUMBERS)
        sub.close()
        sub.close()  # no error
        assert sub.closed


# ── States / barriers ────────────────────────────────────────────

class TestStates:
    @pytest.mark.asyncio
    async def test_signal_counts_each_call(self, service):
        client = service.client()
        assert await client.signal_entry(READY) == 1
        assert await client.signal_entry(READY) == 2
        assert service.counter("ready") == 2

    @pytest.mark.asyncio
    async def test_states_are_independent(self, service):
        client = service.client()
        await client.signal_entry(READY)
        assert service.counter("done") == 0

    @pytest.mark.asyncio
    async def test_barrier_releases_all_together(self, service):
        clients = [service.client() for _ in range(3)]
        first = [asyncio.create_task(c.signal_and_wait(READY, 3)) for c in clients[:2]]
        await asyncio.sleep(0.05)
        assert not any(t.done() for t in first)
        last = await asyncio.wait_for(clients[2].signal_and_wait(READY, 3), 1)
        assert last == 3
        seqs = await asyncio.wait_for(asyncio.gather(*first), 1)
        assert sorted(seqs) == [1, 2]

    @pytest.mark.asyncio
    async def test_barrier_already_reached(self, service):
        client = service.client()
        await client.signal_entry(READY)
        await asyncio.wait_for(client.barrier(READY, 1), 1)

    @pytest.mark.asyncio
    async def test_counter_never_exceeds_fleet(self, service):
        client = service.client()
        for _ in range(3):
            await client.signal_entry(READY)
        with pytest.raises(CoordinationError):
            await client.signal_entry(READY)
        assert service.counter("ready") == 3

    @pytest.mark.asyncio
    async def test_target_above_fleet_rejected(self, service):
        with pytest.raises(CoordinationError):
            await service.client().barrier(READY, 4)

    @pytest.mark.asyncio
    async def test_unbounded_service(self):
        svc = MemorySyncService()
        client = svc.client()
        for _ in range(10):
            await client.signal_entry(READY)
        assert svc.counter("ready") == 10
