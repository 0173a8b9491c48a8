"""In-process coordination service.

Backs the HTTP sync server and doubles as the fake used in tests and
single-process runs. All instances sharing one :class:`MemorySyncService`
see the same topics and counters.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

from blockswap_bench.errors import CoordinationError
from blockswap_bench.sync.client import State, SyncClient

logger = logging.getLogger(__name__)


class MemorySyncService:
    """Topic logs and barrier counters guarded by one condition variable.

    Args:
        instance_count: When set, a counter may never exceed it; an extra
            signal raises :class:`CoordinationError`.
    """

    def __init__(self, instance_count: int | None = None) -> None:
        self.instance_count = instance_count
        self._topics: dict[str, list[Any]] = defaultdict(list)
        self._counters: dict[str, int] = defaultdict(int)
        self._changed = asyncio.Condition()

    # ── Topics ───────────────────────────────────────────────────

    async def append(self, topic: str, payload: Any) -> int:
        async with self._changed:
            log = self._topics[topic]
            log.append(payload)
            self._changed.notify_all()
            return len(log)

    async def read(self, topic: str, cursor: int) -> list[Any]:
        """Entries from ``cursor`` on; blocks until at least one exists."""
        if cursor < 0:
            raise CoordinationError(f"negative cursor {cursor} for topic {topic}")
        async with self._changed:
            await self._changed.wait_for(lambda: len(self._topics[topic]) > cursor)
            return list(self._topics[topic][cursor:])

    def topic_log(self, topic: str) -> list[Any]:
        return list(self._topics.get(topic, []))

    # ── States ───────────────────────────────────────────────────

    async def signal(self, state: str) -> int:
        async with self._changed:
            count = self._counters[state] + 1
            if self.instance_count is not None and count > self.instance_count:
                raise CoordinationError(
                    f"state {state} signalled {count} times, fleet has {self.instance_count} instances"
                )
            self._counters[state] = count
            self._changed.notify_all()
            return count

    async def wait(self, state: str, target: int) -> int:
        if self.instance_count is not None and target > self.instance_count:
            raise CoordinationError(
                f"barrier target {target} for {state} exceeds fleet size {self.instance_count}"
            )
        async with self._changed:
            await self._changed.wait_for(lambda: self._counters[state] >= target)
            return self._counters[state]

    def counter(self, state: str) -> int:
        return self._counters.get(state, 0)

    def client(self) -> MemorySyncClient:
        return MemorySyncClient(self)


class MemorySyncClient(SyncClient):
    """:class:`SyncClient` bound to a :class:`MemorySyncService`."""

    def __init__(self, service: MemorySyncService) -> None:
        self.service = service

    async def signal_entry(self, state: State) -> int:
        return await self.service.signal(state.name)

    async def barrier(self, state: State, target: int) -> None:
        await self.service.wait(state.name, target)

    async def _append(self, name: str, payload: Any) -> int:
        return await self.service.append(name, payload)

    async def _read(self, name: str, cursor: int) -> list[Any]:
        return await self.service.read(name, cursor)
