"""Coordination client contract: topics, states, subscriptions.

A topic is an append-only, typed log. Subscribing returns a
:class:`Subscription` that replays the log from its first entry and then
blocks for new ones, so a subscriber that registers late still observes
everything published. A state is a named counter used for fleet-wide
rendezvous: ``signal_entry`` increments it, ``barrier`` blocks until it
reaches a target.

The handle is always passed explicitly into workflows; there is no
module-level client.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Topic:
    """A named broadcast channel with a fixed message type.

    ``encode`` turns a value into a JSON-compatible payload, ``decode``
    reverses it.
    """

    name: str
    encode: Callable[[Any], Any] = lambda v: v
    decode: Callable[[Any], Any] = lambda v: v


@dataclass(frozen=True)
class State:
    """A named barrier counter."""

    name: str


class Subscription:
    """Live, ordered view over a topic's log.

    Use as an async iterator or call :meth:`next`. The subscription never
    ends on its own; :meth:`close` releases it and wakes any pending read,
    which then raises ``StopAsyncIteration``.
    """

    def __init__(self, topic: Topic, fetch: Callable[[int], Awaitable[list[Any]]]) -> None:
        self.topic = topic
        self._fetch = fetch
        self._cursor = 0
        self._buffer: deque[Any] = deque()
        self._pending: asyncio.Future[list[Any]] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def delivered(self) -> int:
        """Number of entries handed to the caller so far."""
        return self._cursor - len(self._buffer)

    async def next(self, timeout: float | None = None) -> Any:
        """Return the next value, waiting up to ``timeout`` seconds.

        Raises:
            StopAsyncIteration: If the subscription is (or gets) closed.
            asyncio.TimeoutError: If nothing arrives within ``timeout``.
        """
        if self._closed:
            raise StopAsyncIteration
        while not self._buffer:
            self._pending = asyncio.ensure_future(self._fetch(self._cursor))
            try:
                entries = await asyncio.wait_for(self._pending, timeout)
            except asyncio.CancelledError:
                if self._closed:
                    raise StopAsyncIteration from None
                raise
            finally:
                self._pending = None
            self._cursor += len(entries)
            self._buffer.extend(entries)
        return self.topic.decode(self._buffer.popleft())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        logger.debug("Closed subscription to %s", self.topic.name)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Any:
        return await self.next()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()


class SyncClient(ABC):
    """Handle to a shared coordination service.

    Subclasses supply the transport (``_append``, ``_read``,
    ``signal_entry``, ``barrier``); every failure there must surface as
    :class:`~blockswap_bench.errors.CoordinationError`.
    """

    async def publish(self, topic: Topic, value: Any) -> int:
        """Append ``value`` to ``topic``. Returns its 1-based sequence number."""
        seq = await self._append(topic.name, topic.encode(value))
        logger.debug("Published #%d to %s", seq, topic.name)
        return seq

    def subscribe(self, topic: Topic) -> Subscription:
        """Open a subscription that replays ``topic`` from the start."""
        return Subscription(topic, lambda cursor: self._read(topic.name, cursor))

    async def signal_and_wait(self, state: State, target: int) -> int:
        """Signal ``state`` and block until ``target`` signals have arrived."""
        seq = await self.signal_entry(state)
        logger.debug("Signalled %s (%d/%d), waiting", state.name, seq, target)
        await self.barrier(state, target)
        return seq

    @abstractmethod
    async def signal_entry(self, state: State) -> int:
        """Increment the counter for ``state``. Returns the new count."""

    @abstractmethod
    async def barrier(self, state: State, target: int) -> None:
        """Block until the counter for ``state`` reaches ``target``."""

    @abstractmethod
    async def _append(self, name: str, payload: Any) -> int: ...

    @abstractmethod
    async def _read(self, name: str, cursor: int) -> list[Any]:
        """Return entries from ``cursor`` on, blocking until at least one exists."""

    async def close(self) -> None:
        """Release transport resources."""

    async def __aenter__(self) -> SyncClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
