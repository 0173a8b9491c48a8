"""Peer management: address records and connection state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field


class AddressRecord(BaseModel):
    """Everything a requestor needs to dial the provider.

    ``addrs`` holds ``host:port`` endpoints; ``peer_id`` is checked against
    the identity the remote host reports so a stale record is rejected.
    """

    peer_id: str
    addrs: list[str] = Field(min_length=1)


class PeerState(str, Enum):
    """Connection state of a peer."""

    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class Peer:
    """Represents a known peer."""

    peer_id: str
    endpoint: str
    state: PeerState = PeerState.DISCOVERED
    last_seen: float = field(default_factory=time.time)
    latency_ms: float | None = None

    def mark_seen(self) -> None:
        """Update last seen timestamp."""
        self.last_seen = time.time()
