"""Networking layer: host endpoint and peer records."""

from blockswap_bench.network.host import Host
from blockswap_bench.network.peer import AddressRecord, Peer, PeerState

__all__ = ["Host", "AddressRecord", "Peer", "PeerState"]
