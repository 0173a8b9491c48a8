"""Coordination layer: topics, barrier states and their services."""

from blockswap_bench.sync.client import State, Subscription, SyncClient, Topic
from blockswap_bench.sync.http import HttpSyncClient
from blockswap_bench.sync.memory import MemorySyncClient, MemorySyncService
from blockswap_bench.sync.service import SyncServer

__all__ = [
    "State",
    "Subscription",
    "SyncClient",
    "Topic",
    "HttpSyncClient",
    "MemorySyncClient",
    "MemorySyncService",
    "SyncServer",
]
