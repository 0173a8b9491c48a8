"""Tests for the host and the HTTP block exchange over real sockets."""

from __future__ import annotations

import pytest

from blockswap_bench.errors import ConnectError, ExchangeError
from blockswap_bench.exchange.blocks import Block, ContentIdentifier
from blockswap_bench.exchange.service import BlockExchange
from blockswap_bench.network.host import Host
from blockswap_bench.network.peer import AddressRecord, PeerState


# ── Helpers ──────────────────────────────────────────────────────

def make_pair() -> tuple[Host, BlockExchange, Host, BlockExchange]:
    provider = Host(host="127.0.0.1", port=0)
    requestor = Host(host="127.0.0.1", port=0)
    return provider, BlockExchange(provider), requestor, BlockExchange(requestor)


# ── Host ─────────────────────────────────────────────────────────

class TestHost:
    @pytest.mark.asyncio
    async def test_ephemeral_port_resolved(self):
        async with Host(host="127.0.0.1", port=0) as host:
            assert host.port > 0
            assert host.listen_addresses() == [f"127.0.0.1:{host.port}"]

    def test_wildcard_advertises_loopback(self):
        host = Host(host="0.0.0.0", port=4001)
        assert host.listen_addresses() == ["127.0.0.1:4001"]

    def test_advertise_host_override(self):
        host = Host(host="0.0.0.0", port=4001, advertise_host="10.1.2.3")
        record = host.address_record()
        assert record.addrs == ["10.1.2.3:4001"]
        assert record.peer_id == host.peer_id

    @pytest.mark.asyncio
    async def test_connect(self):
        async with Host(host="127.0.0.1") as a, Host(host="127.0.0.1") as b:
            peer = await b.connect(a.address_record())
            assert peer.state == PeerState.CONNECTED
            assert peer.latency_ms is not None
            assert [p.peer_id for p in b.connected_peers] == [a.peer_id]

    @pytest.mark.asyncio
    async def test_connect_skips_dead_address(self):
        async with Host(host="127.0.0.1") as a, Host(host="127.0.0.1") as b:
            record = AddressRecord(peer_id=a.peer_id, addrs=["127.0.0.1:1", *a.listen_addresses()])
            peer = await b.connect(record)
            assert peer.endpoint == a.listen_addresses()[0]

    @pytest.mark.asyncio
    async def test_connect_rejects_wrong_identity(self):
        async with Host(host="127.0.0.1") as a, Host(host="127.0.0.1") as b:
            record = AddressRecord(peer_id="someone-else", addrs=a.listen_addresses())
            with pytest.raises(ConnectError):
                await b.connect(record)
            assert b.connected_peers == []

    @pytest.mark.asyncio
    async def test_connect_unreachable(self):
        async with Host(host="127.0.0.1") as b:
            with pytest.raises(ConnectError):
                await b.connect(AddressRecord(peer_id="x", addrs=["127.0.0.1:1"]))


# ── Exchange ─────────────────────────────────────────────────────

class TestBlockExchange:
    @pytest.mark.asyncio
    async def test_fetch_announced_block(self):
        ph, pex, rh, rex = make_pair()
        async with ph, rh:
            block = Block.from_data(b"x" * 1024)
            await pex.put(block)
            await pex.announce(block)
            await rh.connect(ph.address_record())

            fetched = await rex.get(block.cid)
            assert fetched.data == block.data
            assert fetched.cid == block.cid
            assert rex.has(block.cid)
            assert pex.has(block.cid)  # provider keeps its copy
            assert pex.blocks_served == 1
            assert rex.blocks_fetched == 1

    @pytest.mark.asyncio
    async def test_second_get_is_local(self):
        ph, pex, rh, rex = make_pair()
        async with ph, rh:
            block = Block.from_data(b"again")
            await pex.put(block)
            await pex.announce(block)
            await rh.connect(ph.address_record())
            await rex.get(block.cid)
            await rex.get(block.cid)
            assert pex.blocks_served == 1

    @pytest.mark.asyncio
    async def test_unannounced_block_not_served(self):
        ph, pex, rh, rex = make_pair()
        async with ph, rh:
            block = Block.from_data(b"hidden")
            await pex.put(block)
            await rh.connect(ph.address_record())
            with pytest.raises(ExchangeError) as exc:
                await rex.get(block.cid)
            assert exc.value.phase == "get"
            assert exc.value.cid == block.cid

    @pytest.mark.asyncio
    async def test_get_without_peers(self):
        _, _, rh, rex = make_pair()
        async with rh:
            with pytest.raises(ExchangeError):
                await rex.get(ContentIdentifier.for_data(b"x"))

    @pytest.mark.asyncio
    async def test_announce_requires_put(self):
        ph, pex, _, _ = make_pair()
        with pytest.raises(ExchangeError) as exc:
            await pex.announce(Block.from_data(b"not stored"))
        assert exc.value.phase == "announce"

    @pytest.mark.asyncio
    async def test_invalid_cid_in_path(self):
        ph, pex, rh, _ = make_pair()
        async with ph, rh:
            url = f"http://{ph.listen_addresses()[0]}/blocks/not-a-cid"
            async with rh.session.get(url) as resp:
                assert resp.status == 400
