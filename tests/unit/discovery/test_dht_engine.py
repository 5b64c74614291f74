"""Tests for dhtseek.discovery.dht."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dhtseek.core.bencode import decode, encode
from dhtseek.discovery.dht import (
    AsyncDHTEngine,
    DHTNode,
    DHTProtocol,
    DHTToken,
    KademliaRoutingTable,
    parse_compact_nodes,
    xor_distance,
)
from dhtseek.models import DiscoveryConfig
from dhtseek.utils.exceptions import EngineStartError

pytestmark = [pytest.mark.unit, pytest.mark.discovery]

INFO_HASH = bytes.fromhex("d1c5676ae7ac98e8b19f63565905105e3c4c37a2")
REMOTE_ADDR = ("198.51.100.7", 6881)


def _engine(**config_kwargs) -> AsyncDHTEngine:
    config = DiscoveryConfig(bind_ip="127.0.0.1", **config_kwargs)
    engine = AsyncDHTEngine(config=config, node_id=b"\x00" * 19 + b"\x01")
    engine.transport = MagicMock()
    return engine


def _sent_messages(engine: AsyncDHTEngine) -> list[dict]:
    return [decode(call.args[0]) for call in engine.transport.sendto.call_args_list]


def _query(method: bytes, args: dict, tid: bytes = b"qq") -> bytes:
    return encode({b"t": tid, b"y": b"q", b"q": method, b"a": args})


class TestDHTNode:
    """DHTNode value semantics."""

    def test_equality_and_hash(self):
        node1 = DHTNode(b"\x00" * 20, "127.0.0.1", 6881)
        node2 = DHTNode(b"\x00" * 20, "127.0.0.1", 6881)
        node3 = DHTNode(b"\x01" * 20, "127.0.0.1", 6881)

        assert node1 == node2
        assert hash(node1) == hash(node2)
        assert node1 != node3
        assert node1 != "not a node"

    def test_compact_round_trips_through_parser(self):
        node = DHTNode(b"\xab" * 20, "10.1.2.3", 51413)
        compact = node.compact()

        assert len(compact) == 26
        assert parse_compact_nodes(compact) == [node]

    def test_parse_compact_nodes_skips_partial_and_zero_port(self):
        good = DHTNode(b"\x01" * 20, "10.0.0.1", 1000).compact()
        zero_port = b"\x02" * 20 + b"\x0a\x00\x00\x02" + b"\x00\x00"

        nodes = parse_compact_nodes(good + zero_port + b"\x03" * 10)

        assert [n.ip for n in nodes] == ["10.0.0.1"]


class TestKademliaRoutingTable:
    """Routing table bookkeeping."""

    def test_add_and_find_closest(self):
        table = KademliaRoutingTable(b"\x00" * 20, k=8)
        near = DHTNode(b"\x00" * 19 + b"\x02", "10.0.0.1", 1)
        far = DHTNode(b"\xff" * 20, "10.0.0.2", 2)

        assert table.add_node(far)
        assert table.add_node(near)
        assert len(table) == 2
        assert table.get_closest_nodes(b"\x00" * 20, 1) == [near]

    def test_rejects_own_id_and_bad_length(self):
        table = KademliaRoutingTable(b"\x00" * 20)

        assert not table.add_node(DHTNode(b"\x00" * 20, "10.0.0.1", 1))
        assert not table.add_node(DHTNode(b"\x01" * 5, "10.0.0.1", 1))
        assert len(table) == 0

    def test_full_bucket_replaces_bad_node(self):
        table = KademliaRoutingTable(b"\x00" * 20, k=2)
        first = DHTNode(b"\x80" + b"\x00" * 19, "10.0.0.1", 1)
        second = DHTNode(b"\x80" + b"\x00" * 18 + b"\x01", "10.0.0.2", 2)
        third = DHTNode(b"\x80" + b"\x00" * 18 + b"\x02", "10.0.0.3", 3)

        table.add_node(first)
        table.add_node(second)
        assert not table.add_node(third)

        table.mark_node_bad(first.node_id)
        assert table.add_node(third)
        assert first.node_id not in table.nodes
        assert third.node_id in table.nodes

    def test_mark_good_resets_failures(self):
        table = KademliaRoutingTable(b"\x00" * 20)
        node = DHTNode(b"\x05" * 20, "10.0.0.5", 5)
        table.add_node(node)

        table.mark_node_bad(node.node_id)
        table.mark_node_bad(node.node_id)
        assert node.failed_queries == 2
        table.mark_node_good(node.node_id)

        assert node.is_good
        assert node.failed_queries == 0
        assert node.successful_queries == 1

    def test_remove_bad_nodes(self):
        table = KademliaRoutingTable(b"\x00" * 20)
        node = DHTNode(b"\x05" * 20, "10.0.0.5", 5)
        table.add_node(node)
        for _ in range(3):
            table.mark_node_bad(node.node_id)

        assert table.remove_bad_nodes() == 1
        assert len(table) == 0
        assert table.get_stats()["total_nodes"] == 0

    def test_xor_distance(self):
        assert xor_distance(b"\x00" * 20, b"\x00" * 19 + b"\x03") == 3


class TestEngineLifecycle:
    """Binding, running and stopping."""

    @pytest.mark.asyncio
    async def test_create_binds_ephemeral_port(self):
        engine = await AsyncDHTEngine.create(
            port=0, min_peer_hint=3, config=DiscoveryConfig(bind_ip="127.0.0.1")
        )
        try:
            assert engine.bind_port > 0
            assert engine.min_peer_hint == 3
            assert not engine.is_running
        finally:
            await engine.stop()
        assert engine.transport is None

    @pytest.mark.asyncio
    async def test_create_bind_failure_raises_engine_start_error(self):
        loop = asyncio.get_running_loop()
        with patch.object(
            loop, "create_datagram_endpoint", side_effect=OSError(98, "Address in use")
        ):
            with pytest.raises(EngineStartError) as exc_info:
                await AsyncDHTEngine.create(port=6881)

        assert exc_info.value.details["port"] == 6881

    @pytest.mark.asyncio
    async def test_two_engines_ping_each_other(self):
        config = DiscoveryConfig(bind_ip="127.0.0.1", query_timeout=2.0)
        engine_a = await AsyncDHTEngine.create(port=0, config=config)
        engine_b = await AsyncDHTEngine.create(port=0, config=config)
        try:
            responder = await engine_a.ping(("127.0.0.1", engine_b.bind_port))
            assert responder == engine_b.node_id
            assert engine_a.node_id in engine_b.routing_table.nodes
        finally:
            await engine_a.stop()
            await engine_b.stop()

    @pytest.mark.asyncio
    async def test_run_schedules_background_tasks_once(self):
        engine = _engine()
        with patch.object(engine, "_bootstrap", new=AsyncMock()) as bootstrap:
            engine.run()
            engine.run()
            await asyncio.sleep(0)

            assert engine.is_running
            assert bootstrap.await_count == 1
            await engine.stop()
        assert not engine.is_running

    def test_run_without_transport_raises(self):
        engine = AsyncDHTEngine()
        with pytest.raises(RuntimeError):
            engine.run()


class TestKRPCQueries:
    """Outgoing queries and response matching."""

    @pytest.mark.asyncio
    async def test_response_resolves_pending_query(self):
        engine = _engine()
        task = asyncio.create_task(
            engine._send_query(REMOTE_ADDR, "ping", {b"id": engine.node_id})
        )
        await asyncio.sleep(0)

        sent = _sent_messages(engine)[0]
        assert sent[b"q"] == b"ping"
        response = {b"t": sent[b"t"], b"y": b"r", b"r": {b"id": b"\x09" * 20}}
        engine.handle_datagram(encode(response), REMOTE_ADDR)

        assert await task == response
        assert engine.pending_queries == {}
        assert engine.stats["queries_sent"] == 1

    @pytest.mark.asyncio
    async def test_query_timeout_returns_none(self):
        engine = _engine(query_timeout=0.01)

        result = await engine._send_query(REMOTE_ADDR, "ping", {b"id": engine.node_id})

        assert result is None
        assert engine.stats["queries_timed_out"] == 1
        assert engine.pending_queries == {}

    def test_unknown_transaction_is_ignored(self):
        engine = _engine()
        engine.handle_datagram(
            encode({b"t": b"zz", b"y": b"r", b"r": {b"id": b"\x01" * 20}}), REMOTE_ADDR
        )
        engine.handle_datagram(b"not bencode", REMOTE_ADDR)

        engine.transport.sendto.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_node_learns_nodes(self):
        engine = _engine()
        learned = DHTNode(b"\x42" * 20, "10.9.9.9", 4242)
        engine._send_query = AsyncMock(
            return_value={
                b"y": b"r",
                b"r": {b"id": b"\x07" * 20, b"nodes": learned.compact()},
            }
        )

        nodes = await engine.find_node(REMOTE_ADDR, engine.node_id)

        assert nodes == [learned]
        assert b"\x07" * 20 in engine.routing_table.nodes
        assert learned.node_id in engine.routing_table.nodes


class TestLookups:
    """Iterative get_peers and result publishing."""

    @pytest.mark.asyncio
    async def test_request_peers_publishes_batch(self):
        engine = _engine()
        engine.min_peer_hint = 2
        seed = DHTNode(b"\x10" * 20, *REMOTE_ADDR)
        engine.routing_table.add_node(seed)
        tokens = [b"\x7f\x00\x00\x01\x1a\xe1", b"\x7f\x00\x00\x02\x1a\xe2"]
        engine._send_query = AsyncMock(
            return_value={
                b"y": b"r",
                b"r": {b"id": seed.node_id, b"values": tokens, b"token": b"tk"},
            }
        )

        assert engine.request_peers(INFO_HASH) is True
        batch = await asyncio.wait_for(engine.results.get(), timeout=1.0)

        assert batch == {INFO_HASH: tokens}
        method = engine._send_query.await_args.args[1]
        assert method == "get_peers"
        assert engine.stats["peers_found"] == 2
        await engine.stop()

    @pytest.mark.asyncio
    async def test_lookup_passes_malformed_values_through(self):
        engine = _engine()
        engine.routing_table.add_node(DHTNode(b"\x10" * 20, *REMOTE_ADDR))
        engine._send_query = AsyncMock(
            return_value={
                b"y": b"r",
                b"r": {b"id": b"\x10" * 20, b"values": [b"\x01\x02\x03", 5, b"\x7f\x00\x00\x01\x00\x50"]},
            }
        )

        peers = await engine.get_peers(INFO_HASH, max_peers=1)

        assert peers == [b"\x01\x02\x03", b"\x7f\x00\x00\x01\x00\x50"]

    @pytest.mark.asyncio
    async def test_lookup_follows_returned_nodes(self):
        engine = _engine()
        first = DHTNode(b"\x80" * 20, "10.0.0.1", 1)
        closer = DHTNode(INFO_HASH[:19] + b"\x00", "10.0.0.2", 2)
        engine.routing_table.add_node(first)
        peer = b"\x0a\x00\x00\x63\x1a\xe1"

        async def fake_query(addr, query, args):
            if addr == first.address:
                return {b"y": b"r", b"r": {b"id": first.node_id, b"nodes": closer.compact()}}
            return {b"y": b"r", b"r": {b"id": closer.node_id, b"values": [peer]}}

        engine._send_query = AsyncMock(side_effect=fake_query)

        peers = await engine.get_peers(INFO_HASH, max_peers=1)

        assert peers == [peer]
        queried = [call.args[0] for call in engine._send_query.await_args_list]
        assert queried == [first.address, closer.address]

    @pytest.mark.asyncio
    async def test_no_batch_when_nothing_found(self):
        engine = _engine()
        engine.routing_table.add_node(DHTNode(b"\x10" * 20, *REMOTE_ADDR))
        engine._send_query = AsyncMock(return_value=None)

        peers = await engine.get_peers(INFO_HASH)

        assert peers == []
        assert engine.results.empty()
        assert not engine.routing_table.nodes[b"\x10" * 20].is_good

    @pytest.mark.asyncio
    async def test_announce_uses_received_tokens(self):
        engine = _engine()
        seed = DHTNode(b"\x10" * 20, *REMOTE_ADDR)
        engine.routing_table.add_node(seed)
        engine._send_query = AsyncMock(
            return_value={
                b"y": b"r",
                b"r": {b"id": seed.node_id, b"values": [b"\x7f\x00\x00\x01\x1a\xe1"], b"token": b"tk"},
            }
        )

        await engine._lookup(INFO_HASH, announce=True)

        methods = [call.args[1] for call in engine._send_query.await_args_list]
        assert methods == ["get_peers", "announce_peer"]
        announce_args = engine._send_query.await_args_list[-1].args[2]
        assert announce_args[b"token"] == b"tk"
        assert announce_args[b"implied_port"] == 1

    @pytest.mark.asyncio
    async def test_overlapping_lookups_announce_with_own_tokens(self):
        engine = _engine()
        seed = DHTNode(b"\x10" * 20, *REMOTE_ADDR)
        engine.routing_table.add_node(seed)
        release_first = asyncio.Event()
        get_peers_calls = 0
        announced: list[bytes] = []

        async def fake_query(addr, query, args):
            nonlocal get_peers_calls
            if query == "announce_peer":
                announced.append(args[b"token"])
                return {b"y": b"r", b"r": {b"id": seed.node_id}}
            get_peers_calls += 1
            if get_peers_calls == 1:
                await release_first.wait()
                token = b"tok-A"
            else:
                token = b"tok-B"
            return {
                b"y": b"r",
                b"r": {b"id": seed.node_id, b"values": [b"\x7f\x00\x00\x01\x1a\xe1"], b"token": token},
            }

        engine._send_query = AsyncMock(side_effect=fake_query)

        first = asyncio.create_task(engine._lookup(INFO_HASH, announce=True))
        for _ in range(10):
            await asyncio.sleep(0)
        await engine._lookup(INFO_HASH, announce=True)
        release_first.set()
        await asyncio.wait_for(first, timeout=1.0)

        assert announced == [b"tok-B", b"tok-A"]
        assert engine.stats["lookups_completed"] == 2

    @pytest.mark.asyncio
    async def test_announce_ignores_other_info_hash_tokens(self):
        engine = _engine()
        engine._send_query = AsyncMock()
        other = DHTToken(b"tk", b"\x22" * 20, DHTNode(b"\x10" * 20, *REMOTE_ADDR))

        assert await engine.announce_peer(INFO_HASH, [other]) == 0
        engine._send_query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inflight_limit_drops_requests(self):
        engine = _engine(max_inflight_lookups=1)
        release = asyncio.Event()

        async def blocked_lookup(info_hash, announce):
            await release.wait()

        with patch.object(engine, "_lookup", side_effect=blocked_lookup):
            assert engine.request_peers(INFO_HASH) is True
            assert engine.request_peers(INFO_HASH) is False

        assert engine.stats["lookups_dropped"] == 1
        await engine.stop()

    def test_request_peers_rejects_bad_length(self):
        engine = _engine()
        with pytest.raises(ValueError):
            engine.request_peers(b"short")


class TestInboundQueries:
    """Answering other nodes."""

    def test_ping(self):
        engine = _engine()
        sender = b"\x33" * 20

        engine.handle_datagram(_query(b"ping", {b"id": sender}), REMOTE_ADDR)

        (response,) = _sent_messages(engine)
        assert response[b"y"] == b"r"
        assert response[b"t"] == b"qq"
        assert response[b"r"][b"id"] == engine.node_id
        assert sender in engine.routing_table.nodes

    def test_find_node_returns_compact_nodes(self):
        engine = _engine()
        known = DHTNode(b"\x44" * 20, "10.4.4.4", 4444)
        engine.routing_table.add_node(known)

        engine.handle_datagram(
            _query(b"find_node", {b"id": b"\x33" * 20, b"target": b"\x44" * 20}),
            REMOTE_ADDR,
        )

        response = _sent_messages(engine)[0]
        assert known in parse_compact_nodes(response[b"r"][b"nodes"])

    def test_announce_then_get_peers_returns_stored_peer(self):
        engine = _engine()
        sender = b"\x33" * 20

        engine.handle_datagram(
            _query(b"get_peers", {b"id": sender, b"info_hash": INFO_HASH}), REMOTE_ADDR
        )
        token = _sent_messages(engine)[0][b"r"][b"token"]

        engine.handle_datagram(
            _query(
                b"announce_peer",
                {b"id": sender, b"info_hash": INFO_HASH, b"port": 51413, b"token": token},
            ),
            REMOTE_ADDR,
        )
        assert _sent_messages(engine)[1][b"y"] == b"r"

        engine.handle_datagram(
            _query(b"get_peers", {b"id": b"\x55" * 20, b"info_hash": INFO_HASH}),
            ("203.0.113.9", 7000),
        )
        values = _sent_messages(engine)[2][b"r"][b"values"]
        assert values == [b"\xc6\x33\x64\x07" + (51413).to_bytes(2, "big")]

    def test_announce_with_bad_token_is_rejected(self):
        engine = _engine()

        engine.handle_datagram(
            _query(
                b"announce_peer",
                {b"id": b"\x33" * 20, b"info_hash": INFO_HASH, b"port": 1, b"token": b"bogus"},
            ),
            REMOTE_ADDR,
        )

        response = _sent_messages(engine)[0]
        assert response[b"y"] == b"e"
        assert response[b"e"][0] == 203
        assert engine.peer_storage == {}

    def test_token_survives_one_rotation(self):
        engine = _engine()
        token = engine._make_token(REMOTE_ADDR[0])

        engine._cleanup_old_data()
        assert engine._verify_token(token, REMOTE_ADDR[0])
        engine._cleanup_old_data()
        assert not engine._verify_token(token, REMOTE_ADDR[0])

    def test_unknown_method(self):
        engine = _engine()

        engine.handle_datagram(_query(b"vote", {b"id": b"\x33" * 20}), REMOTE_ADDR)

        response = _sent_messages(engine)[0]
        assert response[b"e"] == [204, b"Method Unknown"]

    def test_deeply_nested_datagram_is_dropped(self):
        engine = _engine()

        engine.handle_datagram(b"l" * 65000, REMOTE_ADDR)

        engine.transport.sendto.assert_not_called()
        assert engine.stats["queries_received"] == 0

    def test_protocol_delegates_to_engine(self):
        engine = MagicMock()
        protocol = DHTProtocol(engine)

        protocol.datagram_received(b"data", ("10.0.0.1", 1, 0, 0))

        engine.handle_datagram.assert_called_once_with(b"data", ("10.0.0.1", 1))

    def test_get_stats(self):
        engine = _engine()
        stats = engine.get_stats()

        assert stats["node_id"] == engine.node_id.hex()
        assert stats["routing_table"]["total_nodes"] == 0
        assert stats["lookups_requested"] == 0
