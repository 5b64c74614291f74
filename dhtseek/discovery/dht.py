"""Mainline DHT (BEP 5) engine.

Provides a Kademlia routing table, KRPC queries over UDP, iterative
``get_peers`` lookups that publish their findings as result batches, and the
server side of the protocol so the node stays useful to the network while it
runs.
"""

from __future__ import annotations

import asyncio
import hashlib
import ipaddress
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Any

from dhtseek.core.bencode import BencodeDecodeError, BencodeEncodeError, decode, encode
from dhtseek.models import DiscoveryConfig
from dhtseek.utils.exceptions import EngineStartError
from dhtseek.utils.logging_config import LoggingContext, log_exception
from dhtseek.utils.tasks import BackgroundTaskGroup

logger = logging.getLogger(__name__)

_ERROR_TRANSPORT_NOT_INITIALIZED = "DHT transport is not initialized"

NODE_ID_LENGTH = 20
COMPACT_NODE_LENGTH = 26  # 20 ID + 4 IP + 2 port
TOKEN_LIFETIME = 600.0
CLEANUP_INTERVAL = 300.0
STORED_PEER_LIFETIME = 1800.0
MAX_STORED_PEERS_PER_HASH = 100
MAX_VALUES_PER_RESPONSE = 50
BAD_NODE_FAILURES = 3

# KRPC error codes
ERROR_PROTOCOL = 203
ERROR_METHOD_UNKNOWN = 204

ResultBatch = dict[bytes, list[bytes]]


@dataclass
class DHTNode:
    """Represents a DHT node."""

    node_id: bytes
    ip: str
    port: int
    last_seen: float = field(default_factory=time.time)
    is_good: bool = True
    failed_queries: int = 0
    successful_queries: int = 0

    def __hash__(self):
        """Return hash of the node."""
        return hash((self.node_id, self.ip, self.port))

    def __eq__(self, other):
        """Check equality with another node."""
        if not isinstance(other, DHTNode):
            return False
        return (
            self.node_id == other.node_id
            and self.ip == other.ip
            and self.port == other.port
        )

    @property
    def address(self) -> tuple[str, int]:
        return (self.ip, self.port)

    def compact(self) -> bytes:
        """Return the 26-byte compact node info."""
        return (
            self.node_id
            + ipaddress.IPv4Address(self.ip).packed
            + self.port.to_bytes(2, "big")
        )


@dataclass
class DHTToken:
    """Token a remote node handed out for announce_peer."""

    token: bytes
    info_hash: bytes
    node: DHTNode
    created_time: float = field(default_factory=time.time)

    @property
    def expired(self) -> bool:
        return time.time() - self.created_time > TOKEN_LIFETIME


def xor_distance(a: bytes, b: bytes) -> int:
    """XOR metric between two 160-bit identifiers."""
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


def parse_compact_nodes(data: bytes) -> list[DHTNode]:
    """Parse BEP 5 compact node info, ignoring a trailing partial entry."""
    nodes = []
    for i in range(0, len(data) - COMPACT_NODE_LENGTH + 1, COMPACT_NODE_LENGTH):
        chunk = data[i : i + COMPACT_NODE_LENGTH]
        port = int.from_bytes(chunk[24:26], "big")
        if port == 0:
            continue
        ip = str(ipaddress.IPv4Address(chunk[20:24]))
        nodes.append(DHTNode(chunk[:20], ip, port))
    return nodes


class KademliaRoutingTable:
    """Kademlia routing table with k-buckets."""

    def __init__(self, node_id: bytes, k: int = 8):
        """Initialize Kademlia routing table.

        Args:
            node_id: This node's ID
            k: Bucket size (default 8)

        """
        self.node_id = node_id
        self.k = k
        self.buckets: list[list[DHTNode]] = [[] for _ in range(160)]
        self.nodes: dict[bytes, DHTNode] = {}

    def _bucket_index(self, node_id: bytes) -> int:
        """Bucket index: length of the common prefix with our own ID."""
        distance = xor_distance(self.node_id, node_id)
        if distance == 0:
            return 159
        return min(160 - distance.bit_length(), 159)

    def __len__(self) -> int:
        return len(self.nodes)

    def add_node(self, node: DHTNode) -> bool:
        """Add a node to the routing table."""
        if node.node_id == self.node_id or len(node.node_id) != NODE_ID_LENGTH:
            return False

        existing = self.nodes.get(node.node_id)
        if existing is not None:
            existing.ip = node.ip
            existing.port = node.port
            existing.last_seen = node.last_seen
            return True

        bucket = self.buckets[self._bucket_index(node.node_id)]
        if len(bucket) < self.k:
            bucket.append(node)
            self.nodes[node.node_id] = node
            return True

        # Replace a bad node if available
        for i, candidate in enumerate(bucket):
            if not candidate.is_good:
                del self.nodes[candidate.node_id]
                bucket[i] = node
                self.nodes[node.node_id] = node
                return True

        return False

    def remove_node(self, node_id: bytes) -> None:
        """Remove a node from the routing table."""
        node = self.nodes.pop(node_id, None)
        if node is not None:
            bucket = self.buckets[self._bucket_index(node_id)]
            if node in bucket:
                bucket.remove(node)

    def get_closest_nodes(self, target_id: bytes, count: int = 8) -> list[DHTNode]:
        """Get closest nodes to target ID, good nodes first on equal distance."""
        return sorted(
            self.nodes.values(),
            key=lambda n: (xor_distance(n.node_id, target_id), not n.is_good),
        )[:count]

    def find_by_address(self, addr: tuple[str, int]) -> DHTNode | None:
        for node in self.nodes.values():
            if node.address == addr:
                return node
        return None

    def mark_node_good(self, node_id: bytes) -> None:
        node = self.nodes.get(node_id)
        if node is not None:
            node.is_good = True
            node.failed_queries = 0
            node.successful_queries += 1
            node.last_seen = time.time()

    def mark_node_bad(self, node_id: bytes) -> None:
        node = self.nodes.get(node_id)
        if node is not None:
            node.is_good = False
            node.failed_queries += 1

    def remove_bad_nodes(self, max_failures: int = BAD_NODE_FAILURES) -> int:
        """Drop nodes that failed too many queries in a row."""
        bad = [
            node_id
            for node_id, node in self.nodes.items()
            if not node.is_good and node.failed_queries >= max_failures
        ]
        for node_id in bad:
            self.remove_node(node_id)
        return len(bad)

    def get_stats(self) -> dict[str, Any]:
        """Get routing table statistics."""
        total_nodes = len(self.nodes)
        good_nodes = sum(1 for n in self.nodes.values() if n.is_good)
        return {
            "total_nodes": total_nodes,
            "good_nodes": good_nodes,
            "non_empty_buckets": sum(1 for bucket in self.buckets if bucket),
        }


class AsyncDHTEngine:
    """Async DHT node that runs lookups on request and answers peers' queries.

    Lifecycle: ``await AsyncDHTEngine.create(...)`` binds the UDP socket,
    ``run()`` starts bootstrap and maintenance in the background, and
    ``request_peers()`` schedules a lookup whose peers are put on
    :attr:`results` as a ``{info_hash: [compact_peer, ...]}`` batch.
    """

    def __init__(
        self,
        min_peer_hint: int = 5,
        announce: bool = False,
        config: DiscoveryConfig | None = None,
        node_id: bytes | None = None,
    ):
        """Initialize DHT engine (no network activity yet)."""
        self.config = config or DiscoveryConfig()
        self.min_peer_hint = min_peer_hint
        self.announce = announce
        self.node_id = node_id or self._generate_node_id()

        self.transport: asyncio.DatagramTransport | None = None
        self.bind_ip = self.config.bind_ip
        self.bind_port = self.config.dht_port

        self.routing_table = KademliaRoutingTable(self.node_id, k=self.config.lookup_k)
        self.bootstrap_nodes = self._parse_bootstrap_nodes(self.config.dht_bootstrap_nodes)

        self.pending_queries: dict[bytes, asyncio.Future] = {}
        self._next_tid = int.from_bytes(os.urandom(2), "big")
        self.query_timeout = self.config.query_timeout

        # Secrets for the tokens we issue
        self.token_secret = os.urandom(20)
        self.previous_token_secret = self.token_secret

        # Peers announced to us: info_hash -> compact peer -> last announce time
        self.peer_storage: dict[bytes, dict[bytes, float]] = {}

        self.results: asyncio.Queue[ResultBatch] = asyncio.Queue()

        self._background = BackgroundTaskGroup("dht-background")
        self._lookups = BackgroundTaskGroup("dht-lookups")
        self._running = False

        self.stats: dict[str, int] = {
            "lookups_requested": 0,
            "lookups_dropped": 0,
            "lookups_completed": 0,
            "peers_found": 0,
            "queries_sent": 0,
            "queries_timed_out": 0,
            "queries_received": 0,
        }

    @staticmethod
    def _generate_node_id() -> bytes:
        """Generate a random node ID."""
        while True:
            node_id = os.urandom(NODE_ID_LENGTH)
            if node_id not in (b"\x00" * 20, b"\xff" * 20):
                return node_id

    @staticmethod
    def _parse_bootstrap_nodes(entries: list[str]) -> list[tuple[str, int]]:
        nodes = []
        for entry in entries:
            host, _, port = entry.rpartition(":")
            nodes.append((host.strip("[]"), int(port)))
        return nodes

    @classmethod
    async def create(
        cls,
        port: int = 0,
        min_peer_hint: int = 5,
        announce: bool = False,
        config: DiscoveryConfig | None = None,
    ) -> AsyncDHTEngine:
        """Construct an engine and bind its UDP socket.

        Raises:
            EngineStartError: if the UDP port cannot be bound.

        """
        config = config or DiscoveryConfig()
        if port != config.dht_port:
            config = config.model_copy(update={"dht_port": port})
        engine = cls(min_peer_hint=min_peer_hint, announce=announce, config=config)
        await engine.bind()
        return engine

    async def bind(self) -> None:
        """Open the UDP endpoint."""
        loop = asyncio.get_running_loop()
        try:
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: DHTProtocol(self),
                local_addr=(self.bind_ip, self.bind_port),
            )
        except OSError as e:
            msg = f"Cannot bind DHT UDP socket on {self.bind_ip}:{self.bind_port}: {e}"
            raise EngineStartError(
                msg, {"bind_ip": self.bind_ip, "port": self.bind_port}
            ) from e

        sockname = self.transport.get_extra_info("sockname")
        if sockname:
            self.bind_port = sockname[1]
        logger.info(
            "DHT node %s listening on %s:%d",
            self.node_id.hex()[:16],
            self.bind_ip,
            self.bind_port,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def run(self) -> None:
        """Start bootstrap, routing-table refresh and cleanup in the background.

        Returns immediately. Calling it twice has no effect.
        """
        if self._running:
            return
        if self.transport is None:
            raise RuntimeError(_ERROR_TRANSPORT_NOT_INITIALIZED)
        self._running = True
        self._background.create(self._bootstrap(), name="dht-bootstrap")
        self._background.create(self._refresh_loop(), name="dht-refresh")
        self._background.create(self._cleanup_loop(), name="dht-cleanup")

    async def stop(self) -> None:
        """Cancel lookups and background work and close the socket."""
        self._running = False
        await self._lookups.cancel_and_wait(timeout=5.0)
        await self._background.cancel_and_wait(timeout=5.0)

        for future in self.pending_queries.values():
            if not future.done():
                future.cancel()
        self.pending_queries.clear()

        if self.transport is not None:
            self.transport.close()
            self.transport = None

        logger.info("DHT node stopped")

    def request_peers(self, info_hash: bytes, announce: bool | None = None) -> bool:
        """Schedule a peer lookup for ``info_hash`` and return immediately.

        Returns False when the lookup was not scheduled because the in-flight
        limit (``max_inflight_lookups``) is reached.
        """
        if len(info_hash) != NODE_ID_LENGTH:
            msg = f"info_hash must be {NODE_ID_LENGTH} bytes, got {len(info_hash)}"
            raise ValueError(msg)

        self.stats["lookups_requested"] += 1
        limit = self.config.max_inflight_lookups
        if limit and len(self._lookups) >= limit:
            self.stats["lookups_dropped"] += 1
            logger.warning(
                "Skipping lookup for %s: %d lookups already in flight",
                info_hash.hex()[:8],
                len(self._lookups),
            )
            return False

        should_announce = self.announce if announce is None else announce
        self._lookups.create(
            self._lookup(info_hash, should_announce),
            name=f"dht-lookup-{info_hash.hex()[:8]}",
        )
        return True

    async def _lookup(self, info_hash: bytes, announce: bool) -> None:
        tokens: list[DHTToken] = []
        peers = await self.get_peers(info_hash, tokens=tokens)
        self.stats["lookups_completed"] += 1
        if peers:
            self.stats["peers_found"] += len(peers)
            self.results.put_nowait({info_hash: peers})
        if announce:
            await self.announce_peer(info_hash, tokens)

    async def get_peers(
        self,
        info_hash: bytes,
        max_peers: int | None = None,
        tokens: list[DHTToken] | None = None,
    ) -> list[bytes]:
        """Iterative Kademlia lookup (BEP 5) returning compact peer tokens.

        Queries the ``alpha`` closest unqueried nodes per round and keeps the
        ``k`` closest candidates. Stops when those have all been queried, when
        ``max_peers`` (default: the peer hint) values were collected, or at
        ``lookup_max_depth`` rounds. Tokens are returned in discovery order
        and are not validated here.

        Announce tokens handed out by the queried nodes are appended to
        ``tokens`` when a list is given.
        """
        max_peers = max_peers or self.min_peer_hint
        alpha = self.config.lookup_alpha
        k = self.config.lookup_k

        peers: list[bytes] = []
        seen: set[bytes] = set()
        queried: set[bytes] = set()
        candidates: dict[bytes, DHTNode] = {
            n.node_id: n for n in self.routing_table.get_closest_nodes(info_hash, k)
        }

        depth = 0
        while depth < self.config.lookup_max_depth:
            round_nodes = sorted(
                (n for n in candidates.values() if n.node_id not in queried),
                key=lambda n: xor_distance(n.node_id, info_hash),
            )[:alpha]
            if not round_nodes:
                break
            depth += 1

            responses = await asyncio.gather(
                *(self._query_get_peers(node, info_hash) for node in round_nodes)
            )
            for node, response in zip(round_nodes, responses):
                queried.add(node.node_id)
                if response is None:
                    continue

                values = response.get(b"values", [])
                if isinstance(values, list):
                    for value in values:
                        if isinstance(value, bytes) and value not in seen:
                            seen.add(value)
                            peers.append(value)

                nodes_data = response.get(b"nodes", b"")
                if isinstance(nodes_data, bytes):
                    for new_node in parse_compact_nodes(nodes_data):
                        self.routing_table.add_node(new_node)
                        candidates.setdefault(new_node.node_id, new_node)

                token = response.get(b"token")
                if tokens is not None and isinstance(token, bytes):
                    tokens.append(DHTToken(token, info_hash, node))

            if len(peers) >= max_peers:
                break

            closest = sorted(candidates, key=lambda nid: xor_distance(nid, info_hash))[:k]
            candidates = {nid: candidates[nid] for nid in closest}

        logger.debug(
            "Lookup for %s finished: %d peers, %d nodes queried, depth %d",
            info_hash.hex()[:8],
            len(peers),
            len(queried),
            depth,
        )
        return peers

    async def _query_get_peers(
        self, node: DHTNode, info_hash: bytes
    ) -> dict[bytes, Any] | None:
        """Send get_peers to one node; returns the ``r`` dict or None."""
        try:
            response = await self._send_query(
                node.address,
                "get_peers",
                {b"id": self.node_id, b"info_hash": info_hash},
            )
        except OSError as e:
            logger.debug("get_peers to %s:%s failed: %s", node.ip, node.port, e)
            response = None

        body = self._response_body(response)
        if body is None:
            self.routing_table.mark_node_bad(node.node_id)
            return None
        self.routing_table.mark_node_good(node.node_id)
        return body

    async def announce_peer(self, info_hash: bytes, tokens: list[DHTToken]) -> int:
        """Announce our port to the nodes that handed out ``tokens`` for ``info_hash``.

        Returns the number of nodes that acknowledged.
        """
        tokens = [t for t in tokens if t.info_hash == info_hash and not t.expired]
        tokens.sort(key=lambda t: xor_distance(t.node.node_id, info_hash))
        tokens = tokens[: self.config.lookup_k]
        if not tokens:
            return 0

        async def _announce(token: DHTToken) -> bool:
            try:
                response = await self._send_query(
                    token.node.address,
                    "announce_peer",
                    {
                        b"id": self.node_id,
                        b"info_hash": info_hash,
                        b"port": self.bind_port,
                        b"implied_port": 1,
                        b"token": token.token,
                    },
                )
            except OSError as e:
                logger.debug("announce_peer to %s failed: %s", token.node.address, e)
                return False
            return self._response_body(response) is not None

        acknowledged = sum(await asyncio.gather(*(_announce(t) for t in tokens)))
        logger.debug(
            "Announced %s to %d/%d nodes", info_hash.hex()[:8], acknowledged, len(tokens)
        )
        return acknowledged

    async def find_node(self, addr: tuple[str, int], target_id: bytes) -> list[DHTNode]:
        """Ask one node for the nodes closest to ``target_id`` and learn them."""
        try:
            response = await self._send_query(
                addr, "find_node", {b"id": self.node_id, b"target": target_id}
            )
        except OSError as e:
            logger.debug("find_node to %s failed: %s", addr, e)
            response = None

        body = self._response_body(response)
        known = self.routing_table.find_by_address(addr)
        if body is None:
            if known is not None:
                self.routing_table.mark_node_bad(known.node_id)
            return []

        responder_id = body.get(b"id")
        if isinstance(responder_id, bytes) and len(responder_id) == NODE_ID_LENGTH:
            self.routing_table.add_node(DHTNode(responder_id, addr[0], addr[1]))
            self.routing_table.mark_node_good(responder_id)

        nodes_data = body.get(b"nodes", b"")
        nodes = parse_compact_nodes(nodes_data) if isinstance(nodes_data, bytes) else []
        for node in nodes:
            self.routing_table.add_node(node)
        return nodes

    async def ping(self, addr: tuple[str, int]) -> bytes | None:
        """Ping a node; returns its node ID when it answers."""
        response = await self._send_query(addr, "ping", {b"id": self.node_id})
        body = self._response_body(response)
        if body is None:
            return None
        node_id = body.get(b"id")
        return node_id if isinstance(node_id, bytes) else None

    @staticmethod
    def _response_body(response: dict[bytes, Any] | None) -> dict[bytes, Any] | None:
        if not response or response.get(b"y") != b"r":
            return None
        body = response.get(b"r")
        return body if isinstance(body, dict) else None

    def _allocate_tid(self) -> bytes:
        while True:
            self._next_tid = (self._next_tid + 1) % 0x10000
            tid = self._next_tid.to_bytes(2, "big")
            if tid not in self.pending_queries:
                return tid

    async def _send_query(
        self,
        addr: tuple[str, int],
        query: str,
        args: dict[bytes, Any],
    ) -> dict[bytes, Any] | None:
        """Send a KRPC query and wait for its response (None on timeout)."""
        if self.transport is None:
            raise RuntimeError(_ERROR_TRANSPORT_NOT_INITIALIZED)

        tid = self._allocate_tid()
        message = {b"t": tid, b"y": b"q", b"q": query.encode("ascii"), b"a": args}
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending_queries[tid] = future

        try:
            self.transport.sendto(encode(message), addr)
            self.stats["queries_sent"] += 1
            return await asyncio.wait_for(future, timeout=self.query_timeout)
        except asyncio.TimeoutError:
            self.stats["queries_timed_out"] += 1
            logger.debug("%s query to %s timed out", query, addr)
            return None
        finally:
            self.pending_queries.pop(tid, None)

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        """Dispatch an incoming UDP datagram."""
        try:
            message = decode(data)
        except BencodeDecodeError as e:
            logger.debug("Undecodable datagram from %s: %s", addr, e)
            return
        if not isinstance(message, dict):
            return

        kind = message.get(b"y")
        if kind in (b"r", b"e"):
            tid = message.get(b"t")
            future = self.pending_queries.get(tid) if isinstance(tid, bytes) else None
            if future is not None and not future.done():
                future.set_result(message)
        elif kind == b"q":
            self._handle_query(message, addr)

    def _handle_query(self, message: dict[bytes, Any], addr: tuple[str, int]) -> None:
        """Answer a query from another node."""
        self.stats["queries_received"] += 1
        tid = message.get(b"t", b"")
        method = message.get(b"q")
        args = message.get(b"a")
        if not isinstance(tid, bytes):
            tid = b""
        if not isinstance(args, dict):
            self._send_error(tid, ERROR_PROTOCOL, "Protocol Error", addr)
            return

        sender_id = args.get(b"id")
        if not isinstance(sender_id, bytes) or len(sender_id) != NODE_ID_LENGTH:
            self._send_error(tid, ERROR_PROTOCOL, "Invalid node id", addr)
            return
        if addr_is_ipv4(addr[0]) and addr[1]:
            self.routing_table.add_node(DHTNode(sender_id, addr[0], addr[1]))

        if method == b"ping":
            self._send_response(tid, {b"id": self.node_id}, addr)
        elif method == b"find_node":
            target = args.get(b"target")
            if not isinstance(target, bytes) or len(target) != NODE_ID_LENGTH:
                self._send_error(tid, ERROR_PROTOCOL, "Invalid target", addr)
                return
            self._send_response(
                tid, {b"id": self.node_id, b"nodes": self._compact_closest(target)}, addr
            )
        elif method == b"get_peers":
            info_hash = args.get(b"info_hash")
            if not isinstance(info_hash, bytes) or len(info_hash) != NODE_ID_LENGTH:
                self._send_error(tid, ERROR_PROTOCOL, "Invalid info_hash", addr)
                return
            body: dict[bytes, Any] = {
                b"id": self.node_id,
                b"token": self._make_token(addr[0]),
            }
            stored = list(self.peer_storage.get(info_hash, {}))
            if stored:
                body[b"values"] = stored[:MAX_VALUES_PER_RESPONSE]
            else:
                body[b"nodes"] = self._compact_closest(info_hash)
            self._send_response(tid, body, addr)
        elif method == b"announce_peer":
            self._handle_announce(tid, args, addr)
        else:
            self._send_error(tid, ERROR_METHOD_UNKNOWN, "Method Unknown", addr)

    def _handle_announce(
        self, tid: bytes, args: dict[bytes, Any], addr: tuple[str, int]
    ) -> None:
        info_hash = args.get(b"info_hash")
        token = args.get(b"token")
        if (
            not isinstance(info_hash, bytes)
            or len(info_hash) != NODE_ID_LENGTH
            or not isinstance(token, bytes)
        ):
            self._send_error(tid, ERROR_PROTOCOL, "Protocol Error", addr)
            return
        if not self._verify_token(token, addr[0]):
            self._send_error(tid, ERROR_PROTOCOL, "Bad token", addr)
            return

        port = addr[1] if args.get(b"implied_port") == 1 else args.get(b"port")
        if not isinstance(port, int) or not 0 < port < 65536 or not addr_is_ipv4(addr[0]):
            self._send_error(tid, ERROR_PROTOCOL, "Invalid port", addr)
            return

        compact_peer = ipaddress.IPv4Address(addr[0]).packed + port.to_bytes(2, "big")
        stored = self.peer_storage.setdefault(info_hash, {})
        stored[compact_peer] = time.time()
        if len(stored) > MAX_STORED_PEERS_PER_HASH:
            oldest = min(stored, key=stored.__getitem__)
            del stored[oldest]
        self._send_response(tid, {b"id": self.node_id}, addr)

    def _compact_closest(self, target: bytes) -> bytes:
        return b"".join(
            node.compact()
            for node in self.routing_table.get_closest_nodes(target, self.config.lookup_k)
            if addr_is_ipv4(node.ip)
        )

    def _make_token(self, ip: str, secret: bytes | None = None) -> bytes:
        return hashlib.sha1(  # nosec B324 - BEP 5 token, not a security hash
            (secret or self.token_secret) + ip.encode("ascii")
        ).digest()[:8]

    def _verify_token(self, token: bytes, ip: str) -> bool:
        return token in (
            self._make_token(ip, self.token_secret),
            self._make_token(ip, self.previous_token_secret),
        )

    def _send_response(
        self, tid: bytes, body: dict[bytes, Any], addr: tuple[str, int]
    ) -> None:
        self._send({b"t": tid, b"y": b"r", b"r": body}, addr)

    def _send_error(
        self, tid: bytes, code: int, text: str, addr: tuple[str, int]
    ) -> None:
        self._send({b"t": tid, b"y": b"e", b"e": [code, text]}, addr)

    def _send(self, message: dict[bytes, Any], addr: tuple[str, int]) -> None:
        if self.transport is None:
            return
        try:
            self.transport.sendto(encode(message), addr)
        except (OSError, BencodeEncodeError) as e:
            logger.debug("Failed to answer %s: %s", addr, e)

    async def _resolve(self, host: str, port: int) -> tuple[str, int] | None:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM
            )
        except OSError as e:
            logger.debug("Cannot resolve bootstrap node %s:%d: %s", host, port, e)
            return None
        return (infos[0][4][0], port) if infos else None

    async def _bootstrap(self) -> None:
        """Populate the routing table from the bootstrap routers."""
        with LoggingContext(
            "DHT bootstrap", logger=logger, nodes=len(self.bootstrap_nodes)
        ):
            addresses = await asyncio.gather(
                *(self._resolve(host, port) for host, port in self.bootstrap_nodes)
            )
            await asyncio.gather(
                *(self.find_node(addr, self.node_id) for addr in addresses if addr)
            )
            if len(self.routing_table) < self.config.lookup_k:
                await self._refresh_routing_table()
        logger.info("DHT bootstrap finished with %d nodes", len(self.routing_table))

    async def _refresh_loop(self) -> None:
        """Background task to keep the routing table populated."""
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            try:
                if len(self.routing_table) == 0:
                    await self._bootstrap()
                else:
                    await self._refresh_routing_table()
            except (OSError, RuntimeError) as e:
                log_exception(logger, e, "Error in refresh loop")

    async def _refresh_routing_table(self) -> None:
        """Look for nodes around our own ID and a random target."""
        for target in (self.node_id, self._generate_node_id()):
            closest = self.routing_table.get_closest_nodes(target, self.config.lookup_alpha)
            await asyncio.gather(*(self.find_node(node.address, target) for node in closest))

    async def _cleanup_loop(self) -> None:
        """Background task to rotate token secrets and expire old data."""
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL)
            self._cleanup_old_data()

    def _cleanup_old_data(self) -> None:
        now = time.time()
        self.previous_token_secret = self.token_secret
        self.token_secret = os.urandom(20)

        for info_hash in list(self.peer_storage):
            stored = self.peer_storage[info_hash]
            for peer, announced in list(stored.items()):
                if now - announced > STORED_PEER_LIFETIME:
                    del stored[peer]
            if not stored:
                del self.peer_storage[info_hash]

        removed = self.routing_table.remove_bad_nodes()
        if removed:
            logger.debug("Removed %d unresponsive nodes", removed)

    def get_stats(self) -> dict[str, Any]:
        """Get DHT statistics."""
        return {
            "node_id": self.node_id.hex(),
            "port": self.bind_port,
            "running": self._running,
            "routing_table": self.routing_table.get_stats(),
            "pending_queries": len(self.pending_queries),
            "lookups_in_flight": len(self._lookups),
            "stored_info_hashes": len(self.peer_storage),
            **self.stats,
        }


def addr_is_ipv4(ip: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(ip), ipaddress.IPv4Address)
    except ValueError:
        return False


class DHTProtocol(asyncio.DatagramProtocol):
    """DHT protocol handler."""

    def __init__(self, engine: AsyncDHTEngine):
        """Initialize DHT protocol handler."""
        self.engine = engine

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Handle incoming UDP datagram."""
        self.engine.handle_datagram(data, addr[:2])

    def error_received(self, exc: Exception) -> None:
        """Handle UDP error."""
        logger.debug("DHT socket error: %s", exc)
