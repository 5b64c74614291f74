"""Mainline DHT peer discovery."""

from __future__ import annotations

from dhtseek.discovery.dht import AsyncDHTEngine, DHTNode, KademliaRoutingTable

__all__ = ["AsyncDHTEngine", "DHTNode", "KademliaRoutingTable"]
