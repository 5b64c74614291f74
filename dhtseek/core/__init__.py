"""Wire-level helpers: bencoding, infohashes and compact peer addresses."""

from __future__ import annotations

from dhtseek.core.bencode import decode, encode
from dhtseek.core.infohash import decode_info_hash, decode_peer_address

__all__ = [
    "decode",
    "decode_info_hash",
    "decode_peer_address",
    "encode",
]
