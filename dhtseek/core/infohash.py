"""Infohash and compact peer address helpers."""

from __future__ import annotations

import base64
import binascii
import ipaddress

from dhtseek.utils.exceptions import InfoHashDecodeError, PeerAddressDecodeError

INFO_HASH_LENGTH = 20
COMPACT_IPV4_LENGTH = 6
COMPACT_IPV6_LENGTH = 18


def decode_info_hash(text: str) -> bytes:
    """Decode an infohash given as 40 hex characters or 32 base32 characters.

    Raises:
        InfoHashDecodeError: if the text is neither form.

    """
    if not isinstance(text, str):
        msg = f"Infohash must be text, got {type(text).__name__}"
        raise InfoHashDecodeError(msg)
    value = text.strip()
    try:
        if len(value) == 40:
            decoded = bytes.fromhex(value)
            if len(decoded) != INFO_HASH_LENGTH:
                msg = "embedded whitespace"
                raise ValueError(msg)
            return decoded
        if len(value) == 32:
            return base64.b32decode(value.upper())
    except (ValueError, binascii.Error) as e:
        msg = f"Invalid infohash {value!r}: {e}"
        raise InfoHashDecodeError(msg, {"infohash": value}) from e
    msg = f"Invalid infohash {value!r}: expected 40 hex or 32 base32 characters"
    raise InfoHashDecodeError(msg, {"length": len(value)})


def decode_peer_address(token: bytes) -> str:
    """Render a compact peer token (BEP 5 / BEP 32) as ``ip:port``.

    IPv6 addresses are bracketed: ``[2001:db8::1]:6881``.

    Raises:
        PeerAddressDecodeError: if the token is not 6 or 18 bytes long.

    """
    if not isinstance(token, (bytes, bytearray)):
        msg = f"Peer token must be bytes, got {type(token).__name__}"
        raise PeerAddressDecodeError(msg)
    if len(token) == COMPACT_IPV4_LENGTH:
        ip = str(ipaddress.IPv4Address(bytes(token[:4])))
        port = int.from_bytes(token[4:6], "big")
        return f"{ip}:{port}"
    if len(token) == COMPACT_IPV6_LENGTH:
        ip = str(ipaddress.IPv6Address(bytes(token[:16])))
        port = int.from_bytes(token[16:18], "big")
        return f"[{ip}]:{port}"
    msg = f"Compact peer token has {len(token)} bytes, expected 6 or 18"
    raise PeerAddressDecodeError(msg, {"token": bytes(token).hex()})


def encode_peer_address(ip: str, port: int) -> bytes:
    """Build the compact token for an IPv4 or IPv6 peer."""
    return ipaddress.ip_address(ip).packed + port.to_bytes(2, "big")
