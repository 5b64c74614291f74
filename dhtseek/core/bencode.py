"""Bencoding for KRPC messages (BEP 3 / BEP 5).

Strings decode to ``bytes``; dictionary keys stay ``bytes``. ``str`` values
are encoded as UTF-8 on the way out.
"""

from __future__ import annotations

from typing import Any

from dhtseek.utils.exceptions import BencodeError

# KRPC messages nest a few levels at most
MAX_DEPTH = 64


class BencodeDecodeError(BencodeError):
    """Malformed bencoded input."""


class BencodeEncodeError(BencodeError):
    """Value that has no bencoded representation."""


class BencodeDecoder:
    """Decoder for a single bencoded value."""

    def __init__(self, data: bytes):
        """Initialize decoder with the raw bytes."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            msg = f"Expected bytes, got {type(data).__name__}"
            raise BencodeDecodeError(msg)
        self.data = bytes(data)
        self.pos = 0
        self.depth = 0

    def decode(self) -> Any:
        """Decode the value and reject trailing data."""
        value = self._decode_next()
        if self.pos != len(self.data):
            msg = f"Trailing data at offset {self.pos}"
            raise BencodeDecodeError(msg)
        return value

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg)
        return self.data[self.pos]

    def _decode_next(self) -> Any:
        token = self._peek()
        if token == ord("i"):
            return self._decode_int()
        if token == ord("l"):
            return self._decode_list()
        if token == ord("d"):
            return self._decode_dict()
        if ord("0") <= token <= ord("9"):
            return self._decode_string()
        msg = f"Invalid token {chr(token)!r} at offset {self.pos}"
        raise BencodeDecodeError(msg)

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg)
        raw = self.data[self.pos + 1 : end]
        if raw in (b"", b"-") or raw.startswith(b"-0") or (
            raw.startswith(b"0") and raw != b"0"
        ):
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg)
        try:
            value = int(raw)
        except ValueError as e:
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg) from e
        self.pos = end + 1
        return value

    def _decode_string(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Unterminated string length"
            raise BencodeDecodeError(msg)
        raw_len = self.data[self.pos : colon]
        if not raw_len.isdigit():
            msg = f"Invalid string length {raw_len!r}"
            raise BencodeDecodeError(msg)
        length = int(raw_len)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String of length {length} runs past end of data"
            raise BencodeDecodeError(msg)
        self.pos = end
        return self.data[start:end]

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            msg = f"Nesting deeper than {MAX_DEPTH} levels at offset {self.pos}"
            raise BencodeDecodeError(msg)
        self.pos += 1

    def _decode_list(self) -> list[Any]:
        self._enter()
        items = []
        while self._peek() != ord("e"):
            items.append(self._decode_next())
        self.pos += 1
        self.depth -= 1
        return items

    def _decode_dict(self) -> dict[bytes, Any]:
        self._enter()
        result: dict[bytes, Any] = {}
        while self._peek() != ord("e"):
            if not (ord("0") <= self._peek() <= ord("9")):
                msg = f"Dictionary key must be a string (offset {self.pos})"
                raise BencodeDecodeError(msg)
            key = self._decode_string()
            result[key] = self._decode_next()
        self.pos += 1
        self.depth -= 1
        return result


class BencodeEncoder:
    """Encoder for Python values into bencoding."""

    def encode(self, value: Any) -> bytes:
        """Encode a value."""
        out: list[bytes] = []
        self._encode(value, out)
        return b"".join(out)

    def _encode(self, value: Any, out: list[bytes]) -> None:
        if isinstance(value, bool):
            msg = "Booleans have no bencoded form"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out.append(b"i%de" % value)
        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            out.append(b"%d:" % len(raw))
            out.append(raw)
        elif isinstance(value, str):
            self._encode(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out.append(b"l")
            for item in value:
                self._encode(item, out)
            out.append(b"e")
        elif isinstance(value, dict):
            out.append(b"d")
            keys = {}
            for key in value:
                raw_key = key.encode("utf-8") if isinstance(key, str) else key
                if not isinstance(raw_key, bytes):
                    msg = f"Dictionary keys must be str or bytes, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                keys[raw_key] = value[key]
            for raw_key in sorted(keys):
                self._encode(raw_key, out)
                self._encode(keys[raw_key], out)
            out.append(b"e")
        else:
            msg = f"Cannot bencode {type(value).__name__}"
            raise BencodeEncodeError(msg)


def encode(value: Any) -> bytes:
    """Encode a value into bencoding."""
    return BencodeEncoder().encode(value)


def decode(data: bytes) -> Any:
    """Decode a bencoded value."""
    return BencodeDecoder(data).decode()
