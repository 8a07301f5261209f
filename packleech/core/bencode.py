"""Bencode encoding and decoding.

The decoder is strict about integer syntax and string lengths, and remembers
the raw byte span of every top-level dictionary value so callers can hash the
``info`` dictionary exactly as it appeared on disk.
"""

from __future__ import annotations

from typing import Any

from packleech.utils.exceptions import BencodeDecodeError, BencodeEncodeError

_DIGITS = b"0123456789"

# Lists and dictionaries nested deeper than this are rejected
MAX_DEPTH = 64


class BencodeDecoder:
    """Decoder for bencoded data."""

    def __init__(self, data: bytes):
        """Initialize decoder over ``data``."""
        self.data = data
        self.pos = 0
        self.depth = 0
        # top-level dict key -> (start, end) of its raw value
        self.spans: dict[bytes, tuple[int, int]] = {}

    def decode(self) -> Any:
        """Decode the next value."""
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg, {"position": self.pos})

        token = self.data[self.pos : self.pos + 1]
        if token == b"i":
            return self._decode_int()
        if token == b"l":
            return self._decode_list()
        if token == b"d":
            return self._decode_dict()
        if token in (b"0", b"1", b"2", b"3", b"4", b"5", b"6", b"7", b"8", b"9"):
            return self._decode_bytes()
        msg = f"Invalid token {token!r}"
        raise BencodeDecodeError(msg, {"position": self.pos})

    def decode_all(self) -> Any:
        """Decode a single value and reject trailing data."""
        value = self.decode()
        if self.pos != len(self.data):
            msg = f"Trailing data after bencoded value ({len(self.data) - self.pos} bytes)"
            raise BencodeDecodeError(msg, {"position": self.pos})
        return value

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg, {"position": self.pos})
        raw = self.data[self.pos + 1 : end]
        digits = raw[1:] if raw.startswith(b"-") else raw
        if not digits or any(c not in _DIGITS for c in digits):
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})
        if (digits.startswith(b"0") and len(digits) > 1) or raw == b"-0":
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})
        self.pos = end + 1
        return int(raw)

    def _decode_bytes(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Missing colon in string"
            raise BencodeDecodeError(msg, {"position": self.pos})
        raw_len = self.data[self.pos : colon]
        if any(c not in _DIGITS for c in raw_len) or (
            raw_len.startswith(b"0") and len(raw_len) > 1
        ):
            msg = f"Invalid string length {raw_len!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})
        length = int(raw_len)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String length {length} exceeds available data"
            raise BencodeDecodeError(msg, {"position": self.pos})
        self.pos = end
        return self.data[start:end]

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            msg = f"Nesting deeper than {MAX_DEPTH} levels"
            raise BencodeDecodeError(msg, {"position": self.pos})

    def _decode_list(self) -> list[Any]:
        self._enter()
        self.pos += 1
        result = []
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated list"
                raise BencodeDecodeError(msg, {"position": self.pos})
            if self.data[self.pos : self.pos + 1] == b"e":
                break
            result.append(self.decode())
        self.pos += 1
        self.depth -= 1
        return result

    def _decode_dict(self) -> dict[bytes, Any]:
        self._enter()
        self.pos += 1
        top_level = self.depth == 1
        result: dict[bytes, Any] = {}
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated dictionary"
                raise BencodeDecodeError(msg, {"position": self.pos})
            if self.data[self.pos : self.pos + 1] == b"e":
                break
            if self.data[self.pos : self.pos + 1] not in (
                b"0", b"1", b"2", b"3", b"4", b"5", b"6", b"7", b"8", b"9"
            ):
                msg = "Dictionary key must be a byte string"
                raise BencodeDecodeError(msg, {"position": self.pos})
            key = self._decode_bytes()
            start = self.pos
            result[key] = self.decode()
            if top_level:
                self.spans[key] = (start, self.pos)
        self.pos += 1
        self.depth -= 1
        return result

    def raw_value(self, key: bytes) -> bytes:
        """Raw encoded bytes of a top-level dictionary value."""
        start, end = self.spans[key]
        return self.data[start:end]


class BencodeEncoder:
    """Encoder for bencoded data."""

    def encode(self, value: Any) -> bytes:
        """Encode ``value``; dictionary keys are emitted in sorted order."""
        out: list[bytes] = []
        self._encode(value, out)
        return b"".join(out)

    def _encode(self, value: Any, out: list[bytes]) -> None:
        if isinstance(value, bool):
            msg = "Booleans are not bencodable"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out.append(b"i%de" % value)
        elif isinstance(value, (bytes, bytearray)):
            out.append(b"%d:" % len(value))
            out.append(bytes(value))
        elif isinstance(value, str):
            self._encode(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out.append(b"l")
            for item in value:
                self._encode(item, out)
            out.append(b"e")
        elif isinstance(value, dict):
            items: list[tuple[bytes, Any]] = []
            for key, item in value.items():
                if isinstance(key, str):
                    key = key.encode("utf-8")
                elif not isinstance(key, bytes):
                    msg = f"Dictionary key must be bytes or str, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                items.append((key, item))
            out.append(b"d")
            for key, item in sorted(items, key=lambda kv: kv[0]):
                self._encode(key, out)
                self._encode(item, out)
            out.append(b"e")
        else:
            msg = f"Cannot bencode {type(value).__name__}"
            raise BencodeEncodeError(msg)


def decode(data: bytes) -> Any:
    """Decode a complete bencoded document."""
    return BencodeDecoder(data).decode_all()


def encode(value: Any) -> bytes:
    """Encode a value to bencode."""
    return BencodeEncoder().encode(value)
