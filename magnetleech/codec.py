"""Bencode encoding and decoding, plus helpers for loosely typed torrent fields."""

from __future__ import annotations

from typing import Any

__all__ = [
    "BencodeError",
    "encode",
    "decode",
    "decode_prefix",
    "parse_url_list",
    "parse_node",
]


class BencodeError(ValueError):
    """Raised when data cannot be bencoded or decoded."""


def _key_bytes(key: Any) -> bytes:
    if isinstance(key, bytes):
        return key
    if isinstance(key, str):
        return key.encode("utf-8", "surrogateescape")
    raise BencodeError(f"dictionary keys must be str or bytes, not {type(key).__name__}")


def _encode_into(value: Any, out: list[bytes]) -> None:
    if isinstance(value, bool):
        raise BencodeError("booleans cannot be bencoded")
    if isinstance(value, int):
        out.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        out.append(b"%d:" % len(raw))
        out.append(raw)
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8", "surrogateescape"), out)
    elif isinstance(value, (list, tuple)):
        out.append(b"l")
        for item in value:
            _encode_into(item, out)
        out.append(b"e")
    elif isinstance(value, dict):
        items = sorted((_key_bytes(k), v) for k, v in value.items())
        out.append(b"d")
        for key, item in items:
            _encode_into(key, out)
            _encode_into(item, out)
        out.append(b"e")
    else:
        raise BencodeError(f"cannot bencode value of type {type(value).__name__}")


def encode(value: Any) -> bytes:
    """Bencode ints, strings, bytes, lists and dicts (keys sorted bytewise)."""
    out: list[bytes] = []
    _encode_into(value, out)
    return b"".join(out)


def _read_int(data: bytes, pos: int, end_marker: bytes) -> tuple[int, int]:
    end = data.find(end_marker, pos)
    if end < 0:
        raise BencodeError("unterminated integer")
    text = data[pos:end]
    if not text or text == b"-":
        raise BencodeError("empty integer")
    digits = text[1:] if text.startswith(b"-") else text
    if not digits.isdigit():
        raise BencodeError(f"invalid integer {text!r}")
    if (digits.startswith(b"0") and len(digits) > 1) or text == b"-0":
        raise BencodeError(f"invalid integer {text!r}")
    return int(text), end + 1


def _decode_at(data: bytes, pos: int) -> tuple[Any, int]:
    if pos >= len(data):
        raise BencodeError("unexpected end of data")
    lead = data[pos : pos + 1]
    if lead == b"i":
        return _read_int(data, pos + 1, b"e")
    if lead.isdigit():
        if lead == b"-":
            raise BencodeError("negative string length")
        length, start = _read_int(data, pos, b":")
        if length < 0:
            raise BencodeError("negative string length")
        end = start + length
        if end > len(data):
            raise BencodeError("string runs past end of data")
        return data[start:end], end
    if lead == b"l":
        items = []
        pos += 1
        while True:
            if pos >= len(data):
                raise BencodeError("unterminated list")
            if data[pos : pos + 1] == b"e":
                return items, pos + 1
            item, pos = _decode_at(data, pos)
            items.append(item)
    if lead == b"d":
        result: dict[bytes, Any] = {}
        pos += 1
        while True:
            if pos >= len(data):
                raise BencodeError("unterminated dictionary")
            if data[pos : pos + 1] == b"e":
                return result, pos + 1
            key, pos = _decode_at(data, pos)
            if not isinstance(key, bytes):
                raise BencodeError("dictionary key is not a string")
            result[key], pos = _decode_at(data, pos)
    raise BencodeError(f"unexpected byte {lead!r} at offset {pos}")


def decode_prefix(data: bytes) -> tuple[Any, bytes]:
    """Decode one value from the front of data; return it and the unread rest."""
    data = bytes(data)
    value, pos = _decode_at(data, 0)
    return value, data[pos:]


def decode(data: bytes) -> Any:
    """Decode exactly one bencoded value; trailing data is an error."""
    value, rest = decode_prefix(data)
    if rest:
        raise BencodeError("trailing data after bencoded value")
    return value


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    if isinstance(value, str):
        return value
    raise BencodeError(f"expected a string, got {type(value).__name__}")


def parse_url_list(value: Any) -> list[str]:
    """Normalise a url-list field that may be a single string or a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return [_as_text(v) for v in value]
    return [_as_text(value)]


def parse_node(value: Any) -> str:
    """Normalise a DHT node entry: a string, or a [host, port] pair."""
    if isinstance(value, (bytes, str)):
        return _as_text(value)
    if isinstance(value, list):
        if len(value) < 2 or isinstance(value[1], bool) or not isinstance(value[1], int):
            raise BencodeError("node must be a [host, port] pair")
        host = _as_text(value[0])
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{value[1]}"
    raise BencodeError(f"unsupported type: {type(value).__name__}")