"""Magnet link parsing and formatting for v1 and v2 info hashes."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from urllib.parse import quote_plus, unquote_plus, urlsplit

__all__ = [
    "BTIH_PREFIX",
    "BTMH_PREFIX",
    "MagnetError",
    "Magnet",
    "MagnetV2",
    "parse_magnet_uri",
    "parse_magnet_v2_uri",
]

BTIH_PREFIX = "urn:btih:"
BTMH_PREFIX = "urn:btmh:"

_V1_SIZE = 20
_V2_SIZE = 32
_SHA2_256 = 0x12
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class MagnetError(ValueError):
    """Raised when a magnet link cannot be parsed."""


def _encode_values(values: dict[str, list[str]]) -> str:
    parts = []
    for key in sorted(values):
        escaped_key = quote_plus(key, safe="")
        for value in values[key]:
            parts.append(f"{escaped_key}={quote_plus(value, safe='')}")
    return "&".join(parts)


def _parse_query(raw: str) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for part in raw.split("&"):
        if not part or ";" in part:
            continue
        key, _, value = part.partition("=")
        if _BAD_ESCAPE.search(key) or _BAD_ESCAPE.search(value):
            continue
        out.setdefault(unquote_plus(key), []).append(unquote_plus(value))
    return out


def _split_uri(uri: str) -> dict[str, list[str]]:
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in uri):
        raise MagnetError("error parsing uri: invalid control character in URL")
    try:
        parts = urlsplit(uri)
    except ValueError as exc:
        raise MagnetError(f"error parsing uri: {exc}") from exc
    if parts.scheme != "magnet":
        raise MagnetError(f"unexpected scheme {parts.scheme!r}")
    return _parse_query(parts.query)


def _merged_values(
    params: dict[str, list[str]], trackers: list[str], display_name: str
) -> dict[str, list[str]]:
    values = {key: list(vals) for key, vals in params.items()}
    for tracker in trackers:
        values.setdefault("tr", []).append(tracker)
    if display_name:
        values.setdefault("dn", []).append(display_name)
    return values


def _pop_first(values: dict[str, list[str]], key: str) -> str:
    found = values.get(key, [])
    if not found:
        return ""
    if len(found) == 1:
        del values[key]
    else:
        values[key] = found[1:]
    return found[0]


def _copy_params(dest: dict[str, list[str]], src: dict[str, list[str]]) -> None:
    for key, vals in src.items():
        for value in vals:
            dest.setdefault(key, []).append(value)


def _parse_v1_infohash(encoded: str) -> bytes:
    if len(encoded) == 40:
        decoder = binascii.unhexlify
    elif len(encoded) == 32:
        decoder = base64.b32decode
    else:
        raise MagnetError(f"unhandled xt parameter encoding (encoded length {len(encoded)})")
    try:
        raw = decoder(encoded.encode("ascii"))
    except ValueError as exc:
        raise MagnetError(f"error decoding xt: {exc}") from exc
    if len(raw) != _V1_SIZE:
        raise MagnetError("decoded xt length != 20")
    return raw


def _uvarint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while pos < len(data):
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise MagnetError("varint too long")
    raise MagnetError("truncated varint")


def _parse_v2_infohash(encoded: str) -> bytes:
    try:
        raw = binascii.unhexlify(encoded.encode("ascii"))
    except ValueError as exc:
        raise MagnetError(str(exc)) from exc
    code, pos = _uvarint(raw, 0)
    length, pos = _uvarint(raw, pos)
    digest = raw[pos:]
    if len(digest) != length:
        raise MagnetError("multihash length inconsistent")
    if code != _SHA2_256 or length != _V2_SIZE or len(digest) != _V2_SIZE:
        raise MagnetError("bad multihash")
    return digest


def _multihash_hex(digest: bytes) -> str:
    return bytes([_SHA2_256, len(digest)]).hex() + digest.hex()


@dataclass
class Magnet:
    """Components of a v1 magnet link."""

    info_hash: bytes = bytes(_V1_SIZE)
    trackers: list[str] = field(default_factory=list)
    display_name: str = ""
    params: dict[str, list[str]] = field(default_factory=dict)

    def __str__(self) -> str:
        values = _merged_values(self.params, self.trackers, self.display_name)
        query = f"xt={BTIH_PREFIX}{self.info_hash.hex()}"
        if values:
            query += "&" + _encode_values(values)
        return "magnet:?" + query


@dataclass
class MagnetV2:
    """Components of a magnet link that may carry v1 and v2 info hashes."""

    info_hash: bytes = bytes(_V1_SIZE)
    v2_info_hash: bytes = bytes(_V2_SIZE)
    trackers: list[str] = field(default_factory=list)
    display_name: str = ""
    params: dict[str, list[str]] = field(default_factory=dict)

    def __str__(self) -> str:
        values = _merged_values(self.params, self.trackers, self.display_name)
        parts = []
        if self.info_hash != bytes(_V1_SIZE):
            parts.append(f"xt={BTIH_PREFIX}{self.info_hash.hex()}")
        if self.v2_info_hash != bytes(_V2_SIZE):
            parts.append(f"xt={BTMH_PREFIX}{_multihash_hex(self.v2_info_hash)}")
        rest = _encode_values(values)
        if rest:
            parts.append(rest)
        query = "&".join(parts)
        return f"magnet:?{query}" if query else "magnet:"


def parse_magnet_uri(uri: str) -> Magnet:
    """Parse a magnet link that must carry a v1 info hash."""
    query = _split_uri(uri)
    magnet = Magnet()
    got_infohash = False
    for xt in query.get("xt", []):
        if got_infohash or not xt.startswith(BTIH_PREFIX):
            magnet.params.setdefault("xt", []).append(xt)
            continue
        try:
            magnet.info_hash = _parse_v1_infohash(xt[len(BTIH_PREFIX):])
        except MagnetError as exc:
            raise MagnetError(f"error parsing v1 infohash {xt!r}: {exc}") from exc
        got_infohash = True
    if not got_infohash:
        raise MagnetError("missing v1 infohash")
    query.pop("xt", None)
    magnet.display_name = _pop_first(query, "dn")
    magnet.trackers = query.pop("tr", [])
    _copy_params(magnet.params, query)
    return magnet


def parse_magnet_v2_uri(uri: str) -> MagnetV2:
    """Parse a magnet link carrying a v1 hash, a v2 hash, or both."""
    query = _split_uri(uri)
    magnet = MagnetV2()
    for xt in query.get("xt", []):
        if xt.startswith(BTIH_PREFIX):
            if magnet.info_hash != bytes(_V1_SIZE):
                raise MagnetError("more than one infohash found in magnet link")
            encoded = xt[len(BTIH_PREFIX):]
            try:
                magnet.info_hash = _parse_v1_infohash(encoded)
            except MagnetError as exc:
                raise MagnetError(f"error parsing infohash {encoded!r}: {exc}") from exc
        elif xt.startswith(BTMH_PREFIX):
            if magnet.v2_info_hash != bytes(_V2_SIZE):
                raise MagnetError("more than one infohash found in magnet link")
            encoded = xt[len(BTMH_PREFIX):]
            try:
                magnet.v2_info_hash = _parse_v2_infohash(encoded)
            except MagnetError as exc:
                raise MagnetError(f"error parsing infohash {encoded!r}: {exc}") from exc
        else:
            magnet.params.setdefault("xt", []).append(xt)
    query.pop("xt", None)
    magnet.display_name = _pop_first(query, "dn")
    magnet.trackers = query.pop("tr", [])
    _copy_params(magnet.params, query)
    return magnet