"""Torrent files (metainfo): loading, writing and magnet link creation."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO

from .codec import BencodeError, decode, decode_prefix, encode, parse_node, parse_url_list
from .info import Info
from .magnet import Magnet, MagnetV2

__all__ = [
    "MetaInfo",
    "load",
    "load_from_file",
    "overrides_announce",
    "distinct_values",
]

CREATED_BY = "magnetleech"


def overrides_announce(announce_list: list[list[str]], announce: str) -> bool:
    """Whether the announce-list should be preferred over a single announce URL."""
    return any(url != "" or announce == "" for tier in announce_list for url in tier)


def distinct_values(announce_list: list[list[str]]) -> list[str]:
    """All URLs of the announce-list, first occurrence order, without repeats."""
    return list(dict.fromkeys(url for tier in announce_list for url in tier))


def _as_str(value: Any, name: str) -> str:
    if not isinstance(value, bytes):
        raise BencodeError(f"{name} must be a string")
    return value.decode("utf-8", "surrogateescape")


def _str_field(value: dict, key: bytes) -> str:
    if key not in value:
        return ""
    return _as_str(value[key], key.decode())


def _announce_list(value: Any) -> list[list[str]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(tier, list) for tier in value):
        raise BencodeError("announce-list must be a list of lists")
    return [[_as_str(url, "announce-list entry") for url in tier] for tier in value]


def _piece_layers(value: Any) -> dict[bytes, bytes]:
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(isinstance(v, bytes) for v in value.values()):
        raise BencodeError("piece layers must map strings to strings")
    return dict(value)


@dataclass
class MetaInfo:
    """A torrent file. info_bytes holds the raw bencoded info dictionary."""

    info_bytes: bytes = b""
    announce: str = ""
    announce_list: list[list[str]] = field(default_factory=list)
    nodes: list[str] = field(default_factory=list)
    creation_date: int = 0
    comment: str = ""
    created_by: str = ""
    encoding: str = ""
    url_list: list[str] = field(default_factory=list)
    piece_layers: dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> "MetaInfo":
        """Build from a decoded bencode dictionary."""
        if not isinstance(value, dict):
            raise BencodeError("metainfo must be a dictionary")
        nodes_value = value.get(b"nodes")
        created = value.get(b"creation date")
        return cls(
            info_bytes=encode(value[b"info"]) if b"info" in value else b"",
            announce=_str_field(value, b"announce"),
            announce_list=_announce_list(value.get(b"announce-list")),
            # Wrongly typed nodes and creation dates are ignored, as many clients emit them.
            nodes=[parse_node(n) for n in nodes_value] if isinstance(nodes_value, list) else [],
            creation_date=created if isinstance(created, int) else 0,
            comment=_str_field(value, b"comment"),
            created_by=_str_field(value, b"created by"),
            encoding=_str_field(value, b"encoding"),
            url_list=parse_url_list(value.get(b"url-list")),
            piece_layers=_piece_layers(value.get(b"piece layers")),
        )

    def _fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.announce:
            out["announce"] = self.announce
        if self.announce_list:
            out["announce-list"] = [list(tier) for tier in self.announce_list]
        if self.nodes:
            out["nodes"] = list(self.nodes)
        if self.creation_date:
            out["creation date"] = self.creation_date
        if self.comment:
            out["comment"] = self.comment
        if self.created_by:
            out["created by"] = self.created_by
        if self.encoding:
            out["encoding"] = self.encoding
        if self.url_list:
            out["url-list"] = list(self.url_list)
        if self.piece_layers:
            out["piece layers"] = dict(self.piece_layers)
        return out

    def to_value(self) -> dict[str, Any]:
        """The metainfo as a plain dictionary, with the info dictionary decoded."""
        out = self._fields()
        if self.info_bytes:
            out["info"] = decode(self.info_bytes)
        return out

    def encode(self) -> bytes:
        """Bencode the metainfo, embedding the raw info bytes unchanged."""
        parts = [(key.encode(), encode(value)) for key, value in self._fields().items()]
        if self.info_bytes:
            parts.append((b"info", self.info_bytes))
        parts.sort()
        return b"d" + b"".join(encode(key) + raw for key, raw in parts) + b"e"

    def unmarshal_info(self) -> Info:
        return Info.from_value(decode(self.info_bytes))

    def hash_info_bytes(self) -> bytes:
        return hashlib.sha1(self.info_bytes).digest()

    def write(self, stream: BinaryIO) -> None:
        stream.write(self.encode())

    def set_defaults(self) -> None:
        """Set the creator and creation date for a newly made torrent."""
        self.created_by = CREATED_BY
        self.creation_date = int(time.time())

    def magnet(self, info_hash: bytes | None = None, info: Info | None = None) -> Magnet:
        """A v1 magnet link; the info hash is computed unless given."""
        return Magnet(
            info_hash=info_hash if info_hash is not None else self.hash_info_bytes(),
            trackers=distinct_values(self.upverted_announce_list()),
            display_name=info.best_name() if info is not None else "",
            params={"ws": list(self.url_list)},
        )

    def magnet_v2(self) -> MagnetV2:
        """A magnet link for v1, hybrid or v2 torrents."""
        info = self.unmarshal_info()
        m = MagnetV2(
            trackers=distinct_values(self.upverted_announce_list()),
            display_name=info.best_name(),
            params={"ws": list(self.url_list)},
        )
        if info.has_v1():
            m.info_hash = self.hash_info_bytes()
        if info.has_v2():
            m.v2_info_hash = hashlib.sha256(self.info_bytes).digest()
        return m

    def upverted_announce_list(self) -> list[list[str]]:
        """The announce-list, built from the single announce field if needed."""
        if overrides_announce(self.announce_list, self.announce):
            return self.announce_list
        if self.announce:
            return [[self.announce]]
        return []


def _parse(data: bytes) -> MetaInfo:
    if data[:1] != b"d":
        raise BencodeError("metainfo must be a dictionary")
    rest = data[1:]
    values: dict[bytes, Any] = {}
    raw_info = b""
    while True:
        if not rest:
            raise BencodeError("unterminated dictionary")
        if rest[:1] == b"e":
            rest = rest[1:]
            break
        key, rest = decode_prefix(rest)
        if not isinstance(key, bytes):
            raise BencodeError("dictionary key is not a string")
        value, after = decode_prefix(rest)
        if key == b"info":
            raw_info = rest[: len(rest) - len(after)]
        values[key] = value
        rest = after
    if rest.strip(b" \t\r\n"):
        raise BencodeError("error after decoding metainfo: expected EOF")
    mi = MetaInfo.from_value(values)
    mi.info_bytes = raw_info
    return mi


def load(stream: BinaryIO) -> MetaInfo:
    """Load a metainfo from a binary stream."""
    return _parse(bytes(stream.read()))


def load_from_file(filename: str) -> MetaInfo:
    """Load a metainfo from a torrent file."""
    with open(filename, "rb") as f:
        return load(f)