"""Turning fetched metadata into a verified description of a torrent."""

from __future__ import annotations

import hashlib
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime

from .codec import decode
from .info import Info

__all__ = [
    "PEER_ID_LENGTH",
    "PEER_PREFIX",
    "File",
    "Metadata",
    "total_size",
    "unmarshal_metainfo",
    "validate_info",
    "extract_files",
    "extract_metadata",
    "random_id",
    "random_digit",
    "to_big_endian",
]

PEER_ID_LENGTH = 20
PEER_PREFIX = b"-UT3600-"


@dataclass
class File:
    """A file of a torrent: its size and slash-separated path."""

    size: int
    path: str


@dataclass
class Metadata:
    """A verified torrent description. name is the file name or root directory."""

    info_hash: bytes
    name: str
    total_size: int
    discovered_on: int
    files: list[File] = field(default_factory=list)


def total_size(files: list[File]) -> int:
    """Sum of file sizes; no files or a negative size is an error."""
    if not files:
        raise ValueError("no files would be persisted")
    total = 0
    for file in files:
        if file.size < 0:
            raise ValueError("file size less than zero")
        total += file.size
    return total


def validate_info(info: Info) -> None:
    """Check piece hashes, piece length and piece count for consistency."""
    if len(info.pieces or b"") % 20 != 0:
        raise ValueError("pieces has invalid length")
    if info.piece_length == 0:
        raise ValueError("zero piece length")
    expected = (info.total_length() + info.piece_length - 1) // info.piece_length
    if expected != info.num_pieces():
        raise ValueError("piece count and file lengths are at odds")


def unmarshal_metainfo(metadata: bytes) -> Info:
    """Decode and validate a bencoded info dictionary."""
    try:
        info = Info.from_value(decode(metadata))
        validate_info(info)
    except (TypeError, AttributeError) as exc:
        raise ValueError(f"invalid info dictionary: {exc}") from exc
    return info


def extract_files(info: Info) -> list[File]:
    """The files of an info dictionary, single-file torrents included."""
    if not info.files:
        return [File(size=info.length, path=info.name)]
    return [File(size=fi.length, path=fi.display_path(info)) for fi in info.files]


def extract_metadata(meta: bytes, info_hash: bytes, discovered_on: datetime) -> Metadata:
    """Verify meta against info_hash and extract the torrent description."""
    if hashlib.sha1(meta).digest() != bytes(info_hash):
        raise ValueError("infohash mismatch")
    info = unmarshal_metainfo(meta)
    files = extract_files(info)
    return Metadata(
        info_hash=bytes(info_hash),
        name=info.name,
        total_size=total_size(files),
        discovered_on=math.floor(discovered_on.timestamp()),
        files=files,
    )


def random_digit() -> int:
    """A random ASCII digit, as its byte value."""
    return secrets.randbelow(256) % 10 + ord("0")


def random_id() -> bytes:
    """A peer id: the client prefix followed by random digits, 20 bytes in all."""
    return PEER_PREFIX + bytes(
        random_digit() for _ in range(PEER_ID_LENGTH - len(PEER_PREFIX))
    )


def to_big_endian(value: int, size: int) -> bytes:
    """The low size bytes of value, big-endian; size must be 1, 2 or 4."""
    if size not in (1, 2, 4):
        raise ValueError("size must be 1, 2 or 4")
    return (value & ((1 << (8 * size)) - 1)).to_bytes(size, "big")