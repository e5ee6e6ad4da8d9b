"""The torrent info dictionary, its pieces and piece hashing."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field, replace
from typing import BinaryIO, Callable, Iterator

from .filetree import ExtendedFileAttrs, FileInfo, FileTree, FileTreeFile, _text

NO_NAME = "-"
MINIMUM_PIECE_LENGTH = 16 * 1024
_TARGET_PIECE_COUNT_MAX = (1 << 10) << 1
_HASH_SIZE = 20


def choose_piece_length(total_length: int) -> int:
    """Pick a power-of-two piece length (at least 16 KiB) giving under 2048 pieces."""
    piece_length = MINIMUM_PIECE_LENGTH
    pieces = total_length // piece_length
    while pieces >= _TARGET_PIECE_COUNT_MAX:
        piece_length <<= 1
        pieces >>= 1
    return piece_length


def _read_up_to(reader: BinaryIO, n: int) -> bytes:
    chunks = []
    while n > 0:
        chunk = reader.read(n)
        if not chunk:
            break
        chunks.append(chunk)
        n -= len(chunk)
    return b"".join(chunks)


def generate_pieces(reader: BinaryIO, piece_length: int) -> bytes:
    """Return concatenated SHA-1 hashes of consecutive piece_length blocks."""
    hashes = []
    while True:
        block = _read_up_to(reader, piece_length)
        if block:
            hashes.append(hashlib.sha1(block).digest())
        if len(block) < piece_length:
            return b"".join(hashes)


def _walk_files(directory: str) -> Iterator[str]:
    """Yield the paths of all non-directory entries below directory."""
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                yield from _walk_files(entry.path)
            else:
                yield entry.path


class _ConcatReader:
    """Reads the files of a torrent back to back, each cut to its declared length."""

    def __init__(self, files: list[FileInfo], open_file: Callable[[FileInfo], BinaryIO]):
        self._files = iter(files)
        self._open_file = open_file
        self._current: BinaryIO | None = None
        self._current_info: FileInfo | None = None
        self._remaining = 0

    def _advance(self) -> bool:
        self._close_current()
        for fi in self._files:
            try:
                self._current = self._open_file(fi)
            except OSError as exc:
                raise OSError(f"error opening {fi}: {exc}") from exc
            self._current_info = fi
            self._remaining = fi.length
            return True
        return False

    def _close_current(self) -> None:
        if self._current is not None:
            close = getattr(self._current, "close", None)
            if close is not None:
                close()
            self._current = None

    def read(self, n: int) -> bytes:
        while self._current is None or self._remaining == 0:
            if not self._advance():
                return b""
        chunk = self._current.read(min(n, self._remaining))
        if not chunk:
            raise OSError(f"error copying {self._current_info}: unexpected end of file")
        self._remaining -= len(chunk)
        return chunk


@dataclass
class Info(ExtendedFileAttrs):
    """The info dictionary of a torrent (v1, v2 or hybrid)."""

    piece_length: int = 0
    pieces: bytes | None = None
    name: str = ""
    name_utf8: str = ""
    length: int = 0
    private: bool | None = None
    source: str = ""
    files: list[FileInfo] = field(default_factory=list)
    meta_version: int = 0
    file_tree: FileTree = field(default_factory=FileTree)

    @classmethod
    def from_value(cls, value: dict) -> "Info":
        if not isinstance(value, dict):
            raise ValueError("info must be a dictionary")
        info = cls(
            piece_length=value.get(b"piece length", 0),
            pieces=value.get(b"pieces"),
            name=_text(value.get(b"name", b"")),
            name_utf8=_text(value.get(b"name.utf-8", b"")),
            length=value.get(b"length", 0),
            source=_text(value.get(b"source", b"")),
            files=[FileInfo.from_value(f) for f in value.get(b"files", [])],
            meta_version=value.get(b"meta version", 0),
        )
        if b"private" in value:
            info.private = bool(value[b"private"])
        if b"file tree" in value:
            info.file_tree = FileTree.from_value(value[b"file tree"])
        info._attrs_from_value(value)
        return info

    def to_value(self) -> dict:
        out: dict = {"piece length": self.piece_length, "name": self.name}
        if self.pieces is not None:
            out["pieces"] = self.pieces
        if self.name_utf8:
            out["name.utf-8"] = self.name_utf8
        if self.length:
            out["length"] = self.length
        self._attrs_to_value(out)
        if self.private is not None:
            out["private"] = int(self.private)
        if self.source:
            out["source"] = self.source
        if self.files:
            out["files"] = [f.to_value() for f in self.files]
        if self.meta_version:
            out["meta version"] = self.meta_version
        if self.file_tree.dir or self.file_tree.file != FileTreeFile():
            out["file tree"] = self.file_tree.to_value()
        return out

    def build_from_file_path(self, root: str) -> None:
        """Fill name, files and pieces from a file or directory on disk."""
        base = os.path.basename(os.path.normpath(root))
        self.name = NO_NAME if base in (".", "..", os.sep, "") else base
        self.files = []
        if os.path.isfile(root):
            self.length = os.path.getsize(root)
        else:
            for full in _walk_files(root):
                rel = os.path.relpath(full, root)
                self.files.append(
                    FileInfo(path=rel.split(os.sep), length=os.path.getsize(full))
                )
        self.files.sort(key=lambda f: "/".join(f.best_path()))
        if self.piece_length == 0:
            self.piece_length = choose_piece_length(self.total_length())

        def open_file(fi: FileInfo) -> BinaryIO:
            if not fi.best_path():
                return open(root, "rb")
            return open(os.path.join(root, *fi.best_path()), "rb")

        try:
            self.generate_pieces(open_file)
        except OSError as exc:
            raise OSError(f"error generating pieces: {exc}") from exc

    def generate_pieces(self, open_file: Callable[[FileInfo], BinaryIO]) -> None:
        """Set pieces by hashing the torrent data obtained through open_file."""
        if self.piece_length == 0:
            raise ValueError("piece length must be non-zero")
        reader = _ConcatReader(self.upverted_files(), open_file)
        try:
            self.pieces = generate_pieces(reader, self.piece_length)
        finally:
            reader._close_current()

    def total_length(self) -> int:
        return sum(fi.length for fi in self.upverted_files())

    def num_pieces(self) -> int:
        if self.has_v2():
            pl = self.piece_length
            return sum((node.file.length + pl - 1) // pl for _, node in self.file_tree.walk())
        return len(self.pieces or b"") // _HASH_SIZE

    def is_dir(self) -> bool:
        if self.has_v2():
            return self.file_tree.is_dir()
        return len(self.files) != 0

    def upverted_files(self) -> list[FileInfo]:
        if self.has_v2():
            return list(self.file_tree.upverted_files(self.piece_length))
        return self.upverted_v1_files()

    def upverted_v1_files(self) -> list[FileInfo]:
        if not self.files:
            return [FileInfo(length=self.length, path=[])]
        result = []
        offset = 0
        for fi in self.files:
            result.append(replace(fi, torrent_offset=offset))
            offset += fi.length
        return result

    def piece(self, index: int) -> "Piece":
        return Piece(self, index)

    def best_name(self) -> str:
        return self.name_utf8 or self.name

    def has_v2(self) -> bool:
        return self.meta_version == 2

    def has_v1(self) -> bool:
        return (
            self.meta_version in (0, 1)
            or bool(self.files)
            or self.length != 0
            or bool(self.pieces)
        )

    def files_are_piece_aligned(self) -> bool:
        return self.has_v2()


@dataclass
class Piece:
    """A piece of a torrent, identified by its index."""

    info: Info
    index: int

    def length(self) -> int:
        if not self.info.has_v2():
            return self.v1_length()
        pl = self.info.piece_length
        offset = 0
        last_file_end = 0
        for fi in self.info.file_tree.upverted_files(pl):
            if offset // pl > self.index:
                break
            last_file_end = offset + fi.length
            offset = (last_file_end + pl - 1) // pl * pl
        ret = min(last_file_end - self.index * pl, pl)
        return max(ret, 0)

    def v1_length(self) -> int:
        i = self.index
        last_piece = self.info.num_pieces() - 1
        if 0 <= i < last_piece:
            return self.info.piece_length
        if last_piece >= 0 and i == last_piece:
            last_file = self.info.upverted_v1_files()[-1]
            length = last_file.torrent_offset + last_file.length - i * self.info.piece_length
            if length <= 0 or length > self.info.piece_length:
                return 0
            return length
        return 0

    def offset(self) -> int:
        return self.index * self.info.piece_length

    def v1_hash(self) -> bytes:
        if not self.info.has_v1():
            return bytes(_HASH_SIZE)
        pieces = self.info.pieces or b""
        chunk = pieces[self.index * _HASH_SIZE : (self.index + 1) * _HASH_SIZE]
        return chunk.ljust(_HASH_SIZE, b"\x00")