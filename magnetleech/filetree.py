"""File descriptions inside the info dictionary: v1 file lists and v2 file trees."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

FILE_TREE_PROPERTIES_KEY = ""
_ZERO_ROOT = bytes(32)


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


@dataclass
class ExtendedFileAttrs:
    """Extended file attributes shared by Info and FileInfo."""

    attr: str = ""
    symlink_path: list[str] = field(default_factory=list)
    sha1: str = ""

    def _attrs_from_value(self, value: dict) -> None:
        self.attr = _text(value.get(b"attr", b""))
        self.symlink_path = [_text(p) for p in value.get(b"symlink path", [])]
        self.sha1 = _text(value.get(b"sha1", b""))

    def _attrs_to_value(self, out: dict) -> None:
        if self.attr:
            out["attr"] = self.attr
        if self.symlink_path:
            out["symlink path"] = list(self.symlink_path)
        if self.sha1:
            out["sha1"] = self.sha1


@dataclass
class FileInfo(ExtendedFileAttrs):
    """One file of a torrent."""

    length: int = 0
    path: list[str] = field(default_factory=list)
    path_utf8: list[str] = field(default_factory=list)
    pieces_root: bytes = _ZERO_ROOT
    torrent_offset: int = 0

    @classmethod
    def from_value(cls, value: dict) -> "FileInfo":
        fi = cls(
            length=value.get(b"length", 0),
            path=[_text(p) for p in value.get(b"path", [])],
            path_utf8=[_text(p) for p in value.get(b"path.utf-8", [])],
        )
        fi._attrs_from_value(value)
        return fi

    def to_value(self) -> dict:
        out: dict = {"length": self.length, "path": list(self.path)}
        if self.path_utf8:
            out["path.utf-8"] = list(self.path_utf8)
        self._attrs_to_value(out)
        return out

    def display_path(self, info: Any) -> str:
        if info.is_dir():
            return "/".join(self.best_path())
        return info.best_name()

    def best_path(self) -> list[str]:
        return self.path_utf8 if self.path_utf8 else self.path


@dataclass
class FileTreeFile:
    length: int = 0
    pieces_root: bytes = b""


@dataclass
class FileTree:
    """A v2 file tree node: a directory of children or a file."""

    file: FileTreeFile = field(default_factory=FileTreeFile)
    dir: dict[str, "FileTree"] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: dict) -> "FileTree":
        if not isinstance(value, dict):
            raise ValueError("file tree node must be a dictionary")
        tree = cls()
        props = value.get(b"")
        if props is not None:
            if not isinstance(props, dict):
                raise ValueError("file properties must be a dictionary")
            tree.file = FileTreeFile(
                length=props.get(b"length", 0),
                pieces_root=props.get(b"pieces root", b""),
            )
        for key, sub in value.items():
            if key == b"":
                continue
            tree.dir[_text(key)] = cls.from_value(sub)
        return tree

    def to_value(self) -> dict:
        if self.is_dir():
            return {
                key: self.dir[key].to_value()
                for key in sorted(self.dir)
                if key != FILE_TREE_PROPERTIES_KEY
            }
        return {"": {"length": self.file.length, "pieces root": self.file.pieces_root}}

    def num_entries(self) -> int:
        num = len(self.dir)
        if FILE_TREE_PROPERTIES_KEY in self.dir:
            num -= 1
        return num

    def is_dir(self) -> bool:
        return self.num_entries() != 0

    def upverted_files(self, piece_length: int) -> Iterator[FileInfo]:
        """Yield the files of the tree in key order with piece-aligned offsets."""
        offset = 0
        for path, node in self._leaves([]):
            yield FileInfo(
                length=node.file.length,
                path=list(path),
                path_utf8=list(path),
                pieces_root=node.pieces_root_bytes(),
                torrent_offset=offset,
            )
            offset += (node.file.length + piece_length - 1) // piece_length * piece_length

    def _leaves(self, path: list[str]) -> Iterator[tuple[list[str], "FileTree"]]:
        if not self.is_dir():
            yield path, self
            return
        for key in sorted(self.dir):
            if key == FILE_TREE_PROPERTIES_KEY:
                continue
            yield from self.dir[key]._leaves(path + [key])

    def walk(self, path: list[str] | None = None) -> Iterator[tuple[list[str], "FileTree"]]:
        """Yield (path, node) for this node and every descendant."""
        path = list(path or [])
        yield path, self
        for key, sub in self.dir.items():
            if key == FILE_TREE_PROPERTIES_KEY:
                continue
            yield from sub.walk(path + [key])

    def pieces_root_bytes(self) -> bytes:
        root = self.file.pieces_root
        if len(root) < 32:
            return _ZERO_ROOT
        return bytes(root[:32])