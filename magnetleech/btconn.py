"""BitTorrent peer handshake over plain or encrypted (MSE) connections."""

from __future__ import annotations

import io
import socket
import time
from typing import Any, Callable

from .mse import CryptoMethod, Stream

__all__ = [
    "PROTOCOL",
    "HandshakeError",
    "Connection",
    "write_handshake",
    "read_handshake1",
    "read_handshake2",
    "dial",
    "accept",
]

PROTOCOL = b"\x13BitTorrent protocol"


class HandshakeError(Exception):
    """Raised when the BitTorrent handshake fails."""


def _fixed(value: bytes, size: int, name: str) -> bytes:
    value = bytes(value)
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes long, got {len(value)}")
    return value


def _read_exact(stream: Any, n: int) -> bytes:
    read = getattr(stream, "read", None)
    if read is None:
        read = stream.recv
    chunks = []
    while n > 0:
        chunk = read(n)
        if not chunk:
            raise HandshakeError("unexpected EOF")
        chunks.append(bytes(chunk))
        n -= len(chunk)
    return b"".join(chunks)


def write_handshake(stream: Any, info_hash: bytes, peer_id: bytes, extensions: bytes) -> None:
    """Write the 68-byte handshake to a stream (write) or socket (sendall)."""
    data = (
        PROTOCOL
        + _fixed(extensions, 8, "extensions")
        + _fixed(info_hash, 20, "info hash")
        + _fixed(peer_id, 20, "peer id")
    )
    write = getattr(stream, "write", None)
    if write is None:
        write = stream.sendall
    write(data)


def read_handshake1(stream: Any) -> tuple[bytes, bytes]:
    """Read the protocol string, extensions and info hash; return (extensions, info_hash)."""
    if _read_exact(stream, 20) != PROTOCOL:
        raise HandshakeError("invalid protocol")
    extensions = _read_exact(stream, 8)
    info_hash = _read_exact(stream, 20)
    return extensions, info_hash


def read_handshake2(stream: Any) -> bytes:
    """Read the remote peer id."""
    return _read_exact(stream, 20)


class Connection:
    """A peer connection, encrypted when a stream is attached."""

    def __init__(self, sock: socket.socket, stream: Stream | None = None):
        self.sock = sock
        self._stream = stream

    def read(self, size: int) -> bytes:
        """Return up to size bytes; b"" at end of stream."""
        if self._stream is not None:
            return self._stream.read(size)
        return self.sock.recv(size)

    def write(self, data: bytes) -> int:
        """Send all of data; return its length."""
        data = bytes(data)
        if self._stream is not None:
            self._stream.write(data)
        else:
            self.sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class _Recorder:
    """Socket reader that keeps a copy of every byte it returns."""

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self.seen = bytearray()

    def recv(self, n: int) -> bytes:
        chunk = self._sock.recv(n)
        self.seen += chunk
        return chunk


class _ReplaySocket:
    """Socket view that first returns bytes already consumed, then the live socket."""

    def __init__(self, prefix: bytes, sock: socket.socket):
        self._prefix = prefix
        self._sock = sock

    def recv(self, n: int) -> bytes:
        if self._prefix:
            chunk, self._prefix = self._prefix[:n], self._prefix[n:]
            return chunk
        return self._sock.recv(n)

    def sendall(self, data: bytes) -> None:
        self._sock.sendall(data)


def _remaining(deadline: float) -> float:
    left = deadline - time.time()
    if left <= 0:
        raise TimeoutError("deadline exceeded")
    return left


def dial(
    address: tuple[str, int],
    deadline: float,
    our_extensions: bytes,
    info_hash: bytes,
    our_id: bytes,
) -> tuple[Connection, CryptoMethod, bytes, bytes]:
    """Connect to a peer and perform the encrypted handshake.

    deadline is an absolute time.time() value. Returns
    (connection, cipher, peer_extensions, peer_id). The socket is closed on failure.
    """
    info_hash = _fixed(info_hash, 20, "info hash")
    our_id = _fixed(our_id, 20, "peer id")
    out = io.BytesIO()
    write_handshake(out, info_hash, our_id, our_extensions)

    sock = socket.create_connection(address, timeout=_remaining(deadline))
    try:
        sock.settimeout(_remaining(deadline))
        stream = Stream(sock)
        cipher = stream.handshake_outgoing(info_hash, CryptoMethod.RC4, out.getvalue())
        conn = Connection(sock, stream)
        peer_extensions, ih_read = read_handshake1(conn)
        if ih_read != info_hash:
            raise HandshakeError("invalid infohash")
        peer_id = read_handshake2(conn)
        if peer_id == our_id:
            raise HandshakeError("peerID matches ourID")
    except BaseException:
        sock.close()
        raise
    return conn, cipher, peer_extensions, peer_id


def accept(
    sock: socket.socket,
    handshake_timeout: float,
    get_skey: Callable[[bytes], bytes | None] | None,
    has_info_hash: Callable[[bytes], bool],
    our_extensions: bytes,
    our_id: bytes,
) -> tuple[Connection, CryptoMethod, bytes, bytes, bytes]:
    """Answer an incoming handshake, plain or, when get_skey is given, encrypted.

    Returns (connection, cipher, peer_extensions, peer_id, info_hash). The socket is
    closed on failure.
    """
    our_id = _fixed(our_id, 20, "peer id")
    try:
        sock.settimeout(handshake_timeout)
        recorder = _Recorder(sock)
        conn = Connection(sock)
        cipher = CryptoMethod(0)
        try:
            peer_extensions, info_hash = read_handshake1(recorder)
        except HandshakeError:
            if get_skey is None:
                raise
            stream = Stream(_ReplaySocket(bytes(recorder.seen), sock))

            def select(provided: CryptoMethod) -> CryptoMethod:
                nonlocal cipher
                if provided & CryptoMethod.RC4:
                    cipher = CryptoMethod.RC4
                    return CryptoMethod.RC4
                if provided & CryptoMethod.PLAIN_TEXT:
                    return CryptoMethod.PLAIN_TEXT
                return CryptoMethod(0)

            stream.handshake_incoming(get_skey, select)
            conn = Connection(sock, stream)
            peer_extensions, info_hash = read_handshake1(conn)

        if not has_info_hash(info_hash):
            raise HandshakeError("info hash mismatch")
        write_handshake(conn, info_hash, our_id, our_extensions)
        peer_id = read_handshake2(conn)
        if peer_id == our_id:
            raise HandshakeError("peerID matches ourID")
    except BaseException:
        sock.close()
        raise
    return conn, cipher, peer_extensions, peer_id, info_hash