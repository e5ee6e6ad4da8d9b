"""Fetching torrent metadata from a single peer with the ut_metadata extension."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable

from .btconn import HandshakeError, dial
from .codec import BencodeError, decode, decode_prefix, encode
from .extract import Metadata, extract_metadata, to_big_endian
from .mse import MSEError
from .peers import PeerAddress

__all__ = ["MAX_METADATA_SIZE", "PIECE_SIZE", "LeechError", "Leech"]

MAX_METADATA_SIZE = 10 * 1024 * 1024
PIECE_SIZE = 16 * 1024

_EXTENSIONS = bytes([0x00, 0x00, 0x00, 0x00, 0x00, 0x10, 0x00, 0x01])
_EX_HANDSHAKE = b"\x00\x00\x00\x1a\x14\x00d1:md11:ut_metadatai1eee"
_MSG_EXTENDED = 20
_EX_HANDSHAKE_ID = 0
_UT_METADATA_ID = 1
_MSG_DATA = 1
_MSG_REJECT = 2


class LeechError(Exception):
    """Raised when fetching metadata from a peer fails."""


def _int_field(value: dict, key: bytes) -> int:
    found = value.get(key, 0)
    if isinstance(found, bool) or not isinstance(found, int):
        raise LeechError(f"{key.decode()} is not an integer")
    return found


class Leech:
    """Downloads the info dictionary of one torrent from one peer.

    on_success receives the extracted Metadata; on_error receives the info hash
    and the exception that ended the attempt.
    """

    def __init__(
        self,
        info_hash: bytes,
        peer_addr: PeerAddress | None,
        client_id: bytes,
        on_success: Callable[[Metadata], Any],
        on_error: Callable[[bytes, Exception], Any],
    ):
        self.info_hash = bytes(info_hash)
        self.peer_addr = peer_addr
        self.client_id = (bytes(client_id) + bytes(20))[:20]
        self.on_success = on_success
        self.on_error = on_error
        self.conn: Any = None
        self.ut_metadata = 0
        self.metadata_size = 0
        self.metadata_received = 0
        self.metadata = bytearray()
        self._conn_closed = False
        self._deadline: float | None = None

    # connection helpers

    def _apply_deadline(self) -> None:
        if self._deadline is None:
            return
        left = self._deadline - time.time()
        if left <= 0:
            raise LeechError("deadline exceeded")
        sock = getattr(self.conn, "sock", None)
        if sock is not None:
            sock.settimeout(left)

    def write_all(self, data: bytes) -> None:
        """Send every byte of data over the connection."""
        view = memoryview(bytes(data))
        try:
            while view:
                self._apply_deadline()
                sent = self.conn.write(view)
                view = view[sent:]
        except OSError as exc:
            raise LeechError(f"write failed: {exc}") from exc

    def read_exactly(self, n: int) -> bytes:
        """Read exactly n bytes; a short read is an error."""
        chunks = []
        remaining = n
        while remaining > 0:
            self._apply_deadline()
            try:
                chunk = self.conn.read(remaining)
            except OSError as exc:
                raise LeechError(f"read failed: {exc}") from exc
            if not chunk:
                raise LeechError("unexpected EOF")
            chunks.append(bytes(chunk))
            remaining -= len(chunk)
        return b"".join(chunks)

    def close_conn(self) -> None:
        """Close the connection once; later calls do nothing."""
        if self._conn_closed or self.conn is None:
            return
        self.conn.close()
        self._conn_closed = True

    # protocol steps

    def do_ex_handshake(self) -> None:
        """Exchange extension handshakes and learn the metadata size."""
        try:
            self.write_all(_EX_HANDSHAKE)
        except LeechError as exc:
            raise LeechError(f"sending extension handshake: {exc}") from exc

        message = self.read_ex_message()
        if message[1] != _EX_HANDSHAKE_ID:
            raise LeechError("first extension message is not an extension handshake")
        try:
            root = decode(message[2:])
        except BencodeError as exc:
            raise LeechError(f"invalid extension handshake: {exc}") from exc
        if not isinstance(root, dict):
            raise LeechError("extension handshake is not a dictionary")
        m = root.get(b"m", {})
        if not isinstance(m, dict):
            raise LeechError("extension handshake has an invalid m dictionary")
        size = _int_field(root, b"metadata_size")
        ut_metadata = _int_field(m, b"ut_metadata")

        if not 0 < size < MAX_METADATA_SIZE:
            raise LeechError("metadata too big or its size is less than or equal zero")
        if not 0 < ut_metadata < 255:
            raise LeechError("ut_metadata is not an uint8")

        self.ut_metadata = ut_metadata
        self.metadata_size = size
        self.metadata = bytearray(size)
        self.metadata_received = 0

    def request_all_pieces(self) -> None:
        """Ask the peer for every metadata piece."""
        n_pieces = -(-self.metadata_size // PIECE_SIZE)
        if n_pieces == 0:
            raise LeechError("metadataSize is zero")
        for piece in range(n_pieces):
            dump = encode({"msg_type": 0, "piece": piece})
            request = (
                to_big_endian(2 + len(dump), 4)
                + bytes([_MSG_EXTENDED])
                + to_big_endian(self.ut_metadata, 1)
                + dump
            )
            try:
                self.write_all(request)
            except LeechError as exc:
                raise LeechError(f"sending piece request: {exc}") from exc

    def read_message(self) -> bytes:
        """Read one length-prefixed peer message, without its length prefix."""
        length = int.from_bytes(self.read_exactly(4), "big")
        # Guards against peers announcing absurdly long messages.
        if length > MAX_METADATA_SIZE:
            raise LeechError("message is longer than max allowed metadata size")
        return self.read_exactly(length)

    def read_ex_message(self) -> bytes:
        """Read the next extension message, skipping all other messages."""
        while True:
            message = self.read_message()
            if len(message) < 2:
                continue
            if message[0] == _MSG_EXTENDED:
                return message

    def read_um_message(self) -> bytes:
        """Read the next ut_metadata message, skipping other extension messages."""
        while True:
            message = self.read_ex_message()
            if message[1] == _UT_METADATA_ID:
                return message

    def _receive_piece(self, message: bytes) -> None:
        try:
            ext, piece_data = decode_prefix(message[2:])
        except BencodeError as exc:
            raise LeechError(f"could not decode ext msg in the loop: {exc}") from exc
        if not isinstance(ext, dict):
            raise LeechError("ut_metadata message is not a dictionary")
        msg_type = _int_field(ext, b"msg_type")
        piece = _int_field(ext, b"piece")

        if msg_type == _MSG_REJECT:
            raise LeechError("remote peer rejected sending metadata")
        if msg_type != _MSG_DATA:
            return

        # Every piece but the last must be exactly 16 KiB; none may be longer.
        if len(piece_data) > PIECE_SIZE:
            raise LeechError("metadataPiece > 16kiB")
        start = piece * PIECE_SIZE
        end = start + len(piece_data)
        if piece < 0 or end > len(self.metadata):
            raise LeechError("metadata piece out of range")
        self.metadata[start:end] = piece_data
        self.metadata_received += len(piece_data)

        if len(piece_data) < PIECE_SIZE and self.metadata_received != self.metadata_size:
            raise LeechError("metadataPiece < 16 kiB but incomplete")
        if self.metadata_received > self.metadata_size:
            raise LeechError("metadataReceived > metadataSize")

    def _fetch(self, deadline: float) -> Metadata:
        if self.peer_addr is None:
            raise LeechError("no peer address")
        address = (str(self.peer_addr.ip), self.peer_addr.port)
        try:
            self.conn, _, _, _ = dial(
                address, deadline, _EXTENSIONS, self.info_hash, self.client_id
            )
        except (OSError, HandshakeError, MSEError, ValueError) as exc:
            raise LeechError(f"dial: {exc}") from exc
        self._conn_closed = False
        self._deadline = deadline
        try:
            self.do_ex_handshake()
            self.request_all_pieces()
            while self.metadata_received < self.metadata_size:
                self._receive_piece(self.read_um_message())
        finally:
            # Release the socket as soon as the transfer is over.
            self.close_conn()
        return extract_metadata(
            bytes(self.metadata), self.info_hash, datetime.now(timezone.utc)
        )

    def run(self, deadline: float) -> None:
        """Fetch the metadata before deadline (a time.time() value) and report the outcome."""
        try:
            metadata = self._fetch(deadline)
        except (LeechError, ValueError) as exc:
            self.on_error(self.info_hash, exc)
            return
        self.on_success(metadata)