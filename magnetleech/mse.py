"""Message stream encryption: the obfuscated BitTorrent handshake and RC4 stream."""

from __future__ import annotations

import enum
import hashlib
import secrets
from typing import Any, Callable

__all__ = ["CryptoMethod", "MSEError", "Stream", "hash_skey"]

_P = int.from_bytes(
    bytes(
        [
            255, 255, 255, 255, 255, 255, 255, 255, 201, 15, 218, 162, 33, 104, 194, 52,
            196, 198, 98, 139, 128, 220, 28, 209, 41, 2, 78, 8, 138, 103, 204, 116,
            2, 11, 190, 166, 59, 19, 155, 34, 81, 74, 8, 121, 142, 52, 4, 221,
            239, 149, 25, 179, 205, 58, 67, 27, 48, 43, 10, 109, 242, 95, 20, 55,
            79, 225, 53, 109, 109, 81, 194, 69, 228, 133, 181, 118, 98, 94, 126, 198,
            244, 76, 66, 233, 166, 58, 54, 33, 0, 0, 0, 0, 0, 9, 5, 99,
        ]
    ),
    "big",
)
_G = 2
_VC = bytes(8)
_KEY_SIZE = 96
_MAX_PAD = 512
_MAX_U16 = 0xFFFF


class MSEError(Exception):
    """Raised when the encryption handshake fails or the stream is misused."""


class CryptoMethod(enum.IntFlag):
    """Bitfield of crypto methods offered or selected during the handshake."""

    PLAIN_TEXT = 1
    RC4 = 2

    def __str__(self) -> str:
        if self.value == CryptoMethod.PLAIN_TEXT.value:
            return "PlainText"
        if self.value == CryptoMethod.RC4.value:
            return "RC4"
        return "unknown"


class _RC4:
    def __init__(self, key: bytes):
        state = list(range(256))
        j = 0
        for i in range(256):
            j = (j + state[i] + key[i % len(key)]) & 0xFF
            state[i], state[j] = state[j], state[i]
        self._state = state
        self._i = 0
        self._j = 0

    def process(self, data: bytes) -> bytes:
        state = self._state
        i, j = self._i, self._j
        out = bytearray(len(data))
        for n, byte in enumerate(data):
            i = (i + 1) & 0xFF
            j = (j + state[i]) & 0xFF
            state[i], state[j] = state[j], state[i]
            out[n] = byte ^ state[(state[i] + state[j]) & 0xFF]
        self._i, self._j = i, j
        return bytes(out)


class _PlainText:
    def process(self, data: bytes) -> bytes:
        return bytes(data)


def _pad_bytes(value: int) -> bytes:
    """Big-endian bytes of value, left-padded with zeros to 96 bytes."""
    return value.to_bytes(max(_KEY_SIZE, (value.bit_length() + 7) // 8), "big")


def _key_pair() -> tuple[int, int]:
    private = int.from_bytes(secrets.token_bytes(20), "big")
    return private, pow(_G, private, _P)


def _is_power_of_two(x: int) -> bool:
    return x != 0 and (x & (x - 1)) == 0


def _hash_int(prefix: bytes, value: int) -> bytes:
    return hashlib.sha1(prefix + _pad_bytes(value)).digest()


def hash_skey(key: bytes) -> bytes:
    """The hash by which the responder recognises a stream identifier key."""
    return hashlib.sha1(b"req2" + bytes(key)).digest()


def _hashes(secret_int: int, skey: bytes) -> tuple[bytes, bytes]:
    req1 = _hash_int(b"req1", secret_int)
    req2 = hash_skey(skey)
    req3 = _hash_int(b"req3", secret_int)
    return req1, bytes(a ^ b for a, b in zip(req3, req2))


def _rc4_key(prefix: bytes, secret_int: int, skey: bytes) -> bytes:
    return hashlib.sha1(prefix + _pad_bytes(secret_int) + bytes(skey)).digest()


def _pad_zero() -> bytes:
    return bytes(secrets.randbelow(_MAX_PAD))


def _pad_random() -> bytes:
    return secrets.token_bytes(secrets.randbelow(_MAX_PAD))


class Stream:
    """Wraps a raw byte channel and encrypts/decrypts traffic after a handshake.

    The raw channel is either a socket (recv/sendall) or an object whose read(size)
    returns up to size bytes as soon as some are available and whose write(data)
    sends bytes.
    """

    def __init__(self, raw: Any):
        if hasattr(raw, "recv"):
            self._recv = raw.recv
            self._send = raw.sendall
        else:
            self._recv = raw.read
            self._send = raw.write
        self._enc: Any = None
        self._dec: Any = None
        self._pending = b""
        self._ready = False

    # raw channel helpers

    def _write_raw(self, data: bytes) -> None:
        view = memoryview(bytes(data))
        while view:
            sent = self._send(view)
            if sent is None:
                return
            view = view[sent:]

    def _read_raw_exact(self, n: int) -> bytes:
        chunks = []
        while n > 0:
            chunk = self._recv(n)
            if not chunk:
                raise MSEError("unexpected EOF")
            chunks.append(bytes(chunk))
            n -= len(chunk)
        return b"".join(chunks)

    def _read_raw_at_least(self, minimum: int, maximum: int) -> bytes:
        buf = b""
        while len(buf) < minimum:
            chunk = self._recv(maximum - len(buf))
            if not chunk:
                raise MSEError("unexpected EOF")
            buf += bytes(chunk)
        return buf

    def _read_dec_exact(self, n: int) -> bytes:
        return self._dec.process(self._read_raw_exact(n))

    def _read_dec_int(self, size: int) -> int:
        return int.from_bytes(self._read_dec_exact(size), "big")

    def _read_sync(self, key: bytes, limit: int) -> None:
        window = self._read_raw_exact(len(key))
        limit -= len(key)
        while window != key:
            if limit <= 0:
                raise MSEError("sync point is not found")
            window = window[1:] + self._read_raw_exact(1)
            limit -= 1

    def _init_rc4(self, enc_key: bytes, dec_key: bytes, secret_int: int, skey: bytes) -> None:
        self._enc = _RC4(_rc4_key(enc_key, secret_int, skey))
        self._dec = _RC4(_rc4_key(dec_key, secret_int, skey))
        discard = bytes(1024)
        self._enc.process(discard)
        self._dec.process(discard)

    def _update_cipher(self, selected: int) -> None:
        if selected == CryptoMethod.PLAIN_TEXT:
            self._enc = _PlainText()
            self._dec = _PlainText()

    @staticmethod
    def _check_selected(selected: int, provided: int, message: str) -> None:
        if selected == 0:
            raise MSEError("none of the provided methods are accepted")
        if not _is_power_of_two(selected):
            raise MSEError(f"invalid crypto selected: {selected}")
        if selected & provided == 0:
            raise MSEError(f"{message}: {selected}")

    # handshakes

    def handshake_outgoing(
        self, skey: bytes, crypto_provide: CryptoMethod | int, initial_payload: bytes
    ) -> CryptoMethod:
        """Run the initiator side; return the crypto method the peer selected."""
        provide = int(crypto_provide)
        if provide == 0:
            raise MSEError("no crypto methods are provided")
        payload = bytes(initial_payload or b"")
        if len(payload) > _MAX_U16:
            raise MSEError("initial payload is too big")

        # Step 1: Ya, PadA
        xa, ya = _key_pair()
        self._write_raw(_pad_bytes(ya) + _pad_random())

        # Step 2: Yb, PadB
        first = self._read_raw_at_least(_KEY_SIZE, _KEY_SIZE + _MAX_PAD)
        yb = int.from_bytes(first[:_KEY_SIZE], "big")
        secret_int = pow(yb, xa, _P)
        self._init_rc4(b"keyA", b"keyB", secret_int, skey)

        # Step 3: hashes, then encrypted VC, crypto_provide, PadC and IA
        hash_s, hash_sk = _hashes(secret_int, skey)
        pad_c = _pad_zero()
        tail = (
            _VC
            + provide.to_bytes(4, "big")
            + len(pad_c).to_bytes(2, "big")
            + pad_c
            + len(payload).to_bytes(2, "big")
            + payload
        )
        self._write_raw(hash_s + hash_sk + self._enc.process(tail))

        # Step 4: encrypted VC, crypto_select, PadD
        vc_enc = self._dec.process(_VC)
        self._read_sync(vc_enc, 616 - len(first))
        selected = self._read_dec_int(4)
        self._check_selected(selected, provide, "selected crypto was not provided")
        pad_d_len = self._read_dec_int(2)
        self._read_dec_exact(pad_d_len)
        self._update_cipher(selected)
        self._ready = True
        return CryptoMethod(selected)

    def handshake_incoming(
        self,
        get_skey: Callable[[bytes], bytes | None],
        crypto_select: Callable[[CryptoMethod], CryptoMethod | int],
    ) -> None:
        """Run the responder side.

        get_skey maps the received key hash to the stream key, or None if unknown.
        crypto_select picks one method out of those the initiator provides.
        """
        xb, yb = _key_pair()

        # Step 1: Ya, PadA
        first = self._read_raw_at_least(_KEY_SIZE, _KEY_SIZE + _MAX_PAD)
        ya = int.from_bytes(first[:_KEY_SIZE], "big")
        secret_int = pow(ya, xb, _P)

        # Step 2: Yb, PadB
        self._write_raw(_pad_bytes(yb) + _pad_random())

        # Step 3
        self._read_sync(_hash_int(b"req1", secret_int), 628 - len(first))
        hash_read = self._read_raw_exact(20)
        req3 = _hash_int(b"req3", secret_int)
        skey = get_skey(bytes(a ^ b for a, b in zip(hash_read, req3)))
        if skey is None:
            raise MSEError("invalid SKEY hash")
        self._init_rc4(b"keyB", b"keyA", secret_int, skey)
        vc_read = self._read_dec_exact(8)
        if vc_read != _VC:
            raise MSEError(f"invalid VC: {vc_read.hex()}")
        provided = self._read_dec_int(4)
        if provided == 0:
            raise MSEError("no crypto methods are provided")
        selected = int(crypto_select(CryptoMethod(provided)))
        self._check_selected(selected, provided, "selected crypto is not provided")
        self._read_dec_exact(self._read_dec_int(2))
        initial_payload = self._read_dec_exact(self._read_dec_int(2))

        # Step 4: encrypted VC, crypto_select, PadD
        pad_d = _pad_zero()
        reply = _VC + selected.to_bytes(4, "big") + len(pad_d).to_bytes(2, "big") + pad_d
        self._write_raw(self._enc.process(reply))

        self._update_cipher(selected)
        self._pending = initial_payload
        self._ready = True

    # payload stream

    def _require_ready(self) -> None:
        if not self._ready:
            raise MSEError("handshake has not been completed")

    def read(self, size: int) -> bytes:
        """Return up to size decrypted bytes; b"" at end of stream."""
        self._require_ready()
        if size <= 0:
            return b""
        if self._pending:
            chunk, self._pending = self._pending[:size], self._pending[size:]
            return chunk
        data = self._recv(size)
        if not data:
            return b""
        return self._dec.process(bytes(data))

    def write(self, data: bytes) -> int:
        """Encrypt and send all of data; return its length."""
        self._require_ready()
        data = bytes(data)
        self._write_raw(self._enc.process(data))
        return len(data)