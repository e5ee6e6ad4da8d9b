import socket
import threading

import pytest

from magnetleech.mse import CryptoMethod, MSEError, Stream, hash_skey


@pytest.fixture
def pair():
    sa, sb = socket.socketpair()
    sa.settimeout(10)
    sb.settimeout(10)
    yield sa, sb
    sa.close()
    sb.close()


def _read_exact(stream, n):
    buf = b""
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            raise EOFError("stream ended")
        buf += chunk
    return buf


def _start_outgoing(stream, skey, provide, payload, read_back=0):
    result = {}

    def run():
        try:
            result["selected"] = stream.handshake_outgoing(skey, provide, payload)
            if read_back:
                result["data"] = _read_exact(stream, read_back)
        except Exception as exc:  # noqa: BLE001
            result["error"] = exc

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, result


def _known_key(skey):
    return lambda h: skey if h == hash_skey(skey) else None


def test_crypto_method_string():
    assert str(CryptoMethod.PLAIN_TEXT) == "PlainText"
    assert str(CryptoMethod.RC4) == "RC4"
    assert str(CryptoMethod(3)) == "unknown"


def test_stream_rc4_round_trip(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    skey = b"1234"
    thread, result = _start_outgoing(a, skey, CryptoMethod.RC4, b"payloadA", read_back=8)

    b.handshake_incoming(
        _known_key(skey),
        lambda provided: CryptoMethod.RC4 if provided == CryptoMethod.RC4 else CryptoMethod(0),
    )
    assert _read_exact(b, 8) == b"payloadA"
    assert b.write(b"payloadB") == 8
    thread.join(10)

    assert "error" not in result
    assert result["selected"] == CryptoMethod.RC4
    assert result["data"] == b"payloadB"

    a.write(b"ABCD")
    assert b.read(10) == b"ABCD"


def test_rc4_traffic_is_not_plain_on_the_wire(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    skey = b"key"
    thread, result = _start_outgoing(a, skey, CryptoMethod.RC4, b"")
    b.handshake_incoming(_known_key(skey), lambda provided: CryptoMethod.RC4)
    thread.join(10)
    assert result["selected"] == CryptoMethod.RC4

    message = b"hello world!"
    a.write(message)
    raw = _read_exact(sb, len(message)) if False else sb.recv(100)
    assert len(raw) == len(message)
    assert raw != message


def test_plain_text_selection_sends_raw_bytes(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    skey = b"abcd"
    thread, result = _start_outgoing(
        a, skey, CryptoMethod.PLAIN_TEXT | CryptoMethod.RC4, b"hi"
    )
    b.handshake_incoming(_known_key(skey), lambda provided: CryptoMethod.PLAIN_TEXT)
    thread.join(10)

    assert result["selected"] == CryptoMethod.PLAIN_TEXT
    assert _read_exact(b, 2) == b"hi"
    a.write(b"ABCD")
    assert sb.recv(10) == b"ABCD"


def test_unknown_skey_fails_both_sides(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    thread, result = _start_outgoing(a, b"1234", CryptoMethod.RC4, b"")
    with pytest.raises(MSEError, match="invalid SKEY hash"):
        b.handshake_incoming(lambda h: None, lambda provided: CryptoMethod.RC4)
    sb.close()
    thread.join(10)
    assert isinstance(result["error"], (MSEError, OSError))


def test_no_method_selected(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    skey = b"k"
    thread, result = _start_outgoing(a, skey, CryptoMethod.RC4, b"")
    with pytest.raises(MSEError, match="none of the provided methods are accepted"):
        b.handshake_incoming(_known_key(skey), lambda provided: CryptoMethod(0))
    sb.close()
    thread.join(10)
    assert "error" in result


def test_selected_method_not_provided(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    skey = b"k"
    thread, result = _start_outgoing(a, skey, CryptoMethod.RC4, b"")
    with pytest.raises(MSEError, match="selected crypto is not provided"):
        b.handshake_incoming(_known_key(skey), lambda provided: CryptoMethod.PLAIN_TEXT)
    sb.close()
    thread.join(10)
    assert "error" in result


def test_selected_method_not_single_bit(pair):
    sa, sb = pair
    a, b = Stream(sa), Stream(sb)
    skey = b"k"
    thread, result = _start_outgoing(a, skey, CryptoMethod.RC4, b"")
    with pytest.raises(MSEError, match="invalid crypto selected: 3"):
        b.handshake_incoming(_known_key(skey), lambda provided: 3)
    sb.close()
    thread.join(10)
    assert "error" in result


def test_outgoing_requires_a_method(pair):
    sa, _ = pair
    with pytest.raises(MSEError, match="no crypto methods are provided"):
        Stream(sa).handshake_outgoing(b"k", CryptoMethod(0), b"")


def test_outgoing_rejects_large_payload(pair):
    sa, _ = pair
    with pytest.raises(MSEError, match="initial payload is too big"):
        Stream(sa).handshake_outgoing(b"k", CryptoMethod.RC4, bytes(65536))


def test_read_and_write_before_handshake(pair):
    sa, _ = pair
    stream = Stream(sa)
    with pytest.raises(MSEError):
        stream.read(4)
    with pytest.raises(MSEError):
        stream.write(b"data")


def test_hash_skey_shape():
    first = hash_skey(b"1234")
    assert len(first) == 20
    assert hash_skey(b"1234") == first
    assert hash_skey(b"4321") != first