import hashlib
import socket
import threading
import time

import pytest

from magnetleech.btconn import Connection, accept
from magnetleech.codec import encode
from magnetleech.extract import File
from magnetleech.leech import Leech, LeechError
from magnetleech.mse import hash_skey
from magnetleech.peers import PeerAddress

EXPECTED_HANDSHAKE = bytes(
    [0, 0, 0, 26, 20, 0, 100, 49, 58, 109, 100, 49, 49, 58, 117, 116, 95, 109, 101,
     116, 97, 100, 97, 116, 97, 105, 49, 101, 101, 101]
)


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    a.settimeout(5)
    b.settimeout(5)
    yield a, b
    a.close()
    b.close()


def _leech(sock):
    leech = Leech(
        bytes(20), PeerAddress("1.0.0.1", 6881), b"L" * 20, lambda m: None, lambda ih, e: None
    )
    leech.conn = Connection(sock)
    return leech


def _read_all(sock):
    chunks = []
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def _recv_exact(sock, n):
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def test_write_all_and_double_close(pair):
    a, b = pair
    leech = _leech(a)
    data = b"Hello, World!"
    leech.write_all(data)
    assert _recv_exact(b, len(data)) == data
    b.sendall(b"ack")
    assert leech.read_exactly(3) == b"ack"
    leech.close_conn()
    leech.close_conn()
    assert _read_all(b) == b""


def test_read_exactly(pair):
    a, b = pair
    leech = _leech(a)
    data = b"Hello, World!"
    b.sendall(data)
    b.close()
    assert leech.read_exactly(len(data)) == data


def test_read_exactly_short_read_fails(pair):
    a, b = pair
    leech = _leech(a)
    b.sendall(b"He")
    b.close()
    with pytest.raises(LeechError):
        leech.read_exactly(5)


@pytest.mark.parametrize(
    "size, expected_calls, expected_error",
    [
        (16 * 1024, 1, False),
        (32 * 1024, 2, False),
        (48 * 1024, 3, False),
        (0, 0, True),
    ],
)
def test_request_all_pieces(pair, size, expected_calls, expected_error):
    a, b = pair
    leech = _leech(a)
    leech.metadata_size = size
    if expected_error:
        with pytest.raises(LeechError):
            leech.request_all_pieces()
    else:
        leech.request_all_pieces()
    leech.close_conn()
    data = _read_all(b)
    requests = 0
    while data:
        length = int.from_bytes(data[:4], "big")
        data = data[4 + length:]
        requests += 1
    assert requests == expected_calls


def test_request_message_layout(pair):
    a, b = pair
    leech = _leech(a)
    leech.metadata_size = 100
    leech.ut_metadata = 3
    leech.request_all_pieces()
    leech.close_conn()
    body = encode({"msg_type": 0, "piece": 0})
    assert body == b"d8:msg_typei0e5:piecei0ee"
    assert _read_all(b) == (len(body) + 2).to_bytes(4, "big") + b"\x14\x03" + body


@pytest.mark.parametrize(
    "data, expected",
    [
        (bytes([0, 0, 0, 5]) + b"hello", b"hello"),
        (bytes([0xFF, 0xFF, 0xFF, 0xFF]) + b"hello", None),
        (bytes([0, 0, 0, 5]) + b"he", None),
    ],
    ids=["valid", "too-long", "incomplete"],
)
def test_read_message(pair, data, expected):
    a, b = pair
    leech = _leech(a)
    b.sendall(data)
    b.close()
    if expected is None:
        with pytest.raises(LeechError):
            leech.read_message()
    else:
        assert leech.read_message() == expected


@pytest.mark.parametrize(
    "data, expected",
    [
        (bytes([0, 0, 0, 7, 20, 1]) + b"hello", bytes([20, 1]) + b"hello"),
        (bytes([0, 0, 0, 6, 19, 1]) + b"hello", None),
        (bytes([0, 0, 0, 6, 20, 1]) + b"h", None),
    ],
    ids=["extension", "non-extension", "incomplete"],
)
def test_read_ex_message(pair, data, expected):
    a, b = pair
    leech = _leech(a)
    b.sendall(data)
    b.close()
    if expected is None:
        with pytest.raises(LeechError):
            leech.read_ex_message()
    else:
        assert leech.read_ex_message() == expected


@pytest.mark.parametrize(
    "data, expected",
    [
        (bytes([0, 0, 0, 7, 20, 1]) + b"hello", bytes([20, 1]) + b"hello"),
        (bytes([0, 0, 0, 7, 20, 2]) + b"hello", None),
        (bytes([0, 0, 0, 7, 20, 1]) + b"h", None),
    ],
    ids=["ut-metadata", "other-extension", "incomplete"],
)
def test_read_um_message(pair, data, expected):
    a, b = pair
    leech = _leech(a)
    b.sendall(data)
    b.close()
    if expected is None:
        with pytest.raises(LeechError):
            leech.read_um_message()
    else:
        assert leech.read_um_message() == expected


VALID = bytes([0, 0, 0, 49, 20, 0]) + b"d1:md11:ut_metadatai1ee13:metadata_sizei22528ee"
BAD_ID = bytes([0, 0, 0, 50, 20, 1]) + b"d1:md11:ut_metadatai1eee13:metadata_sizei22528ee"
BAD_SIZE = bytes([0, 0, 0, 45, 20, 0]) + b"d1:md11:ut_metadatai1ee13:metadata_sizei0ee"
BAD_UT = bytes([0, 0, 0, 50, 20, 0]) + b"d1:md11:ut_metadatai0eee13:metadata_sizei22528ee"


@pytest.mark.parametrize(
    "data, expect_error",
    [(VALID, False), (BAD_ID, True), (BAD_SIZE, True), (BAD_UT, True)],
    ids=["valid", "bad-id", "bad-size", "bad-ut-metadata"],
)
def test_do_ex_handshake(pair, data, expect_error):
    a, b = pair
    leech = _leech(a)
    b.sendall(data)
    if expect_error:
        with pytest.raises(LeechError):
            leech.do_ex_handshake()
    else:
        leech.do_ex_handshake()
    leech.close_conn()
    assert _read_all(b) == EXPECTED_HANDSHAKE


def test_do_ex_handshake_records_peer_values(pair):
    a, b = pair
    leech = _leech(a)
    b.sendall(VALID)
    leech.do_ex_handshake()
    assert leech.ut_metadata == 1
    assert leech.metadata_size == 22528
    assert len(leech.metadata) == 22528


# Full exchanges against a local peer speaking the encrypted handshake.

META = encode({"length": 10, "name": "test", "piece length": 16384, "pieces": bytes(20)})
INFO_HASH = hashlib.sha1(META).digest()


def _exact(conn, n):
    buf = b""
    while len(buf) < n:
        chunk = conn.read(n - len(buf))
        if not chunk:
            raise EOFError
        buf += chunk
    return buf


def _read_msg(conn):
    return _exact(conn, int.from_bytes(_exact(conn, 4), "big"))


def _send_msg(conn, payload):
    conn.write(len(payload).to_bytes(4, "big") + payload)


def _serve(listener, reply, record):
    sock, _ = listener.accept()
    try:
        conn, _, extensions, _, _ = accept(
            sock,
            10,
            lambda h: INFO_HASH if h == hash_skey(INFO_HASH) else None,
            lambda ih: ih == INFO_HASH,
            bytes(8),
            b"S" * 20,
        )
        record["extensions"] = extensions
        record["handshake"] = _read_msg(conn)
        _send_msg(conn, b"\x14\x00" + encode({"m": {"ut_metadata": 3}, "metadata_size": len(META)}))
        record["request"] = _read_msg(conn)
        _send_msg(conn, b"\x14\x01" + reply)
        conn.read(1)
    except Exception as exc:
        record["error"] = exc
    finally:
        sock.close()


def _run_against_server(reply):
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    record = {}
    server = threading.Thread(target=_serve, args=(listener, reply, record), daemon=True)
    server.start()
    successes, errors = [], []
    leech = Leech(
        INFO_HASH,
        PeerAddress("127.0.0.1", port),
        b"L" * 20,
        successes.append,
        lambda ih, e: errors.append((ih, e)),
    )
    try:
        leech.run(time.time() + 10)
        server.join(10)
    finally:
        listener.close()
    return successes, errors, record


def test_run_fetches_metadata():
    reply = encode({"msg_type": 1, "piece": 0, "total_size": len(META)}) + META
    successes, errors, record = _run_against_server(reply)
    assert errors == []
    assert "error" not in record
    assert record["extensions"] == bytes([0, 0, 0, 0, 0, 0x10, 0, 1])
    assert record["handshake"] == EXPECTED_HANDSHAKE[4:]
    assert record["request"][:2] == b"\x14\x03"
    assert len(successes) == 1
    metadata = successes[0]
    assert metadata.info_hash == INFO_HASH
    assert metadata.name == "test"
    assert metadata.total_size == 10
    assert metadata.files == [File(size=10, path="test")]


def test_run_reports_rejection():
    successes, errors, _ = _run_against_server(encode({"msg_type": 2, "piece": 0}))
    assert successes == []
    assert len(errors) == 1
    assert errors[0][0] == INFO_HASH
    assert "rejected" in str(errors[0][1])


def test_run_reports_unreachable_peer():
    probe = socket.create_server(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    errors = []
    leech = Leech(
        INFO_HASH, PeerAddress("127.0.0.1", port), b"L" * 20,
        lambda m: None, lambda ih, e: errors.append((ih, e)),
    )
    leech.run(time.time() + 5)
    assert len(errors) == 1
    assert errors[0][0] == INFO_HASH
    assert isinstance(errors[0][1], LeechError)