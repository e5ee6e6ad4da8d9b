import pytest

from magnetleech.peers import InfoHashes, PeerAddress

INFO_HASH = bytes([1, 2, 3, 4, 5, 6]) + bytes(14)


def test_push_respects_filters_duplicates_and_limit():
    ih = InfoHashes(2)
    ih.push(
        INFO_HASH,
        [
            PeerAddress("1.0.0.1", 443),
            PeerAddress("1.0.0.2", 1337),
            PeerAddress("1.0.0.2", 1337),
            PeerAddress("1.0.0.3", 6969),
            PeerAddress("1.0.0.4", 8080),
        ],
    )
    assert ih.pop(INFO_HASH) == PeerAddress("1.0.0.2", 1337)
    assert ih.pop(INFO_HASH) == PeerAddress("1.0.0.3", 6969)
    assert ih.pop(INFO_HASH) is None


def test_pop_returns_first_and_keeps_rest():
    ih = InfoHashes(3)
    peers = [
        PeerAddress("1.0.0.1", 1443),
        PeerAddress("1.0.0.2", 1337),
        PeerAddress("1.0.0.3", 6969),
    ]
    ih.push(INFO_HASH, peers)
    assert ih.pop(INFO_HASH) == peers[0]
    assert [ih.pop(INFO_HASH), ih.pop(INFO_HASH)] == peers[1:]


def test_pop_of_empty_queue_flushes():
    ih = InfoHashes(1)
    ih.push(INFO_HASH, [PeerAddress("1.0.0.1", 2000)])
    assert ih.pop(INFO_HASH) == PeerAddress("1.0.0.1", 2000)
    assert INFO_HASH in ih
    assert ih.pop(INFO_HASH) is None
    assert INFO_HASH not in ih


def test_pop_unknown_is_none():
    assert InfoHashes(2).pop(INFO_HASH) is None


@pytest.mark.parametrize(
    "peer, allowed",
    [
        (PeerAddress("127.0.0.1", 5678), True),
        (PeerAddress("192.168.1.1", 6789), False),
    ],
)
def test_is_allowed_with_filter(peer, allowed):
    ih = InfoHashes(2, ["127.0.0.0/8"])
    assert ih.is_allowed(peer) is allowed


@pytest.mark.parametrize(
    "peer, allowed",
    [
        (PeerAddress("1.0.0.1", 6881), True),
        (PeerAddress("1.0.0.1", 80), False),
        (PeerAddress("10.1.2.3", 6881), False),
        (PeerAddress("172.16.0.1", 6881), False),
        (PeerAddress("127.0.0.1", 6881), False),
        (PeerAddress("0.0.0.0", 6881), False),
        (PeerAddress("224.0.0.1", 6881), False),
        (PeerAddress("169.254.1.1", 6881), False),
        (PeerAddress("255.255.255.255", 6881), False),
        (PeerAddress("fd00::1", 6881), False),
        (PeerAddress("2001:4860::1", 6881), True),
    ],
)
def test_is_allowed_without_filter(peer, allowed):
    assert InfoHashes(2).is_allowed(peer) is allowed


def test_mapped_ipv6_counts_as_duplicate():
    ih = InfoHashes(5)
    ih.push(INFO_HASH, [PeerAddress("1.0.0.2", 1337), PeerAddress("::ffff:1.0.0.2", 1337)])
    assert ih.pop(INFO_HASH) == PeerAddress("1.0.0.2", 1337)
    assert ih.pop(INFO_HASH) is None


def test_flush_removes_queue():
    ih = InfoHashes(2)
    ih.push(INFO_HASH, [PeerAddress("1.0.0.2", 1337)])
    assert len(ih) == 1
    ih.flush(INFO_HASH)
    assert len(ih) == 0
    assert ih.pop(INFO_HASH) is None


def test_peer_address_str():
    assert str(PeerAddress("1.0.0.2", 1337)) == "1.0.0.2:1337"
    assert str(PeerAddress("2001:db8::1", 80)) == "[2001:db8::1]:80"