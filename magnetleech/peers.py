"""Per-info-hash queues of candidate peers to fetch metadata from."""

from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Union

__all__ = ["PeerAddress", "InfoHashes"]

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_PRIVATE = tuple(
    ipaddress.ip_network(n)
    for n in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "fc00::/7")
)
_BROADCAST = ipaddress.IPv4Address("255.255.255.255")


def _normalise(ip: Any) -> IPAddress:
    address = ipaddress.ip_address(ip)
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _is_global_unicast(ip: IPAddress) -> bool:
    if ip == _BROADCAST:
        return False
    return not (ip.is_unspecified or ip.is_loopback or ip.is_multicast or ip.is_link_local)


def _is_private(ip: IPAddress) -> bool:
    return any(ip in net for net in _PRIVATE)


def _network(value: Any) -> IPNetwork:
    if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return value
    return ipaddress.ip_network(value, strict=False)


@dataclass(frozen=True)
class PeerAddress:
    """A TCP address of a peer; IPv4-mapped IPv6 addresses are stored as IPv4."""

    ip: IPAddress
    port: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", _normalise(self.ip))

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


class InfoHashes:
    """Thread-safe map from info hash to a bounded queue of peer addresses."""

    def __init__(self, max_n_leeches: int, filter_peers: Iterable[Any] = ()):
        self._lock = threading.Lock()
        self._peers: dict[bytes, list[PeerAddress]] = {}
        self.max_n_leeches = max_n_leeches
        self.filter_peers: tuple[IPNetwork, ...] = tuple(_network(n) for n in filter_peers)

    def is_allowed(self, peer: PeerAddress) -> bool:
        """Whether a peer may be queued: inside a filter network, or a public address."""
        if self.filter_peers:
            return any(peer.ip in net for net in self.filter_peers)
        if not _is_global_unicast(peer.ip) or _is_private(peer.ip):
            return False
        return 1024 <= peer.port <= 65535

    def push(self, info_hash: bytes, peer_addresses: Iterable[PeerAddress]) -> None:
        """Queue allowed, not yet queued peers until the per-hash limit is reached."""
        peer_addresses = list(peer_addresses)
        if not peer_addresses:
            return
        info_hash = bytes(info_hash)
        with self._lock:
            for addr in peer_addresses:
                if not self.is_allowed(addr):
                    continue
                queue = self._peers.get(info_hash, [])
                if len(queue) >= self.max_n_leeches:
                    return
                if addr in queue:
                    continue
                self._peers[info_hash] = queue + [addr]

    def pop(self, info_hash: bytes) -> PeerAddress | None:
        """Take the next queued peer; an exhausted queue is dropped and None returned."""
        info_hash = bytes(info_hash)
        with self._lock:
            queue = self._peers.get(info_hash)
            if queue is None:
                return None
            if not queue:
                del self._peers[info_hash]
                return None
            self._peers[info_hash] = queue[1:]
            return queue[0]

    def flush(self, info_hash: bytes) -> None:
        """Forget every peer queued for info_hash."""
        with self._lock:
            self._peers.pop(bytes(info_hash), None)

    def __contains__(self, info_hash: object) -> bool:
        with self._lock:
            return info_hash in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)