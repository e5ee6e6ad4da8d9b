"""Collecting torrent metadata from many peers concurrently."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from .extract import Metadata, random_id
from .leech import Leech
from .peers import InfoHashes, PeerAddress

__all__ = ["Result", "Sink"]

_DRAIN_CAPACITY = 10


def _key(info_hash: bytes) -> bytes:
    return (bytes(info_hash) + bytes(20))[:20]


@dataclass(frozen=True)
class Result:
    """An info hash discovered on the DHT and the peers announcing it."""

    info_hash: bytes
    peer_addrs: tuple[PeerAddress, ...] = ()


class Sink:
    """Starts leeches for discovered info hashes and hands out fetched metadata.

    deadline is the number of seconds each leech may take.
    """

    def __init__(self, deadline: float, max_n_leeches: int, filter_nodes: Iterable[Any] = ()):
        self.peer_id = random_id()
        self.deadline = deadline
        self.incoming_info_hashes = InfoHashes(max_n_leeches, filter_nodes)
        self.terminated = False
        self._cond = threading.Condition()
        self._drain: deque[Metadata] = deque()

    def sink(self, result: Any) -> None:
        """Start fetching the metadata of result from its first peer."""
        if self.terminated:
            raise RuntimeError("trying to sink into an already closed sink")
        peers = list(result.peer_addrs)
        if not peers:
            return
        threading.Thread(
            target=self._leech,
            args=(bytes(result.info_hash), peers[1:], peers[0]),
            daemon=True,
        ).start()

    def _leech(self, info_hash: bytes, peer_addrs: list[PeerAddress], first_peer: PeerAddress) -> None:
        self.incoming_info_hashes.push(info_hash, peer_addrs)
        self._run_leech(info_hash, first_peer)

    def _run_leech(self, info_hash: bytes, peer: PeerAddress) -> None:
        Leech(info_hash, peer, self.peer_id, self.flush, self.on_leech_error).run(
            time.time() + self.deadline
        )

    def drain(self) -> Iterator[Metadata]:
        """Iterate over fetched metadata until the sink is terminated and emptied."""
        if self.terminated:
            raise RuntimeError("trying to drain an already closed sink")
        return self._drained()

    def _drained(self) -> Iterator[Metadata]:
        while True:
            with self._cond:
                while not self._drain and not self.terminated:
                    self._cond.wait()
                if not self._drain:
                    return
                item = self._drain.popleft()
                self._cond.notify_all()
            yield item

    def terminate(self) -> None:
        """Stop accepting results; pending metadata can still be drained."""
        with self._cond:
            if self.terminated:
                raise RuntimeError("sink already terminated")
            self.terminated = True
            self._cond.notify_all()

    def flush(self, metadata: Metadata) -> None:
        """Queue fetched metadata and forget the peers waiting for its info hash."""
        with self._cond:
            while len(self._drain) >= _DRAIN_CAPACITY and not self.terminated:
                self._cond.wait()
            if self.terminated:
                return
            self._drain.append(metadata)
            self._cond.notify_all()
        self.incoming_info_hashes.flush(_key(metadata.info_hash))

    def on_leech_error(self, info_hash: bytes, error: Exception) -> None:
        """Retry a failed fetch with the next queued peer, if any."""
        peer = self.incoming_info_hashes.pop(info_hash)
        if peer is not None:
            threading.Thread(
                target=self._run_leech, args=(bytes(info_hash), peer), daemon=True
            ).start()