"""State of the peers taking part in one asynchronous Kademlia lookup."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import IntEnum
from itertools import islice
from operator import attrgetter
from typing import Hashable, Union

PeerId = Union[bytes, str]


class PeerState(IntEnum):
    """Lifecycle state of a peer within a single lookup."""

    HEARD = 0
    """Known about, not queried yet."""
    WAITING = 1
    """A query to the peer is in flight."""
    QUERIED = 2
    """Queried, and a response was received."""
    UNREACHABLE = 3
    """Queried, and no response was received."""


def _as_bytes(value: PeerId) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _keyspace_point(value: PeerId) -> int:
    return int.from_bytes(hashlib.sha256(_as_bytes(value)).digest(), "big")


def xor_distance(a: PeerId, b: PeerId) -> int:
    """Distance between two identifiers in the SHA-256 XOR keyspace."""
    return _keyspace_point(a) ^ _keyspace_point(b)


@dataclass
class _Entry:
    peer: Hashable
    distance: int
    state: PeerState
    referred_by: Hashable


class QueryPeerset:
    """Peers known to a lookup, each labelled with a :class:`PeerState`."""

    def __init__(self, key: PeerId) -> None:
        self.key = key
        self._point = _keyspace_point(key)
        self._peers: dict[Hashable, _Entry] = {}
        self._ordered: list[_Entry] | None = []

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer: object) -> bool:
        return peer in self._peers

    def _entry(self, peer: Hashable) -> _Entry:
        try:
            return self._peers[peer]
        except KeyError:
            raise KeyError(f"peer {peer!r} is not in the peer set") from None

    def _sorted(self) -> list[_Entry]:
        if self._ordered is None:
            self._ordered = sorted(self._peers.values(), key=attrgetter("distance"))
        return self._ordered

    def try_add(self, peer: PeerId, referred_by: Hashable) -> bool:
        """Add ``peer`` in state HEARD; return False if it was already present."""
        if peer in self._peers:
            return False
        self._peers[peer] = _Entry(
            peer=peer,
            distance=_keyspace_point(peer) ^ self._point,
            state=PeerState.HEARD,
            referred_by=referred_by,
        )
        self._ordered = None
        return True

    def set_state(self, peer: Hashable, state: PeerState) -> None:
        """Set the state of a known peer; raises KeyError for an unknown one."""
        self._entry(peer).state = PeerState(state)

    def get_state(self, peer: Hashable) -> PeerState:
        """Return the state of a known peer; raises KeyError for an unknown one."""
        return self._entry(peer).state

    def get_referrer(self, peer: Hashable) -> Hashable:
        """Return the peer that told us about ``peer``."""
        return self._entry(peer).referred_by

    def closest_n_in_states(self, n: int, *args: PeerState) -> list:
        """Up to ``n`` peers in any of the given states, closest to the key first."""
        wanted = set(args)
        return list(islice((e.peer for e in self._sorted() if e.state in wanted), n))

    def closest_in_states(self, *args: PeerState) -> list:
        """All peers in any of the given states, closest to the key first."""
        return self.closest_n_in_states(len(self._peers), *args)

    def num_heard(self) -> int:
        """Number of peers in state HEARD."""
        return len(self.closest_in_states(PeerState.HEARD))

    def num_waiting(self) -> int:
        """Number of peers in state WAITING."""
        return len(self.closest_in_states(PeerState.WAITING))