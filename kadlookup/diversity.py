"""Routing-table peer diversity filter limiting peers per IP group."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Hashable


@dataclass(frozen=True)
class PeerGroupInfo:
    """A peer's common prefix length with us and the IP group it belongs to."""

    cpl: int
    ip_group_key: str
    peer: Hashable = None


class RTPeerDiversityFilter:
    """Caps how many peers of one IP group may sit in a bucket and in the table.

    ``host`` must offer ``conns_to_peer(peer)``, returning connections that
    each carry a ``remote_multiaddr`` attribute.
    """

    def __init__(self, host, max_per_cpl: int, max_for_table: int) -> None:
        self.host = host
        self.max_per_cpl = max_per_cpl
        self.max_for_table = max_for_table
        self._lock = threading.Lock()
        self._cpl_counts: dict[int, dict[str, int]] = {}
        self._table_counts: dict[str, int] = defaultdict(int)

    def allow(self, group: PeerGroupInfo) -> bool:
        """Whether one more peer of this group may be added at its cpl."""
        with self._lock:
            if self._table_counts.get(group.ip_group_key, 0) >= self.max_for_table:
                return False
            per_cpl = self._cpl_counts.get(group.cpl)
            return per_cpl is None or per_cpl.get(group.ip_group_key, 0) < self.max_per_cpl

    def increment(self, group: PeerGroupInfo) -> None:
        """Count one more peer of this group at its cpl."""
        key = group.ip_group_key
        with self._lock:
            self._table_counts[key] += 1
            per_cpl = self._cpl_counts.setdefault(group.cpl, {})
            per_cpl[key] = per_cpl.get(key, 0) + 1

    def decrement(self, group: PeerGroupInfo) -> None:
        """Count one peer of this group fewer; raises KeyError if none is counted."""
        key = group.ip_group_key
        with self._lock:
            per_cpl = self._cpl_counts.get(group.cpl)
            if per_cpl is None or key not in per_cpl or key not in self._table_counts:
                raise KeyError(f"no peer of group {key!r} counted at cpl {group.cpl}")
            self._table_counts[key] -= 1
            if self._table_counts[key] == 0:
                del self._table_counts[key]
            per_cpl[key] -= 1
            if per_cpl[key] == 0:
                del per_cpl[key]
            if not per_cpl:
                del self._cpl_counts[group.cpl]

    def peer_addresses(self, peer: Hashable) -> list:
        """Remote addresses of all current connections to ``peer``."""
        return [conn.remote_multiaddr for conn in self.host.conns_to_peer(peer)]