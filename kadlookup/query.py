"""Iterative Kademlia lookups over a set of peers, with an optional follow-up round."""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from itertools import islice
from typing import Callable, Hashable, Iterable, Optional

from .qpeerset import PeerState, QueryPeerset

logger = logging.getLogger(__name__)

QueryFn = Callable[[Hashable, threading.Event], Iterable]
"""Queries one peer. Receives the peer and an event that is set once the
lookup no longer needs the answer; returns the peers the remote told us
about, each a peer id or a ``(peer id, addresses)`` pair. Raises on failure."""

StopFn = Callable[[], bool]


class LookupFailure(Exception):
    """The routing table had no peers to start the lookup from."""


class LookupTerminationReason(enum.Enum):
    """Why a lookup stopped spawning queries."""

    STOPPED = "stopped"
    """The stop function asked for it."""
    STARVATION = "starvation"
    """No peers were left to query and none were being queried."""
    COMPLETED = "completed"
    """The closest peers have all been queried."""


@dataclass
class LookupResult:
    """The closest not-unreachable peers of a lookup and their final states."""

    peers: list
    states: list
    completed: bool
    reason: LookupTerminationReason


def _as_bytes(value) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


@dataclass
class QueryNode:
    """The local node as seen by a lookup: its identity, settings and hooks.

    ``nearest_peers(target, count)`` returns the closest routing-table peers.
    ``dial(peer)`` connects to a peer and raises if that fails.
    ``peer_found(peer)`` is told of every peer that answered a query and
    ``peer_stopped(peer)`` of every peer that failed one.
    ``mark_useful(peer, when)`` records a valuable seed peer.
    ``peer_addrs(peer)`` gives addresses already known for a peer,
    ``add_addrs(peer, addrs)`` stores learnt ones, and
    ``query_peer_filter(peer, addrs)`` decides whether a peer may join a lookup.
    """

    self_id: Hashable
    nearest_peers: Callable[[object, int], list]
    bucket_size: int = 20
    alpha: int = 10
    beta: int = 3
    dial: Optional[Callable[[Hashable], None]] = None
    peer_found: Optional[Callable[[Hashable], None]] = None
    peer_stopped: Optional[Callable[[Hashable], None]] = None
    mark_useful: Optional[Callable[[Hashable, float], object]] = None
    peer_addrs: Optional[Callable[[Hashable], list]] = None
    add_addrs: Optional[Callable[[Hashable, list], None]] = None
    query_peer_filter: Optional[Callable[[Hashable, list], bool]] = None

    def _dial(self, peer) -> None:
        if self.dial is not None:
            self.dial(peer)

    def _found(self, peer) -> None:
        if self.peer_found is not None:
            self.peer_found(peer)

    def _stopped(self, peer) -> None:
        if self.peer_stopped is not None:
            self.peer_stopped(peer)

    def _useful(self, peer) -> None:
        if self.mark_useful is not None:
            self.mark_useful(peer, time.time())

    def _known_addrs(self, peer) -> list:
        return list(self.peer_addrs(peer)) if self.peer_addrs is not None else []

    def _store_addrs(self, peer, addrs: list) -> None:
        if self.add_addrs is not None:
            self.add_addrs(peer, addrs)

    def _accepts(self, peer, addrs: list) -> bool:
        return self.query_peer_filter is None or bool(self.query_peer_filter(peer, addrs))


@dataclass
class _Update:
    cause: Hashable
    heard: list = field(default_factory=list)
    queried: list = field(default_factory=list)
    unreachable: list = field(default_factory=list)
    duration: float = 0.0


def _split_peer_info(item) -> tuple:
    if isinstance(item, tuple):
        peer, addrs = item
        return peer, list(addrs)
    return item, []


class _Lookup:
    def __init__(self, node: QueryNode, target, seeds: list, query_fn: QueryFn, stop_fn: StopFn):
        self.node = node
        self.target = target
        self.seeds = seeds
        self.query_fn = query_fn
        self.stop_fn = stop_fn
        self.peerset = QueryPeerset(target)
        self.peer_times: dict = {}
        self.abort = threading.Event()
        self.updates: queue.Queue = queue.Queue()
        self.workers: list[threading.Thread] = []
        self.reason: Optional[LookupTerminationReason] = None

    @property
    def terminated(self) -> bool:
        return self.reason is not None

    def run(self) -> None:
        alpha = self.node.alpha
        self.updates.put(_Update(cause=self.node.self_id, heard=list(self.seeds)))
        try:
            while True:
                update = self.updates.get()
                self._update_state(update)
                budget = alpha - self.peerset.num_waiting()
                reason, to_query = self._ready_to_terminate(budget)
                if reason is not None:
                    self._terminate(reason)
                if self.terminated:
                    return
                for peer in to_query:
                    self._spawn(peer)
        finally:
            self.abort.set()
            for worker in self.workers:
                worker.join()

    def _spawn(self, peer) -> None:
        self.peerset.set_state(peer, PeerState.WAITING)
        worker = threading.Thread(target=self._query_peer, args=(peer,), daemon=True)
        self.workers.append(worker)
        worker.start()

    def _ready_to_terminate(self, budget: int):
        if self.stop_fn():
            return LookupTerminationReason.STOPPED, []
        if self._is_starvation():
            return LookupTerminationReason.STARVATION, []
        if self._is_lookup_termination():
            return LookupTerminationReason.COMPLETED, []
        heard = self.peerset.closest_in_states(PeerState.HEARD)
        return None, list(islice(heard, max(budget, 0)))

    def _is_lookup_termination(self) -> bool:
        closest = self.peerset.closest_n_in_states(
            self.node.beta, PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED
        )
        return all(self.peerset.get_state(p) == PeerState.QUERIED for p in closest)

    def _is_starvation(self) -> bool:
        return self.peerset.num_heard() == 0 and self.peerset.num_waiting() == 0

    def _terminate(self, reason: LookupTerminationReason) -> None:
        if self.terminated:
            return
        self.abort.set()
        self.reason = reason

    def _query_peer(self, peer) -> None:
        node = self.node
        try:
            try:
                node._dial(peer)
                started = time.perf_counter()
                found = list(self.query_fn(peer, self.abort))
            except Exception as err:
                logger.debug("query to %r failed: %s", peer, err)
                if not self.abort.is_set():
                    node._stopped(peer)
                self.updates.put(_Update(cause=peer, unreachable=[peer]))
                return
            duration = time.perf_counter() - started
            node._found(peer)

            saw = []
            target = _as_bytes(self.target)
            for item in found:
                candidate, addrs = _split_peer_info(item)
                if candidate == node.self_id:
                    logger.debug("worker for %r found self", peer)
                    continue
                addrs = addrs + node._known_addrs(candidate)
                if _as_bytes(candidate) == target or node._accepts(candidate, addrs):
                    node._store_addrs(candidate, addrs)
                    saw.append(candidate)
            self.updates.put(
                _Update(cause=peer, heard=saw, queried=[peer], duration=duration)
            )
        except Exception:
            logger.exception("processing the answer of %r failed", peer)
            self.updates.put(_Update(cause=peer, unreachable=[peer]))

    def _update_state(self, update: _Update) -> None:
        if self.terminated:
            raise RuntimeError("update should not be invoked after the logical lookup termination")
        self_id = self.node.self_id
        for peer in update.heard:
            if peer != self_id:
                self.peerset.try_add(peer, update.cause)
        for peer in update.queried:
            if peer == self_id:
                continue
            state = self.peerset.get_state(peer)
            if state != PeerState.WAITING:
                raise RuntimeError(
                    "kademlia protocol error: tried to transition to the queried "
                    f"state from state {state.name}"
                )
            self.peerset.set_state(peer, PeerState.QUERIED)
            self.peer_times[peer] = update.duration
        for peer in update.unreachable:
            if peer == self_id:
                continue
            state = self.peerset.get_state(peer)
            if state != PeerState.WAITING:
                raise RuntimeError(
                    "kademlia protocol error: tried to transition to the unreachable "
                    f"state from state {state.name}"
                )
            self.peerset.set_state(peer, PeerState.UNREACHABLE)

    def record_valuable_peers(self) -> None:
        times = [self.peer_times[p] for p in self.seeds if p in self.peer_times]
        if not times:
            return
        fastest = min(times)
        for peer in self.seeds:
            if peer in self.peer_times and self.peer_times[peer] < fastest * 2:
                self.node._useful(peer)

    def result(self) -> LookupResult:
        completed = self._is_lookup_termination() or self._is_starvation()
        peers = self.peerset.closest_n_in_states(
            self.node.bucket_size, PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED
        )
        return LookupResult(
            peers=peers,
            states=[self.peerset.get_state(p) for p in peers],
            completed=completed,
            reason=self.reason,
        )


def run_query(node: QueryNode, target, query_fn: QueryFn, stop_fn: StopFn) -> LookupResult:
    """Run a lookup for ``target`` starting from the closest routing-table peers.

    Raises :class:`LookupFailure` when the routing table offers no peers.
    """
    seeds = list(node.nearest_peers(target, node.bucket_size))
    if not seeds:
        raise LookupFailure("failed to find any peer in table")
    lookup = _Lookup(node, target, seeds, query_fn, stop_fn)
    lookup.run()
    lookup.record_valuable_peers()
    return lookup.result()


def run_lookup_with_followup(
    node: QueryNode, target, query_fn: QueryFn, stop_fn: StopFn
) -> LookupResult:
    """Run a lookup, then query every top peer that was not yet successfully queried.

    ``completed`` is False if either phase was cut short by ``stop_fn``.
    """
    result = run_query(node, target, query_fn, stop_fn)
    followups = [
        peer
        for peer, state in zip(result.peers, result.states)
        if state in (PeerState.HEARD, PeerState.WAITING)
    ]
    if not followups:
        return result
    if stop_fn():
        result.completed = False
        return result

    abort = threading.Event()
    done: queue.Queue = queue.Queue()

    def follow_up(peer) -> None:
        try:
            query_fn(peer, abort)
        except Exception as err:
            logger.debug("follow-up query to %r failed: %s", peer, err)
        finally:
            done.put(peer)

    for peer in followups:
        threading.Thread(target=follow_up, args=(peer,), daemon=True).start()

    finished = 0
    try:
        for index in range(len(followups)):
            done.get()
            finished += 1
            if stop_fn():
                abort.set()
                if index < len(followups) - 1:
                    result.completed = False
                break
        if not result.completed:
            for _ in range(finished, len(followups)):
                done.get()
    finally:
        abort.set()
    return result