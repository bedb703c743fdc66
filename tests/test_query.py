import threading
import time

import pytest

from kadlookup.qpeerset import PeerState, xor_distance
from kadlookup.query import (
    LookupFailure,
    LookupResult,
    LookupTerminationReason,
    QueryNode,
    run_lookup_with_followup,
    run_query,
)


class FakeNetwork:
    """Nodes with routing tables; a query returns the remote's closest peers."""

    def __init__(self):
        self.tables = {}
        self.down = set()

    def add(self, peer, *known):
        self.tables.setdefault(peer, set()).update(known)
        for other in known:
            self.tables.setdefault(other, set())

    def link(self, a, b):
        self.add(a, b)
        self.add(b, a)

    def has_route(self, a, b):
        return b in self.tables[a] and a in self.tables[b]

    def node(self, me, **kwargs):
        table = self.tables[me]

        def nearest(target, count):
            return sorted(table, key=lambda p: xor_distance(p, target))[:count]

        def dial(peer):
            if peer in self.down or me in self.down:
                raise ConnectionError("host closed")

        return QueryNode(
            self_id=me,
            nearest_peers=nearest,
            dial=dial,
            peer_found=table.add,
            peer_stopped=table.discard,
            **kwargs,
        )

    def query_fn(self, me, target, log=None):
        def query(peer, abort):
            if log is not None:
                log.append(peer)
            remote = self.tables[peer]
            remote.add(me)
            return sorted(remote, key=lambda p: xor_distance(p, target))[:20]

        return query


def never():
    return False


def test_no_seed_peers_raises_lookup_failure():
    node = QueryNode(self_id=b"me", nearest_peers=lambda target, count: [])
    with pytest.raises(LookupFailure):
        run_query(node, b"key", lambda p, abort: [], never)


def test_eviction_on_failed_query():
    net = FakeNetwork()
    d1, d2 = b"d1", b"d2"
    net.link(d1, d2)
    assert net.has_route(d1, d2)
    net.down.update({d1, d2})

    res1 = run_lookup_with_followup(net.node(d1), "test", net.query_fn(d1, "test"), never)
    res2 = run_lookup_with_followup(net.node(d2), "test", net.query_fn(d2, "test"), never)

    assert res1.peers == [] and res2.peers == []
    assert res1.reason is LookupTerminationReason.STARVATION
    assert res1.completed is True
    assert not net.has_route(d1, d2)
    assert d2 not in net.tables[d1]


def test_addition_on_successful_query():
    net = FakeNetwork()
    d1, d2, d3 = b"d1", b"d2", b"d3"
    net.link(d1, d2)
    net.link(d2, d3)
    assert net.has_route(d1, d2)
    assert net.has_route(d2, d3)
    assert not net.has_route(d1, d3)

    res = run_lookup_with_followup(
        net.node(d3), "something", net.query_fn(d3, "something"), never
    )
    assert net.has_route(d1, d3)
    assert set(res.peers) == {d1, d2}
    assert d3 not in res.peers


def test_result_holds_closest_peers_sorted():
    net = FakeNetwork()
    me, seed = b"me", b"seed"
    others = [b"peer-%d" % i for i in range(30)]
    net.add(me, seed)
    net.add(seed, *others)
    target = "target"
    res = run_query(net.node(me, bucket_size=5), target, net.query_fn(me, target), never)
    expected = sorted([seed, *others], key=lambda p: xor_distance(p, target))[:5]
    assert res.peers == expected
    assert len(res.states) == 5
    assert res.completed is True


def test_stop_before_any_query():
    calls = []
    seeds = [b"a", b"b", b"c"]
    node = QueryNode(self_id=b"me", nearest_peers=lambda t, c: seeds)
    res = run_query(node, b"key", lambda p, abort: calls.append(p) or [], lambda: True)
    assert calls == []
    assert res.reason is LookupTerminationReason.STOPPED
    assert res.completed is False
    assert set(res.peers) == set(seeds)
    assert res.states == [PeerState.HEARD] * 3


def test_followup_queries_remaining_top_peers():
    seeds = [b"s%d" % i for i in range(5)]
    node = QueryNode(self_id=b"me", nearest_peers=lambda t, c: list(seeds), alpha=1, beta=1)
    lock = threading.Lock()
    queried = []

    def query(peer, abort):
        with lock:
            queried.append(peer)
        return []

    lookup_only = run_query(node, "key", query, never)
    assert len(queried) == 1
    closest = min(seeds, key=lambda p: xor_distance(p, "key"))
    assert queried == [closest]
    assert lookup_only.reason is LookupTerminationReason.COMPLETED

    queried.clear()
    res = run_lookup_with_followup(node, "key", query, never)
    assert sorted(queried) == sorted(seeds)
    assert res.completed is True


def test_followup_stopped_marks_incomplete():
    seeds = [b"s%d" % i for i in range(5)]
    node = QueryNode(self_id=b"me", nearest_peers=lambda t, c: list(seeds), alpha=1, beta=1)
    lock = threading.Lock()
    queried = []

    def query(peer, abort):
        with lock:
            queried.append(peer)
        return []

    res = run_lookup_with_followup(node, "key", query, lambda: len(queried) >= 2)
    assert isinstance(res, LookupResult)
    assert res.completed is False
    assert len(queried) == 5


def test_no_followup_needed_returns_lookup_result():
    node = QueryNode(self_id=b"me", nearest_peers=lambda t, c: [b"only"])
    res = run_lookup_with_followup(node, "key", lambda p, abort: [], never)
    assert res.peers == [b"only"]
    assert res.states == [PeerState.QUERIED]
    assert res.completed is True


def test_self_is_never_added():
    node = QueryNode(self_id=b"me", nearest_peers=lambda t, c: [b"a"])
    res = run_query(node, "key", lambda p, abort: [b"me", b"b"] if p == b"a" else [], never)
    assert b"me" not in res.peers
    assert set(res.peers) == {b"a", b"b"}


def test_filter_rejects_peers_but_not_the_target():
    stored = {}
    node = QueryNode(
        self_id=b"me",
        nearest_peers=lambda t, c: [b"a"],
        query_peer_filter=lambda peer, addrs: False,
        add_addrs=lambda peer, addrs: stored.__setitem__(peer, addrs),
        peer_addrs=lambda peer: ["/known"],
    )

    def query(peer, abort):
        if peer == b"a":
            return [(b"other", ["/x"]), (b"wanted", ["/y"])]
        return []

    res = run_query(node, b"wanted", query, never)
    assert set(res.peers) == {b"a", b"wanted"}
    assert stored == {b"wanted": ["/y", "/known"]}


def test_peer_found_reported_for_answering_peers():
    found = []
    stopped = []
    node = QueryNode(
        self_id=b"me",
        nearest_peers=lambda t, c: [b"good", b"bad"],
        peer_found=found.append,
        peer_stopped=stopped.append,
    )

    def query(peer, abort):
        if peer == b"bad":
            raise OSError("refused")
        return []

    res = run_query(node, "key", query, never)
    assert found == [b"good"]
    assert stopped == [b"bad"]
    assert res.peers == [b"good"]


def test_only_fast_seed_peers_marked_useful():
    marked = []
    node = QueryNode(
        self_id=b"me",
        nearest_peers=lambda t, c: [b"fast", b"slow"],
        mark_useful=lambda peer, when: marked.append(peer),
    )

    def query(peer, abort):
        time.sleep(0.01 if peer == b"fast" else 0.2)
        return []

    run_query(node, "key", query, never)
    assert marked == [b"fast"]