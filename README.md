# kadlookup

Building blocks for a Kademlia-style distributed hash table. Every piece talks
to the outside world through callables and small objects you hand it, so the
logic can be driven by any transport, or by plain functions in tests.

## Modules

- `kadlookup.qpeerset`: `QueryPeerset` tracks every peer a lookup knows of,
  its `PeerState` (`HEARD`, `WAITING`, `QUERIED`, `UNREACHABLE`) and the peer
  that referred it. Peers are ordered by their distance to the lookup key in a
  SHA-256 XOR keyspace; `xor_distance(a, b)` computes that distance.
  `closest_n_in_states`, `closest_in_states`, `num_heard` and `num_waiting`
  query the set.
- `kadlookup.providers`: `ProviderManager` records which peers provide a key.
  It keeps an LRU cache in front of a datastore you pass in (`MemoryDatastore`
  is a thread-safe in-memory one) and runs `collect_garbage()` on a background
  thread every `cleanup_interval` seconds, dropping the cache and deleting
  records older than `PROVIDE_VALIDITY`. Expired or malformed records are also
  deleted when a key's providers are loaded. Records are stored under
  `make_provider_key_for(key, provider)` with a zig-zag varint nanosecond
  timestamp (`write_provider_entry`, `read_time_value`, `load_provider_set`).
- `kadlookup.diversity`: `RTPeerDiversityFilter` limits how many routing-table
  peers may share an IP group, both per common-prefix length and across the
  whole table, through `allow`, `increment` and `decrement` on a
  `PeerGroupInfo`.
- `kadlookup.rtrefresh`: `RtRefreshManager` refreshes routing-table buckets on
  a timer (when `auto_refresh` is set) and on request (`refresh(force)`, which
  returns a `concurrent.futures.Future`, or `refresh_no_wait()`). Stale peers
  are pinged and evicted if the ping fails. After a bucket that stays empty, it
  refreshes only up to cpl `2 * (cpl + 1)` and then stops. Failures are raised
  as `RefreshError`; use after `close()` gives `RefreshCancelled`.
  `loggable_raw_key` gives the unpadded base32 form of a key.
- `kadlookup.query`: `run_query` and `run_lookup_with_followup` drive an
  asynchronous lookup, with one thread per in-flight query, against a
  `QueryNode` and return a `LookupResult` (peers, their states, whether the
  lookup completed, and the `LookupTerminationReason`). `LookupFailure` is
  raised when the routing table offers no peers to start from.
- `kadlookup.values`: `RoutingOptions`, `quorum(n)` and `get_quorum` carry the
  quorum setting; `process_values` and `search_value_quorum` pick the best of
  the `ReceivedValue`s that peers returned, using a selector you supply, and
  return a `ValueSearchResult`.

## Installing

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Examples

```python
from kadlookup.qpeerset import PeerState, QueryPeerset

peers = QueryPeerset(b"target key")
peers.try_add(b"peer-a", b"seed")
peers.try_add(b"peer-b", b"seed")
peers.set_state(b"peer-a", PeerState.WAITING)

print(peers.closest_in_states(PeerState.HEARD))
print(peers.num_waiting())
```

```python
from kadlookup.providers import MemoryDatastore, ProviderManager

with ProviderManager(b"self", MemoryDatastore()) as manager:
    manager.add_provider(b"some key", b"provider-1")
    print(manager.get_providers(b"some key"))
```

```python
from kadlookup.values import ReceivedValue, search_value_quorum

def longest(key, candidates):
    return max(range(len(candidates)), key=lambda i: len(candidates[i]))

responses = [ReceivedValue(b"a", "p1"), ReceivedValue(b"abc", "p2")]
result = search_value_quorum("/v/key", responses, longest, needed=0)
print(result.best, result.peers_with_best)
```

## What this package does not do

It has no network layer, wire protocol or message encoding: dialing peers,
sending queries and storing values on remote peers are left to the callables
you give to `QueryNode`, `RtRefreshManager` and the value search functions.
It has no routing table of its own, no persistent datastore beyond
`MemoryDatastore`, no complete DHT node object and no command-line program.