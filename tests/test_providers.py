import hashlib
import time

import pytest

from kadlookup.providers import (
    PROVIDE_VALIDITY,
    MemoryDatastore,
    ProviderManager,
    ProviderSet,
    load_provider_set,
    make_provider_key,
    make_provider_key_for,
    read_time_value,
    write_provider_entry,
)

HOUR_NS = 3600 * 10**9


def digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def test_provider_manager():
    with ProviderManager(b"testing", MemoryDatastore()) as pm:
        a = digest(b"test")
        pm.add_provider(a, b"testingprovider")
        assert len(pm.get_providers(a)) == 1
        assert len(pm.get_providers(a)) == 1
        pm.add_provider(a, b"testingprovider2")
        pm.add_provider(a, b"testingprovider3")
        assert len(pm.get_providers(a)) == 3


def test_providers_datastore():
    with ProviderManager(b"testing", MemoryDatastore(), cache_size=10) as pm:
        friend = b"friend"
        hashes = [digest(str(i).encode()) for i in range(100)]
        for h in hashes:
            pm.add_provider(h, friend)
        for h in hashes:
            assert pm.get_providers(h) == [friend]


def test_providers_serialization():
    store = MemoryDatastore()
    k = digest(b"my key!")
    p1, p2 = b"peer one", b"peer two"
    pt1 = time.time_ns()
    pt2 = pt1 + HOUR_NS
    write_provider_entry(store, k, p1, pt1)
    write_provider_entry(store, k, p2, pt2)

    pset = load_provider_set(store, k)
    assert pset.times[p1] == pt1
    assert pset.times[p2] == pt2


def test_upon_cache_miss_providers_are_read_from_datastore():
    p1, p2 = b"a", b"b"
    h1, h2 = digest(b"1"), digest(b"2")
    with ProviderManager(p1, MemoryDatastore(), cache_size=1) as pm:
        pm.add_provider(h1, p1)
        pm.add_provider(h2, p1)
        pm.add_provider(h1, p2)
        assert len(pm.get_providers(h1)) == 2


def test_write_updates_cache():
    p1, p2 = b"a", b"b"
    h1 = digest(b"1")
    with ProviderManager(p1, MemoryDatastore()) as pm:
        pm.add_provider(h1, p1)
        pm.get_providers(h1)
        pm.add_provider(h1, p2)
        assert pm.get_providers(h1) == [p1, p2]


def test_expired_records_are_removed_on_load():
    store = MemoryDatastore()
    k = digest(b"key")
    now = time.time_ns()
    write_provider_entry(store, k, b"old", now - PROVIDE_VALIDITY - HOUR_NS)
    write_provider_entry(store, k, b"fresh", now)

    pset = load_provider_set(store, k)
    assert pset.providers == [b"fresh"]
    assert [key for key, _ in store.query(make_provider_key(k))] == [
        make_provider_key_for(k, b"fresh")
    ]


def test_malformed_record_is_removed_on_load():
    store = MemoryDatastore()
    k = digest(b"key")
    store.put(make_provider_key_for(k, b"broken"), b"")
    assert load_provider_set(store, k).providers == []
    assert store.query(make_provider_key(k)) == []


def test_collect_garbage_removes_expired_records():
    store = MemoryDatastore()
    k = digest(b"key")
    now = time.time_ns()
    write_provider_entry(store, k, b"old", now - PROVIDE_VALIDITY - HOUR_NS)
    write_provider_entry(store, k, b"fresh", now)
    with ProviderManager(b"me", store) as pm:
        assert pm.collect_garbage() == 1
        assert pm.get_providers(k) == [b"fresh"]
    assert len(store) == 1


def test_closed_manager_raises():
    pm = ProviderManager(b"me", MemoryDatastore())
    pm.close()
    assert pm.closed
    with pytest.raises(RuntimeError):
        pm.add_provider(digest(b"x"), b"p")
    with pytest.raises(RuntimeError):
        pm.get_providers(digest(b"x"))


def test_invalid_cache_size():
    with pytest.raises(ValueError):
        ProviderManager(b"me", MemoryDatastore(), cache_size=0)


@pytest.mark.parametrize(
    "timestamp, encoded",
    [(0, b"\x00"), (1, b"\x02"), (-1, b"\x01"), (64, b"\x80\x01")],
)
def test_timestamp_encoding(timestamp, encoded):
    store = MemoryDatastore()
    write_provider_entry(store, b"k", b"p", timestamp)
    stored = store.get(make_provider_key_for(b"k", b"p"))
    assert stored == encoded
    assert read_time_value(stored) == timestamp


@pytest.mark.parametrize("data", [b"", b"\x80", b"\xff" * 11])
def test_read_time_value_rejects_bad_data(data):
    with pytest.raises(ValueError):
        read_time_value(data)


def test_provider_keys():
    assert make_provider_key(b"\x00") == "/providers/AA"
    assert make_provider_key_for(b"\x00", b"\x00") == "/providers/AA/AA"


def test_provider_set_keeps_first_seen_order():
    pset = ProviderSet()
    pset.set_val(b"a", 1)
    pset.set_val(b"b", 2)
    pset.set_val(b"a", 3)
    assert pset.providers == [b"a", b"b"]
    assert pset.times[b"a"] == 3
    pset.add(b"c")
    assert len(pset) == 3
    assert b"c" in pset


def test_datastore_prefix_is_path_based():
    store = MemoryDatastore()
    store.put("/bar/baz", b"1")
    store.put("/barbaz", b"2")
    store.put("bar/qux", b"3")
    assert store.query("/bar") == [("/bar/baz", b"1"), ("/bar/qux", b"3")]
    assert len(store.query("")) == 3


def test_datastore_missing_key_raises():
    store = MemoryDatastore()
    with pytest.raises(KeyError):
        store.get("/missing")
    with pytest.raises(KeyError):
        store.delete("/missing")