"""Storage of provider records: which peers can provide which keys."""

from __future__ import annotations

import base64
import binascii
import contextlib
import logging
import posixpath
import threading
import time
from collections import OrderedDict
from typing import Union

log = logging.getLogger(__name__)

PROVIDERS_KEY_PREFIX = "/providers/"
PROVIDE_VALIDITY = 24 * 3600 * 10**9
"""How long a provider record stays valid, in nanoseconds."""
DEFAULT_CLEANUP_INTERVAL = 3600.0
"""Seconds between garbage collection runs."""
LRU_CACHE_SIZE = 256

PeerLike = Union[bytes, str]


def _as_bytes(value: PeerLike) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _b32encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").rstrip("=")


def _b32decode(text: str) -> bytes:
    return base64.b32decode(text + "=" * (-len(text) % 8))


def _put_varint(value: int) -> bytes:
    unsigned = ((value << 1) ^ (value >> 63)) & 0xFFFFFFFFFFFFFFFF
    out = bytearray()
    while unsigned >= 0x80:
        out.append((unsigned & 0x7F) | 0x80)
        unsigned >>= 7
    out.append(unsigned)
    return bytes(out)


def _read_varint(data: bytes) -> int:
    unsigned = 0
    shift = 0
    for index, byte in enumerate(data):
        if index == 10:
            break
        if byte < 0x80:
            if index == 9 and byte > 1:
                break
            unsigned |= byte << shift
            value = unsigned >> 1
            return ~value if unsigned & 1 else value
        unsigned |= (byte & 0x7F) << shift
        shift += 7
    raise ValueError("failed to parse time")


def _clean_key(key: str) -> str:
    cleaned = posixpath.normpath("/" + key.lstrip("/"))
    return "/" + cleaned.lstrip("/")


class ProviderSet:
    """Providers of one key, in the order first seen, with their last update time."""

    def __init__(self) -> None:
        self.providers: list[bytes] = []
        self.times: dict[bytes, int] = {}

    def __len__(self) -> int:
        return len(self.providers)

    def __contains__(self, peer: object) -> bool:
        return peer in self.times

    def add(self, peer: PeerLike) -> None:
        """Record ``peer`` as a provider as of now."""
        self.set_val(peer, time.time_ns())

    def set_val(self, peer: PeerLike, timestamp: int) -> None:
        """Record ``peer`` as a provider as of ``timestamp`` (nanoseconds)."""
        peer = _as_bytes(peer)
        if peer not in self.times:
            self.providers.append(peer)
        self.times[peer] = timestamp


class MemoryDatastore:
    """A thread-safe in-memory key/value store with path-like keys."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._data)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[_clean_key(key)] = bytes(value)

    def get(self, key: str) -> bytes:
        """Return the value at ``key``; raises KeyError if absent."""
        with self._lock:
            return self._data[_clean_key(key)]

    def delete(self, key: str) -> None:
        """Remove ``key``; raises KeyError if absent."""
        with self._lock:
            del self._data[_clean_key(key)]

    def query(self, prefix: str = "") -> list[tuple[str, bytes]]:
        """Entries under the path ``prefix``, sorted by key."""
        cleaned = _clean_key(prefix)
        with self._lock:
            if cleaned == "/":
                items = list(self._data.items())
            else:
                start = cleaned + "/"
                items = [(k, v) for k, v in self._data.items() if k.startswith(start)]
        return sorted(items)


def make_provider_key(key: bytes) -> str:
    """Datastore prefix under which the providers of ``key`` are kept."""
    return PROVIDERS_KEY_PREFIX + _b32encode(bytes(key))


def make_provider_key_for(key: bytes, provider: PeerLike) -> str:
    """Datastore key of the record saying ``provider`` provides ``key``."""
    return make_provider_key(key) + "/" + _b32encode(_as_bytes(provider))


def write_provider_entry(datastore, key: bytes, provider: PeerLike, timestamp: int) -> None:
    """Store a provider record stamped with ``timestamp`` (nanoseconds)."""
    datastore.put(make_provider_key_for(key, provider), _put_varint(timestamp))


def read_time_value(data: bytes) -> int:
    """Decode a record timestamp in nanoseconds; raises ValueError if malformed."""
    return _read_varint(bytes(data))


def _drop(datastore, key: str) -> None:
    with contextlib.suppress(KeyError):
        datastore.delete(key)


def _is_expired(value: bytes, now: int) -> bool:
    try:
        stamp = read_time_value(value)
    except ValueError as err:
        log.error("parsing providers record from disk: %s", err)
        return True
    return now - stamp > PROVIDE_VALIDITY


def load_provider_set(datastore, key: bytes) -> ProviderSet:
    """Load the providers of ``key``, deleting expired or malformed records."""
    now = time.time_ns()
    result = ProviderSet()
    for record_key, value in datastore.query(make_provider_key(key)):
        if _is_expired(value, now):
            _drop(datastore, record_key)
            continue
        encoded = record_key[record_key.rfind("/") + 1:]
        try:
            peer = _b32decode(encoded)
        except (binascii.Error, ValueError) as err:
            log.error("base32 decoding error: %s", err)
            _drop(datastore, record_key)
            continue
        result.set_val(peer, read_time_value(value))
    return result


class ProviderManager:
    """Adds and reads provider records, caching them between datastore reads."""

    def __init__(
        self,
        local: PeerLike,
        datastore,
        *,
        cache_size: int = LRU_CACHE_SIZE,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        if cache_size <= 0:
            raise ValueError("must provide a positive size")
        self.local = _as_bytes(local)
        self.datastore = datastore
        self.cache_size = cache_size
        self.cleanup_interval = cleanup_interval
        self._cache: OrderedDict[bytes, ProviderSet] = OrderedDict()
        self._lock = threading.RLock()
        self._closed = threading.Event()
        self._gc_thread = threading.Thread(
            target=self._gc_loop, name="provider-gc", daemon=True
        )
        self._gc_thread.start()

    def __enter__(self) -> ProviderManager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise RuntimeError("provider manager is closed")

    def _gc_loop(self) -> None:
        while not self._closed.wait(self.cleanup_interval):
            try:
                self.collect_garbage()
            except Exception:
                log.exception("provider record GC failed")

    def _cache_get(self, key: bytes) -> ProviderSet | None:
        found = self._cache.get(key)
        if found is not None:
            self._cache.move_to_end(key)
        return found

    def _cache_add(self, key: bytes, pset: ProviderSet) -> None:
        self._cache[key] = pset
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    def add_provider(self, key: bytes, provider: PeerLike) -> None:
        """Record that ``provider`` can provide ``key``."""
        key = bytes(key)
        with self._lock:
            self._check_open()
            now = time.time_ns()
            cached = self._cache_get(key)
            if cached is not None:
                cached.set_val(provider, now)
            write_provider_entry(self.datastore, key, provider, now)

    def get_providers(self, key: bytes) -> list[bytes]:
        """Return the current providers of ``key``, in the order first seen."""
        key = bytes(key)
        with self._lock:
            self._check_open()
            pset = self._cache_get(key)
            if pset is None:
                pset = load_provider_set(self.datastore, key)
                if pset.providers:
                    self._cache_add(key, pset)
            return list(pset.providers)

    def collect_garbage(self) -> int:
        """Drop the cache and delete expired records; return how many were deleted."""
        with self._lock:
            self._cache.clear()
            now = time.time_ns()
            removed = 0
            for record_key, value in self.datastore.query(PROVIDERS_KEY_PREFIX):
                if _is_expired(value, now):
                    _drop(self.datastore, record_key)
                    removed += 1
            return removed

    def close(self) -> None:
        """Stop background garbage collection; further use raises RuntimeError."""
        self._closed.set()
        if self._gc_thread is not threading.current_thread():
            self._gc_thread.join()