"""Periodic and on-demand refreshing of a Kademlia routing table."""

from __future__ import annotations

import base64
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

PEER_PING_TIMEOUT = 10.0
"""Seconds allowed for a liveness ping of a stale routing-table peer."""


class RefreshError(Exception):
    """One or more steps of a routing-table refresh failed."""

    def __init__(self, errors: list) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


class RefreshCancelled(RuntimeError):
    """The refresh manager was closed before the refresh could finish."""


def loggable_raw_key(key: Union[bytes, str]) -> str:
    """Unpadded base32 form of a raw key, for logging."""
    raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if not raw:
        return ""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


@dataclass
class _Request:
    force: bool = False
    future: Optional[Future] = field(default=None)


_STOP = object()


class RtRefreshManager:
    """Keeps a routing table fresh by running lookups for self and for each cpl.

    ``host`` offers ``id`` and ``connect(peer, timeout)`` (raising on failure).
    ``routing_table`` offers ``get_peer_infos()`` (items with ``id`` and
    ``last_successful_outbound_query_at`` in epoch seconds), ``remove_peer(id)``,
    ``get_tracked_cpls_for_refresh()`` (last refresh time per cpl, epoch
    seconds), ``n_peers_for_cpl(cpl)`` and ``size()``.
    ``refresh_query_fn(key, timeout)`` runs one lookup and raises on failure.
    """

    def __init__(
        self,
        host,
        routing_table,
        auto_refresh: bool,
        refresh_key_gen_fn: Callable[[int], str],
        refresh_query_fn: Callable[[object, float], None],
        refresh_query_timeout: float,
        refresh_interval: float,
        successful_outbound_query_grace_period: float,
        refresh_done: Optional[Callable[[], None]] = None,
    ) -> None:
        self.host = host
        self.dht_peer_id = host.id
        self.rt = routing_table
        self.enable_auto_refresh = auto_refresh
        self.refresh_key_gen_fn = refresh_key_gen_fn
        self.refresh_query_fn = refresh_query_fn
        self.refresh_query_timeout = refresh_query_timeout
        self.refresh_interval = refresh_interval
        self.successful_outbound_query_grace_period = successful_outbound_query_grace_period
        self.refresh_done = refresh_done

        self._requests: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        self._idle = threading.Event()
        self._close_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> RtRefreshManager:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        """Start the background refresh loop."""
        if self._thread is not None:
            raise RuntimeError("refresh manager already started")
        if self._closed.is_set():
            raise RefreshCancelled("refresh manager is closed")
        self._thread = threading.Thread(target=self._loop, name="rt-refresh", daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop the loop; pending refresh requests fail with RefreshCancelled."""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._requests.put(_STOP)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._fail_pending()

    def _fail_pending(self) -> None:
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, _Request) and item.future is not None:
                item.future.set_exception(RefreshCancelled("refresh manager is closed"))

    def refresh(self, force: bool) -> Future:
        """Request a refresh; the future resolves once it has run.

        With ``force`` every cpl is refreshed whenever it was last refreshed.
        """
        future: Future = Future()
        with self._close_lock:
            if self._closed.is_set():
                future.set_exception(RefreshCancelled("refresh manager is closed"))
            else:
                self._requests.put(_Request(force=force, future=future))
        return future

    def refresh_no_wait(self) -> None:
        """Request a refresh, dropping the request if the loop is busy."""
        with self._close_lock:
            if not self._closed.is_set() and self._idle.is_set():
                self._requests.put(_Request())

    def _loop(self) -> None:
        next_tick: Optional[float] = None
        if self.enable_auto_refresh:
            try:
                self.do_refresh(True)
            except Exception as err:
                logger.warning("failed when refreshing routing table: %s", err)
            next_tick = time.monotonic() + self.refresh_interval

        while True:
            timeout = None if next_tick is None else max(0.0, next_tick - time.monotonic())
            self._idle.set()
            try:
                first = self._requests.get(timeout=timeout)
            except queue.Empty:
                first = None
            self._idle.clear()
            if first is _STOP:
                return

            batch = [first] if first is not None else []
            stopping = False
            while True:
                try:
                    item = self._requests.get_nowait()
                except queue.Empty:
                    break
                if item is _STOP:
                    stopping = True
                    break
                batch.append(item)

            waiting = [req.future for req in batch if req.future is not None]
            forced = any(req.force for req in batch)

            if stopping:
                for fut in waiting:
                    fut.set_exception(RefreshCancelled("refresh manager is closed"))
                return

            self._evict_stale_peers()

            error: Optional[BaseException] = None
            try:
                self.do_refresh(forced)
            except Exception as err:
                error = err
                logger.warning("failed when refreshing routing table: %s", err)
            for fut in waiting:
                if error is None:
                    fut.set_result(None)
                else:
                    fut.set_exception(error)

            if next_tick is not None:
                now = time.monotonic()
                while next_tick <= now:
                    next_tick += self.refresh_interval

    def _evict_stale_peers(self) -> None:
        now = time.time()
        stale = [
            info
            for info in self.rt.get_peer_infos()
            if now - info.last_successful_outbound_query_at
            > self.successful_outbound_query_grace_period
        ]
        if not stale:
            return

        def ping(info) -> None:
            try:
                self.host.connect(info.id, PEER_PING_TIMEOUT)
            except Exception as err:
                logger.debug("evicting peer %r after failed ping: %s", info.id, err)
                self.rt.remove_peer(info.id)

        with ThreadPoolExecutor(max_workers=min(len(stale), 32)) as pool:
            list(pool.map(ping, stale))

    def do_refresh(self, force: bool) -> None:
        """Query for self, then refresh the tracked cpls; raises RefreshError on failure."""
        errors: list = []

        try:
            self._query_for_self()
        except Exception as err:
            errors.append(err)

        refresh_cpls = list(self.rt.get_tracked_cpls_for_refresh())

        def refresh_one(cpl: int) -> None:
            if force:
                self._refresh_cpl(cpl)
            else:
                self._refresh_cpl_if_eligible(cpl, refresh_cpls[cpl])

        for cpl in range(len(refresh_cpls)):
            try:
                refresh_one(cpl)
            except Exception as err:
                errors.append(err)
                continue
            # A gap at this cpl: only refresh up to 2 * (cpl + 1) or the last
            # tracked cpl, whichever is smaller, and stop there.
            if self.rt.n_peers_for_cpl(cpl) == 0:
                last_cpl = min(2 * (cpl + 1), len(refresh_cpls) - 1)
                for gap_cpl in range(cpl + 1, last_cpl + 1):
                    try:
                        refresh_one(gap_cpl)
                    except Exception as err:
                        errors.append(err)
                if errors:
                    raise RefreshError(errors)
                return

        if self._closed.is_set():
            raise RefreshCancelled("refresh manager is closed")
        if self.refresh_done is not None:
            self.refresh_done()

        if errors:
            raise RefreshError(errors)

    def _refresh_cpl_if_eligible(self, cpl: int, last_refreshed_at: float) -> None:
        if time.time() - last_refreshed_at <= self.refresh_interval:
            logger.debug(
                "not running refresh for cpl %d as time since last refresh not above interval",
                cpl,
            )
            return
        self._refresh_cpl(cpl)

    def _refresh_cpl(self, cpl: int) -> None:
        try:
            key = self.refresh_key_gen_fn(cpl)
        except Exception as err:
            raise RuntimeError(
                f"failed to generated query key for cpl={cpl}, err={err}"
            ) from err

        logger.info(
            "starting refreshing cpl %d with key %s (routing table size was %d)",
            cpl,
            loggable_raw_key(key),
            self.rt.size(),
        )
        try:
            self._run_refresh_query(key)
        except Exception as err:
            raise RuntimeError(f"failed to refresh cpl={cpl}, err={err}") from err
        logger.info(
            "finished refreshing cpl %d, routing table size is now %d", cpl, self.rt.size()
        )

    def _query_for_self(self) -> None:
        try:
            self._run_refresh_query(self.dht_peer_id)
        except Exception as err:
            raise RuntimeError(f"failed to query for self, err={err}") from err

    def _run_refresh_query(self, key) -> None:
        if self._closed.is_set():
            raise RefreshCancelled("refresh manager is closed")
        started = time.monotonic()
        try:
            self.refresh_query_fn(key, self.refresh_query_timeout)
        except TimeoutError:
            # The query running out its own time budget is not a failure.
            if time.monotonic() - started >= self.refresh_query_timeout:
                return
            raise