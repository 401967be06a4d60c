"""
leader_discovery.tier3_platform.coordination
─────────────────────────────────────────────
Coordination-service watcher. A background thread keeps the LeaderCache in
step with the election directory:

  locate → fetch + watch → decode → publish → await change → (tick) → locate …

The leader node is located again on every cycle: the node being watched can
be deleted and a new leader elected between two cycles.

Backed by kazoo (ZooKeeper). MockCoordinationClient mirrors the subset of
KazooClient used here for tests and local development.
"""
from __future__ import annotations

import queue
import threading
from collections import defaultdict
from typing import Any, Callable, Protocol, runtime_checkable

from kazoo.exceptions import ConnectionLoss, KazooException, NoNodeError, NodeExistsError
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.protocol.states import EventType, KazooState, WatchedEvent, ZnodeStat

from leader_discovery.tier0_core.errors import DecodeError, FinderError, WatchInterruptedError
from leader_discovery.tier0_core.logging import bind_context, clear_context, get_logger
from leader_discovery.tier0_core.metrics import (
    leader_changes_total,
    refresh_total,
    session_events_total,
    watchers_running,
)
from leader_discovery.tier2_reliability.cache import LeaderCache
from leader_discovery.tier3_platform.election import decode_advertisement, select_leader_node

logger = get_logger(__name__)

WatchFn = Callable[[WatchedEvent], Any]
ListenerFn = Callable[[str], Any]


# ── Protocol ───────────────────────────────────────────────────────────────

@runtime_checkable
class CoordinationClient(Protocol):
    """The subset of kazoo.client.KazooClient the watcher relies on."""

    @property
    def connected(self) -> bool: ...
    def start(self, timeout: float = 15) -> None: ...
    def stop(self) -> None: ...
    def close(self) -> None: ...
    def get_children(self, path: str) -> list[str]: ...
    def get(self, path: str, watch: WatchFn | None = None) -> tuple[bytes, ZnodeStat]: ...
    def add_listener(self, listener: ListenerFn) -> None: ...
    def remove_listener(self, listener: ListenerFn) -> None: ...


# ── Mock client (in-memory, deterministic) ─────────────────────────────────

class MockCoordinationClient:
    """
    In-memory election directory with kazoo watch semantics: data watches
    are deduplicated per path, fire once on change or delete, and fire with
    an EventType.NONE event when the session expires. No network access.

    Usage::

        client = MockCoordinationClient()
        client.create("/aurora/scheduler/member_", advert, sequence=True)
        finder = resolve("zk://zk1:2181", client=client)
    """

    def __init__(self, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self._lock = threading.RLock()
        self._nodes: dict[str, bytes] = {}
        self._versions: dict[str, int] = {}
        self._sequences: dict[str, int] = defaultdict(int)
        self._watches: dict[str, list[WatchFn]] = defaultdict(list)
        self._listeners: list[ListenerFn] = []
        self._connected = False
        self.start_timeout: float | None = None

    # -- session ---------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    def start(self, timeout: float = 15) -> None:
        self.start_timeout = timeout
        if self.fail_connect:
            raise KazooTimeoutError("Connection time-out")
        self._set_state(KazooState.CONNECTED)

    def stop(self) -> None:
        if self._connected:
            self._set_state(KazooState.LOST)

    def close(self) -> None:
        pass

    def suspend(self) -> None:
        """Lose the connection but keep the session (and its watches)."""
        self._set_state(KazooState.SUSPENDED)

    def resume(self) -> None:
        self._set_state(KazooState.CONNECTED)

    def expire_session(self) -> None:
        """Expire the session and reconnect with a new one."""
        self._set_state(KazooState.LOST)
        with self._lock:
            watches = [w for path_watches in self._watches.values() for w in path_watches]
            self._watches.clear()
        event = WatchedEvent(EventType.NONE, KazooState.LOST, None)
        for watch in watches:
            watch(event)
        self._set_state(KazooState.CONNECTED)

    def add_listener(self, listener: ListenerFn) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ListenerFn) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: str) -> None:
        self._connected = state == KazooState.CONNECTED
        for listener in list(self._listeners):
            listener(state)

    # -- data ------------------------------------------------------------

    def ensure_path(self, path: str) -> None:
        with self._lock:
            parts = [p for p in path.split("/") if p]
            for i in range(1, len(parts) + 1):
                parent = "/" + "/".join(parts[:i])
                if parent not in self._nodes:
                    self._nodes[parent] = b""
                    self._versions[parent] = 0

    def create(self, path: str, value: bytes = b"", sequence: bool = False, **_: Any) -> str:
        """Create a node, making parents as needed (kazoo's makepath=True)."""
        with self._lock:
            parent = path.rsplit("/", 1)[0]
            if parent:
                self.ensure_path(parent)
            if sequence:
                path = f"{path}{self._sequences[parent]:010d}"
                self._sequences[parent] += 1
            if path in self._nodes:
                raise NodeExistsError()
            self._nodes[path] = value
            self._versions[path] = 0
        return path

    def set(self, path: str, value: bytes) -> None:
        with self._lock:
            if path not in self._nodes:
                raise NoNodeError()
            self._nodes[path] = value
            self._versions[path] += 1
        self._fire(path, EventType.CHANGED)

    def delete(self, path: str) -> None:
        with self._lock:
            if path not in self._nodes:
                raise NoNodeError()
            del self._nodes[path]
            del self._versions[path]
        self._fire(path, EventType.DELETED)

    def get_children(self, path: str) -> list[str]:
        self._require_connection()
        prefix = path.rstrip("/") + "/"
        with self._lock:
            if path not in self._nodes:
                raise NoNodeError()
            return [
                p[len(prefix):] for p in self._nodes
                if p.startswith(prefix) and "/" not in p[len(prefix):]
            ]

    def get(self, path: str, watch: WatchFn | None = None) -> tuple[bytes, ZnodeStat]:
        self._require_connection()
        with self._lock:
            if path not in self._nodes:
                raise NoNodeError()
            data = self._nodes[path]
            if watch is not None and watch not in self._watches[path]:
                self._watches[path].append(watch)
            stat = ZnodeStat(
                czxid=0, mzxid=0, ctime=0, mtime=0,
                version=self._versions[path], cversion=0, aversion=0,
                ephemeralOwner=0, dataLength=len(data), numChildren=0, pzxid=0,
            )
        return data, stat

    def pending_watches(self, path: str) -> int:
        with self._lock:
            return len(self._watches.get(path, ()))

    def _fire(self, path: str, event_type: str) -> None:
        with self._lock:
            watches = self._watches.pop(path, [])
        event = WatchedEvent(event_type, KazooState.CONNECTED, path)
        for watch in watches:
            watch(event)

    def _require_connection(self) -> None:
        if not self._connected:
            raise ConnectionLoss()


# ── Watcher ────────────────────────────────────────────────────────────────

class CoordinationWatcher:
    """
    Owns the refresh thread for one election directory and is the only
    writer of its LeaderCache.

    Usage::

        watcher = CoordinationWatcher(client, "/aurora/scheduler", cache)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        client: CoordinationClient,
        election_path: str,
        cache: LeaderCache,
        *,
        refresh_interval: float = 1.0,
    ) -> None:
        self._client = client
        self._election_path = election_path
        self._cache = cache
        self._refresh_interval = refresh_interval

        self._stop = threading.Event()
        self._events: queue.Queue[WatchedEvent | None] = queue.Queue()
        self._thread: threading.Thread | None = None

    @property
    def election_path(self) -> str:
        return self._election_path

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        _drain(self._events)
        self._client.add_listener(self._on_session_event)
        self._thread = threading.Thread(
            target=self._run,
            name=f"leader-watcher:{self._election_path}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the refresh thread. Safe to call more than once."""
        self._stop.set()
        self._events.put(None)
        self._client.remove_listener(self._on_session_event)
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def __enter__(self) -> "CoordinationWatcher":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    # -- refresh loop ----------------------------------------------------

    def _run(self) -> None:
        bind_context(election_path=self._election_path)
        watchers_running().inc()
        logger.info("watcher.started", refresh_interval=self._refresh_interval)
        try:
            while not self._stop.is_set():
                try:
                    node = self.refresh()
                    if node is not None:
                        interruption = self._await_change(node)
                        if interruption is not None:
                            logger.info(
                                "watcher.watch_interrupted",
                                reason=interruption.message,
                                **interruption.metadata,
                            )
                except Exception:
                    logger.exception("watcher.refresh_crashed")
                    _count(refresh_total, outcome="crashed")
                if self._stop.wait(self._refresh_interval):
                    break
        finally:
            watchers_running().dec()
            logger.info("watcher.stopped")
            clear_context()

    def refresh(self) -> str | None:
        """
        Run one locate / fetch + watch / decode / publish pass.

        Returns the path of the published leader node, which now carries a
        pending watch, or None if the pass failed. Failures leave the cache
        as it was.
        """
        try:
            children = self._client.get_children(self._election_path)
            node = select_leader_node(self._election_path, children)
        except (FinderError, KazooException) as exc:
            refresh_total(outcome="locate_failed").inc()
            logger.warning("watcher.locate_failed", error=str(exc) or type(exc).__name__)
            return None

        logger.debug("watcher.leader_node", node=node)

        # Notifications queued before this read are superseded by it.
        _drain(self._events)
        try:
            data, stat = self._client.get(node, watch=self._on_watch)
        except KazooException as exc:
            refresh_total(outcome="fetch_failed").inc()
            logger.warning("watcher.fetch_failed", node=node, error=str(exc) or type(exc).__name__)
            return None
        if stat is None:
            refresh_total(outcome="fetch_failed").inc()
            logger.warning("watcher.fetch_failed", node=node, error="get returned no stat")
            return None

        try:
            advertisement = decode_advertisement(data)
        except DecodeError as exc:
            refresh_total(outcome="decode_failed").inc()
            logger.warning("watcher.decode_failed", node=node, error=exc.message, **exc.metadata)
            return None

        address = advertisement.address
        previous = self._cache.write(address)
        if previous != address:
            leader_changes_total().inc()
            logger.info(
                "watcher.leader_changed",
                node=node,
                host=address.host,
                port=address.port,
                status=advertisement.status,
            )
        refresh_total(outcome="published").inc()
        return node

    def _await_change(self, node: str) -> WatchInterruptedError | None:
        """
        Block until the watch on *node* fires, the session drops, or stop()
        is called (returns None). While the session stays
        connected and nothing fires, the cached leader is re-confirmed once
        per refresh interval.
        """
        while not self._stop.is_set():
            try:
                item = self._events.get(timeout=self._refresh_interval)
            except queue.Empty:
                if not self._client.connected:
                    return WatchInterruptedError("coordination session not connected")
                self._cache.touch()
                continue
            if item is None:
                return None
            if item.path is not None and item.path != node:
                continue
            return _interruption(item)
        return None

    # -- callbacks (kazoo threads) ---------------------------------------

    def _on_watch(self, event: WatchedEvent) -> None:
        self._events.put(event)

    def _on_session_event(self, state: str) -> None:
        _count(session_events_total, state=str(state))
        logger.info("zk.session_event", state=str(state))


def _count(metric: Callable, **labels: str) -> None:
    try:
        metric(**labels).inc()
    except Exception:
        logger.exception("watcher.metric_failed", **labels)


def _interruption(event: WatchedEvent) -> WatchInterruptedError:
    if event.type == EventType.DELETED:
        return WatchInterruptedError("leader node deleted", node=event.path)
    if event.type == EventType.NONE:
        return WatchInterruptedError(f"watcher error: session {event.state}", node=event.path)
    return WatchInterruptedError(f"leader node {str(event.type).lower()}", node=event.path)


def _drain(q: queue.Queue) -> None:
    while True:
        try:
            q.get_nowait()
        except queue.Empty:
            return


__all__ = ["CoordinationClient", "CoordinationWatcher", "MockCoordinationClient"]
