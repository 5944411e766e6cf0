from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from gsingress.src.gameserver import AGONES_GROUP, AGONES_VERSION, GAMESERVER_PLURAL, namespaced
from gsingress.src.metrics import METRICS


class GameServerEventSink(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old_obj: Any, new_obj: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...


def _metadata(obj: Any) -> dict[str, Any]:
    if not isinstance(obj, dict):
        return {}
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def object_key(obj: Any) -> str | None:
    metadata = _metadata(obj)
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return namespaced(namespace, name)


class GameServerWatcher:
    """List-then-watch loop over Agones GameServers feeding a notification sink.

    The watcher keeps the last seen version of every GameServer keyed by
    ``namespace/name`` so it can hand both old and new snapshots to
    ``on_update`` and detect objects that vanished while the watch was
    disconnected.  Every ``resync_seconds`` all cached objects are delivered
    again through ``on_update`` so a failed reconcile gets another chance
    even when nothing changes on the object.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        sink: GameServerEventSink,
        namespace: str | None = None,
        resync_seconds: float = 15.0,
        logger: logging.Logger | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.custom_api = custom_api
        self.sink = sink
        self.namespace = namespace
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.monotonic = monotonic

        self._cache: dict[str, dict[str, Any]] = {}
        self._next_resync: float | None = None
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "group": AGONES_GROUP,
            "version": AGONES_VERSION,
            "plural": GAMESERVER_PLURAL,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _list_fn(self) -> Callable[..., Any]:
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object
        return self.custom_api.list_cluster_custom_object

    def _list(self) -> tuple[str | None, list[dict[str, Any]]]:
        listing = self._list_fn()(**self._list_kwargs())
        if not isinstance(listing, dict):
            return None, []
        metadata = listing.get("metadata") or {}
        items = listing.get("items") or []
        return metadata.get("resourceVersion"), [i for i in items if isinstance(i, dict)]

    def _deliver(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            self.logger.exception("GameServer notification handler failed")

    def sync_from_list(self, items: list[dict[str, Any]]) -> None:
        """Reconcile the local cache against a full listing.

        New objects are delivered as added, objects whose resourceVersion
        moved as updated, and cached objects missing from the listing as
        deleted.
        """
        seen: set[str] = set()
        for item in items:
            key = object_key(item)
            if key is None:
                continue
            seen.add(key)
            previous = self._cache.get(key)
            self._cache[key] = item
            if previous is None:
                self._deliver(self.sink.on_add, item)
            elif _metadata(previous).get("resourceVersion") != _metadata(item).get(
                "resourceVersion"
            ):
                self._deliver(self.sink.on_update, previous, item)

        for key in [k for k in self._cache if k not in seen]:
            self._deliver(self.sink.on_delete, self._cache.pop(key))

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Map one watch event onto the notification sink."""
        key = object_key(obj)
        if key is None:
            self.logger.debug("Ignoring %s event without namespace/name", event_type)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            previous = self._cache.get(key)
            self._cache[key] = obj
            if previous is None:
                self._deliver(self.sink.on_add, obj)
            else:
                self._deliver(self.sink.on_update, previous, obj)
        elif event_type == "DELETED":
            self._cache.pop(key, None)
            self._deliver(self.sink.on_delete, obj)

    def resync(self) -> None:
        """Deliver every cached object again as an update with identical snapshots."""
        for obj in list(self._cache.values()):
            self._deliver(self.sink.on_update, obj, obj)

    def _resync_if_due(self) -> None:
        if self.resync_seconds <= 0 or self._next_resync is None:
            return
        now = self.monotonic()
        if now < self._next_resync:
            return
        self.logger.debug("Resyncing %d cached GameServer(s)", len(self._cache))
        self.resync()
        self._next_resync = now + self.resync_seconds

    def _next_watch_timeout_seconds(self) -> int:
        """Return the watch timeout, shortened so the next resync fires on time."""
        if self.resync_seconds <= 0 or self._next_resync is None:
            return 30
        remaining = max(1.0, self._next_resync - self.monotonic())
        return min(30, max(1, math.ceil(remaining)))

    def _denied(self, status: int | None, phase: str) -> bool:
        if status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC for %s/%s %s.",
            phase,
            status,
            AGONES_GROUP,
            AGONES_VERSION,
            GAMESERVER_PLURAL,
        )
        self.ready.clear()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main loop: list GameServers, then watch until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Delivers every listed object as added and marks the watcher ready.
        3. Streams watch events from the list's ``resourceVersion``.
        4. On ``410 Gone`` re-lists and diffs against the cache.
        5. On other errors backs off with jitter (1 s doubling, 30 s cap).
        6. Resyncs the cache every ``resync_seconds``.

        ``401`` / ``403`` responses terminate the loop immediately.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version, items = self._list()
                self.sync_from_list(items)
                self.ready.set()
                self._next_resync = self.monotonic() + self.resync_seconds
                self.logger.info(
                    "Listed %d GameServer(s); starting watch from resourceVersion %s",
                    len(items),
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._denied(exc.status, "initial list"):
                    return
                self.logger.exception("Initial GameServer list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial GameServer list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._resync_if_due()
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_fn(),
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(),
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue

                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        status = obj.get("code")
                        if status == 410:
                            raise ApiException(status=410, reason="Gone")
                        raise ApiException(status=status, reason=str(obj.get("message", "")))

                    version = _metadata(obj).get("resourceVersion")
                    if version:
                        resource_version = version

                    self.handle_event(event_type, obj)
                    self._resync_if_due()

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version, items = self._list()
                        self.sync_from_list(items)
                    except ApiException as relist_exc:
                        if self._denied(relist_exc.status, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if self._denied(exc.status, "watch"):
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
