from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from stablesync.src.metrics import METRICS
from stablesync.src.model import ChangeEvent, ChangeKind, ObjectKind, Pod, Rollout

CachedObject = Pod | Rollout

_WATCH_EVENT_CHANGES = {
    "ADDED": ChangeKind.ADDED,
    "MODIFIED": ChangeKind.UPDATED,
    "DELETED": ChangeKind.DELETED,
}


def _list_items(result: Any) -> list[Any]:
    """Return list items from a typed ``*List`` model or a custom-objects dict."""
    if isinstance(result, Mapping):
        return list(result.get("items") or [])
    return list(getattr(result, "items", None) or [])


def _list_resource_version(result: Any) -> str | None:
    if isinstance(result, Mapping):
        return (result.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(result, "metadata", None), "resource_version", None)


class WatchCache:
    """Thread-safe local cache of one resource kept current by list-then-watch.

    The cache holds canonical :class:`Pod` or :class:`Rollout` records keyed by
    ``namespace/name`` and reports every change through ``emit``:

    - the initial list emits ``ADDED`` for each object and sets :attr:`synced`;
    - watch events map ``ADDED``/``MODIFIED``/``DELETED`` onto
      :class:`ChangeKind`;
    - a ``410 Gone`` re-list replaces the cache, emitting ``UPDATED`` for every
      listed object and ``DELETED`` for objects that vanished meanwhile;
    - every ``resync_seconds`` all cached objects are re-emitted as
      ``UPDATED`` so missed events are eventually repaired.

    ``401``/``403`` responses are treated as RBAC misconfiguration and stop
    the cache.  Any other failure backs off with jitter (1 s doubling to 30 s).
    """

    def __init__(
        self,
        resource: str,
        kind: ObjectKind,
        list_fn: Callable[..., Any],
        convert: Callable[[Any], CachedObject],
        emit: Callable[[ChangeEvent], None],
        list_kwargs: dict[str, Any] | None = None,
        resync_seconds: int = 1800,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.kind = kind
        self.list_fn = list_fn
        self.convert = convert
        self.emit = emit
        self.list_kwargs = dict(list_kwargs or {})
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self._objects: dict[str, CachedObject] = {}
        self._lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        METRICS.cache_objects.labels(resource=resource).set(0)

    def get(self, key: str) -> CachedObject | None:
        with self._lock:
            return self._objects.get(key)

    def list(
        self,
        namespace: str | None = None,
        predicate: Callable[[CachedObject], bool] | None = None,
    ) -> list[CachedObject]:
        with self._lock:
            objects = list(self._objects.values())
        return [
            obj
            for obj in objects
            if (namespace is None or obj.namespace == namespace)
            and (predicate is None or predicate(obj))
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _emit(self, change: ChangeKind, obj: CachedObject) -> None:
        self.emit(
            ChangeEvent(
                kind=self.kind,
                change=change,
                namespace=obj.namespace,
                name=obj.name,
                obj=obj,
            )
        )

    def _convert_all(self, items: list[Any]) -> dict[str, CachedObject]:
        converted: dict[str, CachedObject] = {}
        for item in items:
            try:
                obj = self.convert(item)
            except ValueError:
                self.logger.warning("Skipping malformed %s in list response", self.resource)
                continue
            converted[obj.key] = obj
        return converted

    def replace(self, list_result: Any, initial: bool) -> str | None:
        """Replace the cache contents from a full list and emit the resulting changes.

        Returns the list's ``resourceVersion`` to resume watching from.
        """
        fresh = self._convert_all(_list_items(list_result))
        with self._lock:
            previous = self._objects
            self._objects = fresh
        METRICS.cache_objects.labels(resource=self.resource).set(len(fresh))

        change = ChangeKind.ADDED if initial else ChangeKind.UPDATED
        for obj in fresh.values():
            self._emit(change, obj)
        if not initial:
            for key, obj in previous.items():
                if key not in fresh:
                    self._emit(ChangeKind.DELETED, obj)
        return _list_resource_version(list_result)

    def resync(self) -> None:
        """Re-emit every cached object as ``UPDATED``."""
        objects = self.list()
        self.logger.debug("Resyncing %d cached %s", len(objects), self.resource)
        for obj in objects:
            self._emit(ChangeKind.UPDATED, obj)

    def apply_watch_event(self, event: Mapping[str, Any]) -> str | None:
        """Apply one watch event to the cache; return the object's resourceVersion."""
        change = _WATCH_EVENT_CHANGES.get(str(event.get("type", "")))
        raw_obj = event.get("object")
        if change is None or raw_obj is None:
            return None

        try:
            obj = self.convert(raw_obj)
        except ValueError:
            self.logger.warning("Skipping malformed %s watch event", self.resource)
            return None

        with self._lock:
            if change is ChangeKind.DELETED:
                self._objects.pop(obj.key, None)
            else:
                self._objects[obj.key] = obj
            size = len(self._objects)
        METRICS.cache_objects.labels(resource=self.resource).set(size)
        self._emit(change, obj)
        return obj.resource_version

    def _list(self) -> Any:
        return self.list_fn(**self.list_kwargs)

    def _next_watch_timeout_seconds(self, now_monotonic: float, next_resync: float | None) -> int:
        """Return the watch timeout, shortened so the loop wakes up for the next resync."""
        if next_resync is None:
            return 30
        remaining = max(1.0, next_resync - now_monotonic)
        return min(30, max(1, math.ceil(remaining)))

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch the resource until stopped.

        The initial list is retried with exponential backoff so transient API
        startup failures do not kill the cache.  Watches resume from the last
        seen ``resourceVersion``.  :attr:`synced` is cleared on exit.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        try:
            self._list_and_watch(stop)
        finally:
            self.synced.clear()

    def _list_and_watch(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self.replace(self._list(), initial=True)
                self.synced.set()
                self.logger.info(
                    "Synced %d %s; watching from resourceVersion %s",
                    len(self),
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            return

        backoff_seconds = 1
        watch_stream_count = 0
        next_resync = (
            time.monotonic() + self.resync_seconds if self.resync_seconds > 0 else None
        )

        while not self._should_stop(stop):
            if next_resync is not None and time.monotonic() >= next_resync:
                self.resync()
                next_resync = time.monotonic() + self.resync_seconds

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(
                        time.monotonic(), next_resync
                    ),
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break
                    resource_version = self.apply_watch_event(event) or resource_version

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away, re-list.
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version for %s expired, re-listing", self.resource
                    )
                    try:
                        resource_version = self.replace(self._list(), initial=False)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.resource,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
