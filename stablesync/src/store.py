from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from stablesync.src.cache import WatchCache
from stablesync.src.kube import (
    ROLLOUT_GROUP,
    ROLLOUT_PLURAL,
    ROLLOUT_VERSION,
    patch_pod_label,
)
from stablesync.src.model import (
    ChangeEvent,
    ObjectKind,
    Pod,
    Rollout,
    object_key,
    pod_from_object,
    rollout_from_object,
)

LOGGER = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Base class for failures reading from or writing to the object store."""


class NotFoundError(StoreError):
    """The requested object does not exist (or no longer exists)."""


class ConflictError(StoreError):
    """The write lost an optimistic-concurrency race; retrying may succeed."""


class TransientStoreError(StoreError):
    """Any other store failure; treated as retryable."""


def translate_api_exception(exc: ApiException) -> StoreError:
    """Map a Kubernetes ``ApiException`` onto the store error taxonomy."""
    message = f"{exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 409:
        return ConflictError(message)
    return TransientStoreError(message)


def matches_selector(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    """Return True if *labels* contain every key-value pair in *selector*."""
    return all(labels.get(k) == v for k, v in selector.items())


class ClusterStore:
    """Read-through object store backed by watch caches for pods and rollouts.

    Pods are watched with a label selector requiring the association label, so
    only pods that belong to some rollout are cached.  Rollouts are read from
    the ``argoproj.io/v1alpha1`` custom-objects API and converted to canonical
    :class:`Rollout` records at this boundary.

    Both caches publish into a single event stream obtained from
    :meth:`subscribe`.  Writes go straight to the API server through
    :meth:`patch_pod_label`.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        rollout_label_key: str,
        namespace: str | None = None,
        resync_seconds: int = 1800,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.rollout_label_key = rollout_label_key
        self.namespace = namespace or None
        self.logger = logger or LOGGER

        self._events: queue.Queue[ChangeEvent | None] = queue.Queue()
        self._subscribed = False
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        if self.namespace:
            pod_list_fn = core_api.list_namespaced_pod
            pod_kwargs: dict[str, Any] = {"namespace": self.namespace}
            rollout_list_fn = custom_api.list_namespaced_custom_object
            rollout_kwargs: dict[str, Any] = {"namespace": self.namespace}
        else:
            pod_list_fn = core_api.list_pod_for_all_namespaces
            pod_kwargs = {}
            rollout_list_fn = custom_api.list_cluster_custom_object
            rollout_kwargs = {}
        pod_kwargs["label_selector"] = rollout_label_key
        rollout_kwargs.update(group=ROLLOUT_GROUP, version=ROLLOUT_VERSION, plural=ROLLOUT_PLURAL)

        self.pods = WatchCache(
            resource="pods",
            kind=ObjectKind.POD,
            list_fn=pod_list_fn,
            list_kwargs=pod_kwargs,
            convert=pod_from_object,
            emit=self._events.put,
            resync_seconds=resync_seconds,
            logger=self.logger,
        )
        self.rollouts = WatchCache(
            resource="rollouts",
            kind=ObjectKind.ROLLOUT,
            list_fn=rollout_list_fn,
            list_kwargs=rollout_kwargs,
            convert=rollout_from_object,
            emit=self._events.put,
            resync_seconds=resync_seconds,
            logger=self.logger,
        )

    @property
    def synced(self) -> bool:
        return self.pods.synced.is_set() and self.rollouts.synced.is_set()

    def start(self) -> None:
        """Start one list-then-watch thread per cache."""
        if self._threads:
            return
        for cache in (self.pods, self.rollouts):
            thread = threading.Thread(
                target=cache.run,
                kwargs={"stop_event": self._stop},
                name=f"watch-{cache.resource}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def wait_for_sync(
        self,
        should_stop: Callable[[], bool] | None = None,
        timeout: float | None = None,
        poll_seconds: float = 0.1,
    ) -> bool:
        """Block until both caches completed their initial list.

        Returns ``False`` if *should_stop* returned True, the store was stopped,
        or *timeout* elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.synced:
            if self._stop.is_set() or (should_stop is not None and should_stop()):
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self._stop.wait(timeout=poll_seconds)
        return True

    def stop(self, join_timeout: float = 5.0) -> None:
        """Stop both watches and end the event stream."""
        self._stop.set()
        self.pods.request_stop()
        self.rollouts.request_stop()
        self._events.put(None)
        for thread in self._threads:
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                self.logger.info(
                    "Watch thread %s still open after %ss; abandoning it", thread.name, join_timeout
                )

    def subscribe(self) -> Iterator[ChangeEvent]:
        """Return the change event stream.  It can be consumed once and ends on :meth:`stop`."""
        if self._subscribed:
            raise RuntimeError("store event stream already has a subscriber")
        self._subscribed = True
        return self._iter_events()

    def _iter_events(self) -> Iterator[ChangeEvent]:
        while True:
            event = self._events.get()
            if event is None:
                return
            yield event

    def get_pod(self, namespace: str, name: str) -> Pod:
        pod = self.pods.get(object_key(namespace, name))
        if pod is None:
            raise NotFoundError(f"pod {namespace}/{name} not found")
        return pod  # type: ignore[return-value]

    def get_rollout(self, namespace: str, name: str) -> Rollout:
        rollout = self.rollouts.get(object_key(namespace, name))
        if rollout is None:
            raise NotFoundError(f"rollout {namespace}/{name} not found")
        return rollout  # type: ignore[return-value]

    def list_pods(self, namespace: str, selector: Mapping[str, str]) -> list[Pod]:
        return [
            pod
            for pod in self.pods.list(namespace=namespace)
            if isinstance(pod, Pod) and matches_selector(pod.labels, selector)
        ]

    def patch_pod_label(self, namespace: str, name: str, label_key: str, label_value: str) -> None:
        try:
            patch_pod_label(
                core_api=self.core_api,
                namespace=namespace,
                pod_name=name,
                label_key=label_key,
                label_value=label_value,
            )
        except ApiException as exc:
            raise translate_api_exception(exc) from exc
