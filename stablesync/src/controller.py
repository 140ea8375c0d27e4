from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable

from kubernetes.client import CoreV1Api, CustomObjectsApi

from stablesync.src.feed import ChangeFeedAdapter
from stablesync.src.reconciler import PodReconciler, RolloutReconciler
from stablesync.src.store import ClusterStore
from stablesync.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

DEFAULT_ROLLOUT_LABEL_KEY = "ian.delahorne.com/argo-canary"
DEFAULT_STABLE_LABEL_KEY = "rollouts-pod-template-hash"


class StableLabelController:
    """Supervises the pod and rollout reconciliation loops.

    Owns both work queues, the change feed adapter and the reconcilers, and
    runs each as its own thread:

    - ``pod_workers`` threads drain the pod queue through :class:`PodReconciler`,
      the only component that writes pod labels;
    - ``rollout_workers`` threads drain the rollout queue through
      :class:`RolloutReconciler`, which only fans pod keys back into the pod
      queue;
    - one thread feeds store notifications into both queues.

    The queues guarantee a key is never processed by two workers at once, so
    worker counts can be raised freely.  Shutdown stops the store (ending the
    notification stream), drains both queues so in-flight keys finish, then
    joins every thread.  Keys still waiting in a queue are discarded; the next
    start re-lists everything and re-establishes the label invariant.
    """

    def __init__(
        self,
        store: ClusterStore,
        rollout_label_key: str = DEFAULT_ROLLOUT_LABEL_KEY,
        stable_label_key: str = DEFAULT_STABLE_LABEL_KEY,
        pod_workers: int = 1,
        rollout_workers: int = 1,
        pod_queue: RateLimitingQueue | None = None,
        rollout_queue: RateLimitingQueue | None = None,
        cache_sync_timeout_seconds: float | None = None,
        drain_timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if pod_workers < 1 or rollout_workers < 1:
            raise ValueError("pod_workers and rollout_workers must be >= 1")

        self.store = store
        self.rollout_label_key = rollout_label_key
        self.stable_label_key = stable_label_key
        self.pod_workers = pod_workers
        self.rollout_workers = rollout_workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.drain_timeout_seconds = drain_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.pod_queue = pod_queue or RateLimitingQueue("pods")
        self.rollout_queue = rollout_queue or RateLimitingQueue("rollouts")
        self.pod_reconciler = PodReconciler(
            queue=self.pod_queue,
            store=store,
            rollout_label_key=rollout_label_key,
            stable_label_key=stable_label_key,
            logger=self.logger,
        )
        self.rollout_reconciler = RolloutReconciler(
            queue=self.rollout_queue,
            pod_queue=self.pod_queue,
            store=store,
            rollout_label_key=rollout_label_key,
            logger=self.logger,
        )

        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def request_stop(self) -> None:
        """Request a cooperative stop of :meth:`run_forever`."""
        self._external_stop.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _start_thread(self, target: Callable[[], None], name: str) -> threading.Thread:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        return thread

    def _shutdown(self, threads: list[threading.Thread]) -> None:
        self.ready.clear()
        self.logger.info("Shutting down queues...")
        self.store.stop()
        self.pod_queue.shut_down()
        self.rollout_queue.shut_down()
        self.rollout_queue.shut_down_with_drain(timeout=self.drain_timeout_seconds)
        self.pod_queue.shut_down_with_drain(timeout=self.drain_timeout_seconds)
        for thread in threads:
            thread.join(timeout=self.drain_timeout_seconds)
            if thread.is_alive():
                self.logger.error("Thread %s did not stop during shutdown", thread.name)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> bool:
        """Start the store and all loops, block until stopped, then drain.

        1. Starts the watch caches and waits for their initial list, giving up
           if a stop is requested or ``cache_sync_timeout_seconds`` elapses.
        2. Starts the feed adapter and the reconciler threads, then sets
           :attr:`ready`.
        3. Blocks until ``shutdown_event`` is set, :meth:`request_stop` is
           called, or a watch cache terminates (RBAC denial).
        4. Stops the store, drains both queues and joins all threads.

        Returns ``True`` after a requested stop and ``False`` when the initial
        sync timed out or a watch cache died.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        threads: list[threading.Thread] = []

        self.store.start()
        synced = self.store.wait_for_sync(
            should_stop=lambda: self._should_stop(stop),
            timeout=self.cache_sync_timeout_seconds,
        )
        if not synced:
            clean = self._should_stop(stop)
            if not clean:
                self.logger.error("Timed out waiting for pod and rollout caches to sync")
            self._shutdown(threads)
            return clean

        feed = ChangeFeedAdapter(
            events=self.store.subscribe(),
            pod_queue=self.pod_queue,
            rollout_queue=self.rollout_queue,
            logger=self.logger,
        )
        threads.append(self._start_thread(feed.run, "change-feed"))
        for index in range(self.pod_workers):
            threads.append(self._start_thread(self.pod_reconciler.run, f"pod-worker-{index}"))
        for index in range(self.rollout_workers):
            threads.append(
                self._start_thread(self.rollout_reconciler.run, f"rollout-worker-{index}")
            )
        self.ready.set()
        self.logger.info(
            "Controller running with %d pod worker(s) and %d rollout worker(s)",
            self.pod_workers,
            self.rollout_workers,
        )

        clean = True
        while not self._should_stop(stop):
            if not self.store.synced:
                self.logger.error("A watch cache stopped unexpectedly; shutting down controller")
                clean = False
                break
            stop.wait(timeout=0.5)

        self._shutdown(threads)
        self.logger.info("Controller shutdown complete")
        return clean


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_label_key(name: str, default: str) -> str:
    value = os.getenv(name, default).strip()
    if not value:
        raise ValueError(f"{name} must be a non-empty label key")
    return value


def build_controller_from_env(
    core_api: CoreV1Api, custom_api: CustomObjectsApi
) -> StableLabelController:
    """Construct a :class:`StableLabelController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: Namespace to watch; empty watches all (``""``).
        ``ROLLOUT_LABEL_KEY``: Pod label naming the owning rollout (``ian.delahorne.com/argo-canary``).
        ``STABLE_LABEL_KEY``: Pod label mirroring ``status.stableRS`` (``rollouts-pod-template-hash``).
        ``POD_WORKERS``: Pod reconciler threads (``1``).
        ``ROLLOUT_WORKERS``: Rollout reconciler threads (``1``).
        ``QUEUE_BASE_DELAY_MS``: First backoff step per key (``1``).
        ``QUEUE_MAX_DELAY_SECONDS``: Backoff cap per key (``10``).
        ``RESYNC_SECONDS``: Full cache resync period, ``0`` disables (``1800``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: Give up waiting for initial sync, ``0`` waits forever (``0``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip() or None
    rollout_label_key = _env_label_key("ROLLOUT_LABEL_KEY", DEFAULT_ROLLOUT_LABEL_KEY)
    stable_label_key = _env_label_key("STABLE_LABEL_KEY", DEFAULT_STABLE_LABEL_KEY)
    if rollout_label_key == stable_label_key:
        raise ValueError("ROLLOUT_LABEL_KEY and STABLE_LABEL_KEY must differ")

    pod_workers = env_int("POD_WORKERS", 1, minimum=1, maximum=64)
    rollout_workers = env_int("ROLLOUT_WORKERS", 1, minimum=1, maximum=64)
    base_delay_ms = env_int("QUEUE_BASE_DELAY_MS", 1, minimum=1)
    max_delay_seconds = env_int("QUEUE_MAX_DELAY_SECONDS", 10, minimum=1)
    if base_delay_ms > max_delay_seconds * 1000:
        raise ValueError("QUEUE_BASE_DELAY_MS must not exceed QUEUE_MAX_DELAY_SECONDS")
    resync_seconds = env_int("RESYNC_SECONDS", 1800, minimum=0)
    cache_sync_timeout_seconds = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 0, minimum=0)

    def _queue(name: str) -> RateLimitingQueue:
        return RateLimitingQueue(
            name,
            rate_limiter=ItemExponentialFailureRateLimiter(
                base_delay=base_delay_ms / 1000.0,
                max_delay=float(max_delay_seconds),
            ),
        )

    store = ClusterStore(
        core_api=core_api,
        custom_api=custom_api,
        rollout_label_key=rollout_label_key,
        namespace=namespace,
        resync_seconds=resync_seconds,
    )
    return StableLabelController(
        store=store,
        rollout_label_key=rollout_label_key,
        stable_label_key=stable_label_key,
        pod_workers=pod_workers,
        rollout_workers=rollout_workers,
        pod_queue=_queue("pods"),
        rollout_queue=_queue("rollouts"),
        cache_sync_timeout_seconds=cache_sync_timeout_seconds or None,
    )
