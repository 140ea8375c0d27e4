from __future__ import annotations

import logging
import time

from stablesync.src.metrics import METRICS
from stablesync.src.model import split_key
from stablesync.src.store import ClusterStore, NotFoundError
from stablesync.src.workqueue import RateLimitingQueue


class QueueWorker:
    """Drains one work queue, calling :meth:`reconcile` for each key.

    Successful keys have their backoff counter reset; failed keys are re-added
    with backoff; malformed keys are logged and dropped.  No exception escapes
    a single iteration, so a bad key can never stop the loop.
    """

    kind = "object"

    def __init__(self, queue: RateLimitingQueue, logger: logging.Logger | None = None) -> None:
        self.queue = queue
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, namespace: str, name: str) -> object:
        raise NotImplementedError

    def process_next_work_item(self) -> bool:
        """Process one key.  Returns ``False`` once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            self.logger.info("Shutting down %s worker", self.kind)
            return False

        started = time.monotonic()
        try:
            try:
                namespace, name = split_key(key)
            except ValueError:
                self.logger.error("Dropping malformed %s key %r", self.kind, key)
                self.queue.forget(key)
                METRICS.dropped_keys_total.labels(queue=self.queue.name).inc()
                return True

            self.logger.debug("Processing %s: %s", self.kind, key)
            try:
                self.reconcile(namespace, name)
            except Exception:
                self.logger.exception(
                    "Failed to reconcile %s %s; re-queueing with backoff", self.kind, key
                )
                METRICS.reconciles_total.labels(kind=self.kind, result="error").inc()
                METRICS.queue_retries_total.labels(queue=self.queue.name).inc()
                self.queue.add_rate_limited(key)
                return True

            METRICS.reconciles_total.labels(kind=self.kind, result="success").inc()
            self.queue.forget(key)
            return True
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=self.kind).observe(
                time.monotonic() - started
            )
            self.queue.done(key)

    def run(self) -> None:
        self.logger.info("Starting %s worker", self.kind)
        while self.process_next_work_item():
            pass


class PodReconciler(QueueWorker):
    """Single writer of the stable-version label on pods.

    Always re-reads the pod and its rollout from the store, so any number of
    coalesced notifications for a pod collapse into one pass against current
    state.
    """

    kind = "pod"

    def __init__(
        self,
        queue: RateLimitingQueue,
        store: ClusterStore,
        rollout_label_key: str,
        stable_label_key: str,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(queue=queue, logger=logger)
        self.store = store
        self.rollout_label_key = rollout_label_key
        self.stable_label_key = stable_label_key

    def reconcile(self, namespace: str, name: str) -> bool:
        return self.process_pod(namespace, name)

    def needs_update(self, labels: dict[str, str], stable_rs: str) -> bool:
        """Return True if the stable-version label is missing or differs from *stable_rs*."""
        if self.stable_label_key not in labels:
            return True
        return labels[self.stable_label_key] != stable_rs

    def process_pod(self, namespace: str, name: str) -> bool:
        """Bring one pod's stable-version label in line with its rollout.

        Returns True if a patch was issued.  Missing pods, pods without an
        association label and pods pointing at a missing rollout are all
        successful no-ops.  An empty stableRS is mirrored like any other
        value.  Patch conflicts and transient failures propagate.
        """
        try:
            pod = self.store.get_pod(namespace, name)
        except NotFoundError:
            self.logger.info("Pod %s/%s not found, likely deleted; skipping", namespace, name)
            return False

        rollout_name = pod.labels.get(self.rollout_label_key)
        if not rollout_name:
            self.logger.debug("Pod %s/%s has no rollout label; skipping", namespace, name)
            return False

        try:
            rollout = self.store.get_rollout(namespace, rollout_name)
        except NotFoundError:
            self.logger.info(
                "Rollout %s/%s referenced by pod %s/%s not found; skipping",
                namespace,
                rollout_name,
                namespace,
                name,
            )
            return False

        if not self.needs_update(dict(pod.labels), rollout.stable_rs):
            return False

        self.logger.info(
            "Updating pod %s/%s label %s to %s",
            namespace,
            name,
            self.stable_label_key,
            rollout.stable_rs,
        )
        try:
            self.store.patch_pod_label(namespace, name, self.stable_label_key, rollout.stable_rs)
        except NotFoundError:
            self.logger.info("Pod %s/%s deleted before it could be patched", namespace, name)
            return False
        METRICS.label_patches_total.inc()
        return True


class RolloutReconciler(QueueWorker):
    """Fans a rollout change out to the pod queue.

    Never reads ``stable_rs`` and never patches anything; the pod
    reconciler fetches the current value itself when each pod is processed.
    """

    kind = "rollout"

    def __init__(
        self,
        queue: RateLimitingQueue,
        pod_queue: RateLimitingQueue,
        store: ClusterStore,
        rollout_label_key: str,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(queue=queue, logger=logger)
        self.pod_queue = pod_queue
        self.store = store
        self.rollout_label_key = rollout_label_key

    def reconcile(self, namespace: str, name: str) -> int:
        return self.process_rollout(namespace, name)

    def process_rollout(self, namespace: str, name: str) -> int:
        """Enqueue every pod associated with rollout *name*; return how many were enqueued."""
        pods = self.store.list_pods(namespace, {self.rollout_label_key: name})
        for pod in pods:
            self.pod_queue.add_rate_limited(pod.key)
        self.logger.debug(
            "Rollout %s/%s enqueued %d pod(s)", namespace, name, len(pods)
        )
        return len(pods)
