from __future__ import annotations

import logging
from collections.abc import Iterable

from stablesync.src.metrics import METRICS
from stablesync.src.model import ChangeEvent, ChangeKind, ObjectKind, Rollout
from stablesync.src.workqueue import RateLimitingQueue


class ChangeFeedAdapter:
    """Turns store change notifications into rate-limited queue insertions.

    Only queues are touched here; reconciliation happens in the workers.
    Deletions are logged and otherwise ignored: a deleted pod needs no label,
    and pods of a deleted rollout resolve to a lookup miss in the pod
    reconciler.
    """

    def __init__(
        self,
        events: Iterable[ChangeEvent],
        pod_queue: RateLimitingQueue,
        rollout_queue: RateLimitingQueue,
        logger: logging.Logger | None = None,
    ) -> None:
        self.events = events
        self.pod_queue = pod_queue
        self.rollout_queue = rollout_queue
        self.logger = logger or logging.getLogger(__name__)

    def handle_event(self, event: ChangeEvent) -> None:
        METRICS.feed_events_total.labels(kind=event.kind.value, change=event.change.value).inc()

        if event.change is ChangeKind.DELETED:
            if event.kind is ObjectKind.ROLLOUT and isinstance(event.obj, Rollout):
                self.logger.info(
                    "Rollout deleted: %s (stableRS %s)", event.key, event.obj.stable_rs or "<none>"
                )
            else:
                self.logger.info("%s deleted: %s", event.kind.value.capitalize(), event.key)
            return

        if event.kind is ObjectKind.POD:
            self.pod_queue.add_rate_limited(event.key)
        else:
            self.rollout_queue.add_rate_limited(event.key)

    def run(self) -> None:
        """Consume the event stream until it ends."""
        self.logger.info("Starting change feed")
        for event in self.events:
            try:
                self.handle_event(event)
            except Exception:
                self.logger.exception("Failed to handle %s event for %s", event.kind.value, event.key)
        self.logger.info("Change feed closed")
