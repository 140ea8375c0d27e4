from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque

from stablesync.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures`` capped at ``max_delay``.

    Every call to :meth:`when` counts as a failure for that key, so repeated
    insertions of a hot key back off further each time until :meth:`forget`
    resets it.
    """

    def __init__(self, base_delay: float = 0.001, max_delay: float = 10.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # 2**64 * base_delay is far past any sane cap.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    """De-duplicating work queue of string keys with delayed, rate-limited adds.

    Semantics per key:

    - A key is queued at most once.  Adding a key that is already queued is a
      no-op.
    - A key handed out by :meth:`get` is *processing* until :meth:`done` is
      called.  Adding it while processing marks it dirty, and ``done`` puts it
      back on the queue, so a reconciler never runs twice concurrently for the
      same key but still sees every change made while it was busy.
    - :meth:`add_after` parks the key until its ready time on a single
      background thread; the earliest ready time wins for repeated adds.

    Shutdown discards queued and delayed keys.  In-flight keys are allowed to
    finish, and :meth:`shut_down_with_drain` waits for them.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
    ) -> None:
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._delay_cond = threading.Condition(self._lock)
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        # key -> earliest ready time; the heap may hold stale entries for a key.
        self._waiting: dict[str, float] = {}
        self._waiting_heap: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._shutting_down = False
        METRICS.queue_depth.labels(queue=name).set(0)

        self._delay_thread = threading.Thread(
            target=self._waiting_loop, name=f"{name}-delay", daemon=True
        )
        self._delay_thread.start()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def _add_locked(self, item: str) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        METRICS.queue_adds_total.labels(queue=self.name).inc()
        if item in self._processing:
            return
        self._queue.append(item)
        self._update_depth()
        self._cond.notify()

    def add(self, item: str) -> None:
        with self._lock:
            self._add_locked(item)

    def add_after(self, item: str, delay: float) -> None:
        """Make *item* visible after *delay* seconds; ``delay <= 0`` adds immediately."""
        with self._lock:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return

            ready_at = time.monotonic() + delay
            existing = self._waiting.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._waiting_heap, (ready_at, next(self._sequence), item))
            self._delay_cond.notify()

    def add_rate_limited(self, item: str) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: str) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is ready; return ``(key, False)`` or ``(None, True)`` on shutdown."""
        with self._lock:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item, False

    def done(self, item: str) -> None:
        with self._lock:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth()
                self._cond.notify()
            if not self._processing:
                self._cond.notify_all()

    def shut_down(self) -> None:
        """Stop handing out work and drop every key that has not started processing."""
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True
            dropped = len(self._queue) + len(self._waiting)
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._waiting_heap.clear()
            self._update_depth()
            self._cond.notify_all()
            self._delay_cond.notify_all()
        if dropped:
            LOGGER.info("Queue %s shut down, discarded %d pending key(s)", self.name, dropped)

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down, then wait until every in-flight key is marked done.

        Returns ``False`` if *timeout* elapsed with keys still processing.
        """
        self.shut_down()
        with self._lock:
            drained = self._cond.wait_for(lambda: not self._processing, timeout=timeout)
            if not drained:
                LOGGER.warning(
                    "Queue %s drain timed out with %d key(s) still processing",
                    self.name,
                    len(self._processing),
                )
            return drained

    def _waiting_loop(self) -> None:
        with self._lock:
            while not self._shutting_down:
                now = time.monotonic()
                while self._waiting_heap and self._waiting_heap[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting_heap)
                    if self._waiting.get(item) != ready_at:
                        continue
                    del self._waiting[item]
                    self._add_locked(item)

                timeout = self._waiting_heap[0][0] - now if self._waiting_heap else None
                self._delay_cond.wait(timeout=timeout)
