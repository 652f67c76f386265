from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from reloader.src.metrics import METRICS

K = TypeVar("K", bound=Hashable)


class RateLimitingQueue(Generic[K]):
    """Deduplicating work queue with per-key exponential backoff.

    Guarantees, per key:

    * A key that is queued but not yet handed out is never queued twice;
      repeated ``add`` calls coalesce into one emission.
    * A key that is being processed (handed out by ``get`` and not yet
      ``done``) is never handed to a second worker.  Adding it again marks it
      dirty, and ``done`` puts it straight back on the queue.
    * ``add_rate_limited`` re-adds a key after
      ``min(max_delay, base_delay * 2**failures)`` seconds; ``forget`` resets
      the failure count.

    Delayed keys are kept in a heap and promoted by ``get`` itself, which
    waits on the condition variable until either new work arrives or the
    nearest delay expires.  After ``shut_down`` every ``get`` returns
    ``None`` and ``add`` is a no-op.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock

        self._cond = threading.Condition(threading.Lock())
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        self._waiting: dict[K, float] = {}
        self._delayed: list[tuple[float, int, K]] = []
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: K) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add_after(self, key: K, delay: float) -> None:
        """Add *key* once *delay* seconds have passed; an earlier pending delay wins."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay
            existing = self._waiting.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting[key] = due_at
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            # Wake a waiter so it recomputes its timeout against the new deadline.
            self._cond.notify()

    def add_rate_limited(self, key: K) -> float:
        """Re-add *key* after its backoff delay and return that delay."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.max_delay, self.base_delay * (2**failures))
        METRICS.queue_retries_total.inc()
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: K) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: K) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def get(self) -> K | None:
        """Block until a key is available and return it, or ``None`` on shutdown."""
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_due_locked()
                if self._queue:
                    break
                self._cond.wait(timeout=self._next_delay_locked())

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.set(len(self._queue))
            return key

    def done(self, key: K) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            due_at, _, key = heapq.heappop(self._delayed)
            if self._waiting.get(key) != due_at:
                # Superseded by an earlier add_after for the same key.
                continue
            del self._waiting[key]
            self._add_locked(key)

    def _next_delay_locked(self) -> float | None:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self._clock())
