from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from aquarium_operator.src.metrics import METRICS

# Failure counts keep growing past the cap; the exponent does not.
MAX_BACKOFF_EXPONENT = 32


class WorkQueue:
    """Thread-safe queue of reconcile keys with coalescing and per-key exclusivity.

    Semantics:

    - A key is queued at most once.  Adding a key that is already waiting is
      a no-op.
    - A key handed out by :meth:`get` is *processing* until :meth:`done` is
      called.  Adding it meanwhile marks it *dirty*; ``done`` then queues it
      again, so the newest change is never lost and no two workers ever hold
      the same key.
    - :meth:`add_after` parks a key in a delay heap until it is due.
    - :meth:`add_rate_limited` delays by a per-key exponential backoff
      (``base_delay`` doubling up to ``max_delay``) that :meth:`forget`
      resets.

    After :meth:`shutdown`, adds are ignored and :meth:`get` returns None.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock

        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._cond = threading.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.workqueue_depth.set(len(self._queue))
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self.clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self.clock() + delay, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Requeue *key* after its next backoff delay and return that delay."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        exponent = min(attempt - 1, MAX_BACKOFF_EXPONENT)
        delay = min(self.max_delay, self.base_delay * float(2**exponent))
        METRICS.workqueue_retries_total.inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is available and mark it processing.

        Returns None on shutdown or when *timeout* seconds pass without work.
        """
        deadline = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._shutting_down:
                    return None
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    METRICS.workqueue_depth.set(len(self._queue))
                    return key

                wait_for = None
                if self._waiting:
                    wait_for = max(0.0, self._waiting[0][0] - self.clock())
                if deadline is not None:
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.workqueue_depth.set(len(self._queue))
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
