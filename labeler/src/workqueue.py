from __future__ import annotations

import heapq
import threading
import time
from collections.abc import Callable, Hashable

from labeler.src.metrics import METRICS


class ReconcileQueue:
    """Thread-safe, de-duplicating queue of keys waiting to be reconciled.

    Semantics follow the client-go work queue the watch streams feed into:

    - A key waiting in the queue is held once, however often it is added.
    - A key handed out by :meth:`get` is not handed out again until
      :meth:`done` is called for it; adds in the meantime mark it dirty and it
      is re-queued by :meth:`done`.
    - :meth:`retry` re-adds a key after a per-key exponential delay
      (1 s, 2 s, 4 s ... capped at ``max_backoff_seconds``) until
      :meth:`forget` clears its failure count and any retry still scheduled.
    """

    def __init__(
        self,
        max_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: list[Hashable] = []
        self._queued: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._sequence = 0
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._ready) + len(self._delayed))

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if key in self._processing:
                self._dirty.add(key)
                return
            if key in self._queued:
                return
            self._queued.add(key)
            self._ready.append(key)
            self._update_depth()
            self._cond.notify()

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            self._sequence += 1
            heapq.heappush(self._delayed, (self._clock() + delay_seconds, self._sequence, key))
            self._update_depth()
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due delayed keys to the ready list; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            if key in self._processing:
                self._dirty.add(key)
            elif key not in self._queued:
                self._queued.add(key)
                self._ready.append(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block for the next ready key; None on timeout or shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due()
                if self._ready:
                    key = self._ready.pop(0)
                    self._queued.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if not self._shutting_down and key not in self._queued:
                    self._queued.add(key)
                    self._ready.append(key)
                    self._update_depth()
                    self._cond.notify()

    def retry(self, key: Hashable) -> float:
        """Schedule *key* again after its backoff delay and return that delay."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        delay_seconds = min(self.max_backoff_seconds, float(2 ** min(attempt - 1, 16)))
        METRICS.retry_total.inc()
        self.add_after(key, delay_seconds)
        return delay_seconds

    def forget(self, key: Hashable) -> None:
        """Clear *key*'s failure count and drop retries still scheduled for it."""
        with self._cond:
            self._failures.pop(key, None)
            pending = [entry for entry in self._delayed if entry[2] != key]
            if len(pending) != len(self._delayed):
                heapq.heapify(pending)
                self._delayed = pending
                self._update_depth()

    def failures(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._ready.clear()
            self._queued.clear()
            self._delayed.clear()
            self._update_depth()
            self._cond.notify_all()
