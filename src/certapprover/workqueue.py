"""
Work queue for request keys.

Properties:
    - De-duplicating: a key waiting in the queue is never queued twice
    - Single-flight: a key re-added while a worker processes it is queued
      again only after the worker calls ``done``
    - Delayed adds: ``add_after`` and ``add_rate_limited`` park a key until
      its delay has passed
    - Shutdown: ``get`` returns None once the queue is shut down
"""

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable


class ExponentialBackoff:
    """
    Per-key exponential backoff.

    The n-th consecutive failure of a key is retried after
    ``base * 2**n`` seconds, capped at ``max_delay``.
    """

    def __init__(self, base: float = 0.005, max_delay: float = 1000.0) -> None:
        self.base = base
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        """Record a failure of ``key`` and return the delay before its retry."""
        with self._lock:
            exp = self._failures.get(key, 0)
            self._failures[key] = exp + 1
        # Exponent is capped so the float never overflows
        return min(self.base * 2 ** min(exp, 62), self.max_delay)

    def retries(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)


class WorkQueue:
    """
    Thread-safe queue of keys with de-duplication and delayed adds.

    Usage:
        queue = WorkQueue()
        queue.add(key)

        # in a worker
        key = queue.get()
        try:
            ...
        finally:
            queue.done(key)
    """

    def __init__(
        self,
        backoff: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backoff = backoff or ExponentialBackoff()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue a key unless it is already waiting."""
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue a key after its backoff delay. Returns the delay used."""
        delay = self.backoff.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of a key after it was processed successfully."""
        self.backoff.forget(key)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """
        Take the next key for processing.

        Blocks until a key is ready, the timeout expires, or the queue shuts
        down. Returns None in the last two cases.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None

                now = self._clock()
                self._promote_ready(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - now, 0.0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        """Mark a key as processed; re-queue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready(self, now: float) -> None:
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
