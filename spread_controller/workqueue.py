"""Deduplicating, rate-limited work queue of reconcile keys."""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .config import (
    QUEUE_BASE_DELAY_SECONDS,
    QUEUE_BURST,
    QUEUE_MAX_DELAY_SECONDS,
    QUEUE_QPS,
)

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Token bucket bounding the dispatch rate across all keys.

    Not thread-safe on its own; the work queue only calls it while holding
    its condition lock.
    """

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._last_refill = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    def try_acquire(self) -> Tuple[bool, float]:
        """
        Take one token if available.

        Returns:
            Tuple of (acquired, wait_seconds until a token is available)
        """
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True, 0.0
        if self.rate <= 0:
            return False, float("inf")
        return False, (1 - self._tokens) / self.rate


class WorkQueue:
    """
    Queue of reconcile keys with coalescing, single-flight and backoff.

    A key is in at most one of: queued, waiting (delayed), processing. A key
    enqueued while processing is marked dirty and re-queued once, when the
    worker calls ``mark_done``.
    """

    def __init__(
        self,
        base_delay: float = QUEUE_BASE_DELAY_SECONDS,
        max_delay: float = QUEUE_MAX_DELAY_SECONDS,
        qps: float = QUEUE_QPS,
        burst: int = QUEUE_BURST,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._bucket = TokenBucket(qps, burst, clock)

        self._cond = threading.Condition(threading.Lock())
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._waiting_keys: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._waiting_keys.pop(key, None)
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def enqueue(self, key: str) -> None:
        """Add a key, or mark it dirty if it is being processed."""
        with self._cond:
            self._add_locked(key)

    def enqueue_after(self, key: str, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.enqueue(key)
            return
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            ready_at = self._clock() + delay
            current = self._waiting_keys.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting_keys[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify()

    def _promote_ready_locked(self) -> Optional[float]:
        """Move due delayed keys to the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._waiting_keys.get(key) != ready_at:
                # superseded by an earlier schedule or a direct enqueue
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            self._waiting_keys.pop(key, None)
            self._add_locked(key)
        return None

    def dequeue(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Block until a key is available and hand it to the caller.

        Args:
            timeout: Give up after this many seconds (None waits forever)

        Returns:
            The key, or None on timeout or after shutdown
        """
        deadline = None if timeout is None else self._clock() + timeout

        with self._cond:
            while True:
                if self._shutting_down:
                    return None

                next_ready = self._promote_ready_locked()
                wait: Optional[float] = next_ready

                if self._queue:
                    acquired, token_wait = self._bucket.try_acquire()
                    if acquired:
                        key = self._queue.popleft()
                        self._processing.add(key)
                        self._dirty.discard(key)
                        return key
                    wait = token_wait if wait is None else min(wait, token_wait)

                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)

                self._cond.wait(wait)

    def mark_done(self, key: str) -> None:
        """Finish processing a key; re-queue it once if it was marked dirty."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def mark_failed(self, key: str) -> float:
        """
        Finish processing a failed key and schedule it after its backoff.

        Returns:
            The backoff delay applied
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        self.mark_done(key)
        self.enqueue_after(key, delay)
        logger.debug(f"Requeue {key} in {delay:.2f}s (failure #{failures + 1})")
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff of a key."""
        with self._cond:
            self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def is_processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def is_pending(self, key: str) -> bool:
        """True if the key is queued, dirty or waiting out a delay."""
        with self._cond:
            return key in self._dirty or key in self._waiting_keys

    def shutdown(self) -> int:
        """
        Stop dispatching. Queued and delayed keys are dropped.

        Returns:
            Number of keys drained without dispatch
        """
        with self._cond:
            self._shutting_down = True
            drained = len(self._queue) + len(self._waiting_keys)
            self._queue.clear()
            self._waiting.clear()
            self._waiting_keys.clear()
            self._dirty.clear()
            self._cond.notify_all()
        if drained:
            logger.info(f"Work queue shut down, dropped {drained} pending key(s)")
        return drained
