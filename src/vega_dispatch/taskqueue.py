"""De-duplicating, rate-limited work queue and the reconcile loop built on it."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from vega_dispatch.errors import NotFoundError
from vega_dispatch.models import StoredEntity

logger = logging.getLogger(__name__)


def object_key(obj: StoredEntity) -> str:
    """Stable queue key: ``namespace/name``."""

    return f"{obj.meta.namespace}/{obj.meta.name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, separator, name = key.partition("/")
    if not separator or not namespace or not name:
        raise ValueError(f"Malformed object key: {key!r}")
    return namespace, name


class ExponentialRateLimiter:
    """Per-key exponential backoff: ``base * 2**failures``, capped at ``max``."""

    def __init__(
        self,
        *,
        base_delay_seconds: float = 0.005,
        max_delay_seconds: float = 1000.0,
    ) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.max_delay_seconds, self.base_delay_seconds * (2**failures))

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class RateLimitingQueue:
    """Work queue with the usual controller guarantees.

    * A key waiting in the queue is stored once, however often it is added.
    * A key is never handed to two workers at the same time; adding it while it
      is being processed re-queues it when ``done`` is called.
    * ``add_rate_limited`` delays the key by the rate limiter's backoff.
    * After ``shut_down`` new keys and pending delayed keys are dropped, already
      queued keys are still handed out, then ``get`` returns None.
    """

    def __init__(
        self,
        *,
        rate_limiter: ExponentialRateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or ExponentialRateLimiter()
        self._clock = clock
        self._condition = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._condition:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._condition:
            return self._shutting_down

    def add(self, key: str) -> None:
        with self._condition:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key: str, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._condition:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay_seconds
            current = self._waiting_ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._condition.notify_all()

    def add_rate_limited(self, key: str) -> float:
        """Schedule a retry of ``key``; returns the delay that was applied."""

        delay = self.rate_limiter.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        self.rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.rate_limiter.num_requeues(key)

    def get(self, timeout: float | None = None) -> str | None:
        """Block for the next key; None on shutdown (queue drained) or timeout."""

        deadline = None if timeout is None else self._clock() + timeout
        with self._condition:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                now = self._clock()
                wait: float | None = None
                if self._waiting:
                    wait = max(0.0, self._waiting[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._condition.wait(wait)

    def done(self, key: str) -> None:
        with self._condition:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
            self._condition.notify_all()

    def shut_down(self) -> None:
        with self._condition:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._condition.notify_all()

    def wait_until_drained(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: not self._queue and not self._processing,
                timeout=timeout,
            )

    def _add_locked(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._condition.notify()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            if self._waiting_ready_at.get(key) != ready_at:
                continue
            del self._waiting_ready_at[key]
            self._add_locked(key)


class TaskQueue:
    """Reconcile loop: pull a key, call ``sync``, classify the outcome.

    Success and ``NotFoundError`` forget the key's backoff history; any other
    exception re-adds the key with exponential backoff.
    """

    def __init__(
        self,
        name: str,
        sync: Callable[[str], None],
        *,
        rate_limiter: ExponentialRateLimiter | None = None,
    ) -> None:
        self.name = name
        self.sync = sync
        self.queue = RateLimitingQueue(rate_limiter=rate_limiter)

    def enqueue(self, obj: StoredEntity) -> None:
        self.queue.add(object_key(obj))

    def enqueue_key(self, key: str) -> None:
        self.queue.add(key)

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Handle one key; False when the queue is shut down (or ``timeout`` elapsed)."""

        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self.sync(key)
        except NotFoundError as error:
            logger.info("%s: %s no longer exists, dropping key (%s)", self.name, key, error)
            self.queue.forget(key)
        except Exception:
            delay = self.queue.add_rate_limited(key)
            logger.exception("%s: failed to sync %s, retrying in %.3fs", self.name, key, delay)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def shutdown(self) -> None:
        self.queue.shut_down()
