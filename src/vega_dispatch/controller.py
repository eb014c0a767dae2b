"""Glue between an informer, a task queue and a reconciler."""

from __future__ import annotations

import logging
import threading
from typing import Any, ClassVar, Protocol

from vega_dispatch.informer import EventHandler, Informer
from vega_dispatch.models import EventType, StoredEntity
from vega_dispatch.taskqueue import ExponentialRateLimiter, TaskQueue, split_key

logger = logging.getLogger(__name__)


class Reconciler(Protocol):
    """A control loop body: converge one object identified by namespace/name."""

    name: ClassVar[str]
    kind: ClassVar[type[StoredEntity]]
    events: ClassVar[frozenset[EventType]]

    def matches(self, obj: Any) -> bool: ...

    def reconcile(self, namespace: str, name: str) -> None: ...


class Controller:
    """Runs one reconciler: informer events feed its own queue, worker threads drain it."""

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        max_concurrent_reconciles: int = 1,
        rate_limiter: ExponentialRateLimiter | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.max_concurrent_reconciles = max(1, max_concurrent_reconciles)
        self.task_queue = TaskQueue(reconciler.name, self._sync, rate_limiter=rate_limiter)
        self._threads: list[threading.Thread] = []

    @property
    def name(self) -> str:
        return self.reconciler.name

    def watch(self, informer: Informer) -> None:
        events = self.reconciler.events
        informer.add_handler(
            EventHandler(
                on_add=self.task_queue.enqueue if EventType.ADDED in events else None,
                on_update=self.task_queue.enqueue if EventType.MODIFIED in events else None,
                on_delete=self.task_queue.enqueue if EventType.DELETED in events else None,
                predicate=self.reconciler.matches,
            ),
        )

    def start(self) -> None:
        for index in range(self.max_concurrent_reconciles):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %s controller with %d worker(s)", self.name, len(self._threads))

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop taking new keys, let workers drain what is queued, then join them."""

        self.task_queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        logger.info("Stopped %s controller", self.name)

    def _run_worker(self) -> None:
        try:
            self.task_queue.run_worker()
        except Exception:  # pragma: no cover - run_worker handles sync errors itself
            logger.exception("%s worker loop crashed", self.name)

    def _sync(self, key: str) -> None:
        namespace, name = split_key(key)
        logger.debug("%s: reconciling %s", self.name, key)
        self.reconciler.reconcile(namespace, name)
