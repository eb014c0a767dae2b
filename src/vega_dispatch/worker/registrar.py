"""Worker-pool registrar: advertise this node's slot and keep its lease alive."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from vega_dispatch.errors import AlreadyExistsError, NotFoundError
from vega_dispatch.models import (
    ASSIGN_LABEL,
    ROLE_LABEL,
    WORKER_ROLE,
    Calculation,
    CalculationPhase,
    ObjectMeta,
    Worker,
    WorkerPool,
    WorkerProcess,
    WorkerState,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, retry_on_conflict, update_with_retry
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)


class WorkerPoolRegistrar:
    """Sole writer of "I am alive and idle" for one node.

    Each heartbeat upserts the node's Worker entry and refreshes its
    WorkerProcess record. The entry is forced back to Available unless the node
    still has an in-flight job, either one the local agent holds or one
    assigned to it in the store.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: ObjectStore,
        *,
        namespace: str,
        pool_name: str,
        node_name: str,
        hostname: str,
        is_busy: Callable[[], bool] | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.pool_name = pool_name
        self.node_name = node_name
        self.hostname = hostname
        self.is_busy = is_busy or (lambda: False)
        self.retry_policy = retry_policy
        self._idle_reservation_seen = False

    def register_once(self) -> Worker:
        """One heartbeat: upsert the pool entry, then refresh the process lease."""

        busy = self.is_busy() or self._has_assigned_work()
        pool = retry_on_conflict(lambda: self._upsert_pool(busy=busy), policy=self.retry_policy)
        worker = pool.workers[self.node_name]
        self._idle_reservation_seen = not busy and worker.state == WorkerState.RESERVED
        self._refresh_process()
        return worker

    def run(self, stop_event: threading.Event, interval_seconds: float) -> None:
        while not stop_event.is_set():
            try:
                self.register_once()
            except Exception:
                logger.exception(
                    "Heartbeat for %s in pool %s failed",
                    self.hostname,
                    self.pool_name,
                )
            stop_event.wait(interval_seconds)

    def deregister(self) -> None:
        """Remove this node's process record, e.g. on graceful shutdown."""

        try:
            self.store.delete(WorkerProcess, namespace=self.namespace, name=self.hostname)
        except NotFoundError:
            return
        logger.info("Worker process %s deregistered", self.hostname)

    def remove_from_pool(self) -> None:
        def _mutate(pool: WorkerPool) -> bool:
            return pool.workers.pop(self.node_name, None) is not None

        try:
            update_with_retry(
                self.store,
                WorkerPool,
                namespace=self.namespace,
                name=self.pool_name,
                mutate=_mutate,
                policy=self.retry_policy,
            )
        except NotFoundError:
            return
        logger.info("Node %s removed from pool %s", self.node_name, self.pool_name)

    def _upsert_pool(self, *, busy: bool) -> WorkerPool:
        now = utc_now()
        try:
            pool = self.store.get(WorkerPool, namespace=self.namespace, name=self.pool_name)
        except NotFoundError:
            pool = WorkerPool(meta=ObjectMeta(name=self.pool_name, namespace=self.namespace))
            pool.workers[self.node_name] = self._new_worker(now)
            try:
                created = self.store.create(pool)
            except AlreadyExistsError:
                pool = self.store.get(WorkerPool, namespace=self.namespace, name=self.pool_name)
            else:
                logger.info("Created pool %s with node %s", self.pool_name, self.node_name)
                return created

        worker = pool.workers.get(self.node_name)
        if worker is None:
            pool.workers[self.node_name] = self._new_worker(now)
            logger.info("Registered node %s in pool %s", self.node_name, self.pool_name)
        else:
            worker.name = self.hostname
            worker.last_update_time = now
            if not busy:
                worker.state = self._idle_state(worker.state)
        return self.store.update(pool)

    def _new_worker(self, now: datetime) -> Worker:
        return Worker(
            name=self.hostname,
            node=self.node_name,
            registered_time=now,
            last_update_time=now,
            state=WorkerState.AVAILABLE,
        )

    def _idle_state(self, state: WorkerState) -> WorkerState:
        # A reservation gets one heartbeat to turn into an assigned calculation.
        if state == WorkerState.RESERVED and not self._idle_reservation_seen:
            return state
        return WorkerState.AVAILABLE

    def _has_assigned_work(self) -> bool:
        assigned = self.store.list(
            Calculation,
            namespace=self.namespace,
            labels={ASSIGN_LABEL: self.hostname},
        )
        return any(
            calculation.phase in (CalculationPhase.CREATED, CalculationPhase.PROCESSING)
            for calculation in assigned
        )

    def _refresh_process(self) -> None:
        now = utc_now()

        def _mutate(process: WorkerProcess) -> None:
            process.node = self.node_name
            process.pool = self.pool_name
            process.heartbeat_at = now
            process.meta.labels[ROLE_LABEL] = WORKER_ROLE

        try:
            update_with_retry(
                self.store,
                WorkerProcess,
                namespace=self.namespace,
                name=self.hostname,
                mutate=_mutate,
                policy=self.retry_policy,
            )
            return
        except NotFoundError:
            pass
        try:
            self.store.create(
                WorkerProcess(
                    meta=ObjectMeta(
                        name=self.hostname,
                        namespace=self.namespace,
                        labels={ROLE_LABEL: WORKER_ROLE},
                    ),
                    node=self.node_name,
                    pool=self.pool_name,
                    started_at=now,
                    heartbeat_at=now,
                ),
            )
        except AlreadyExistsError:
            logger.debug("Worker process %s registered concurrently", self.hostname)
        else:
            logger.info("Worker process %s started", self.hostname)
