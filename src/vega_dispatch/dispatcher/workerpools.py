"""Worker-pool reconciler: pull the next pending bulk member onto an idle slot."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from vega_dispatch.calculations import (
    bulk_member_calculation,
    first_available_worker,
    unscheduled_members,
)
from vega_dispatch.errors import AlreadyExistsError, NotFoundError, WorkerUnavailableError
from vega_dispatch.models import (
    ASSIGN_LABEL,
    BulkState,
    Calculation,
    CalculationBulk,
    CalculationPhase,
    EventType,
    Worker,
    WorkerPool,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import mirror_member_phase, release_worker, reserve_worker

logger = logging.getLogger(__name__)


class WorkerPoolReconciler:
    """Assign at most one pending bulk member per pass to the longest-idle worker."""

    name: ClassVar[str] = "workerpools"
    kind: ClassVar[type[WorkerPool]] = WorkerPool
    events: ClassVar[frozenset[EventType]] = frozenset({EventType.ADDED, EventType.MODIFIED})

    def __init__(
        self,
        store: ObjectStore,
        *,
        namespace: str,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.retry_policy = retry_policy

    def matches(self, obj: Any) -> bool:
        return obj.meta.namespace == self.namespace

    def reconcile(self, namespace: str, name: str) -> None:
        try:
            pool = self.store.get(WorkerPool, namespace=namespace, name=name)
        except NotFoundError:
            logger.debug("Worker pool %s/%s is gone", namespace, name)
            return

        worker = first_available_worker(pool.workers.values())
        if worker is None:
            logger.debug("No available worker in pool %s/%s", namespace, name)
            return

        target = self._next_pending(pool)
        if target is None:
            return
        bulk, key = target
        self._assign(pool, worker, bulk, key)

    def _next_pending(self, pool: WorkerPool) -> tuple[CalculationBulk, str] | None:
        """Oldest bulk for this pool that still has an unscheduled member, and that member."""

        bulks = [
            bulk
            for bulk in self.store.list(CalculationBulk, namespace=pool.meta.namespace)
            if bulk.worker_pool in ("", pool.meta.name)
            and bulk.status.state != BulkState.COMPLETED
        ]
        bulks.sort(key=_creation_order)
        for bulk in bulks:
            pending = unscheduled_members(bulk)
            if pending:
                return bulk, pending[0]
        return None

    def _assign(self, pool: WorkerPool, worker: Worker, bulk: CalculationBulk, key: str) -> None:
        namespace = pool.meta.namespace
        try:
            reserve_worker(
                self.store,
                namespace=namespace,
                pool_name=pool.meta.name,
                node=worker.node,
                policy=self.retry_policy,
            )
        except WorkerUnavailableError as error:
            logger.debug("Lost worker %s before assigning: %s", worker.name, error)
            return

        calculation = bulk_member_calculation(bulk, key)
        phase = CalculationPhase.CREATED
        only_from: tuple[CalculationPhase, ...] | None = (CalculationPhase.UNSCHEDULED,)
        calculation.worker_pool = pool.meta.name
        calculation.assign = worker.name
        calculation.meta.labels[ASSIGN_LABEL] = worker.name
        try:
            self.store.create(calculation)
        except AlreadyExistsError:
            logger.info(
                "Calculation %s for %s/%s[%s] already exists, releasing %s",
                calculation.meta.name,
                namespace,
                bulk.meta.name,
                key,
                worker.name,
            )
            self._release(pool, worker)
            phase = self._existing_phase(calculation)
            only_from = None
        except Exception:
            self._release(pool, worker)
            raise
        else:
            logger.info(
                "Assigned %s/%s[%s] as %s to worker %s",
                namespace,
                bulk.meta.name,
                key,
                calculation.meta.name,
                worker.name,
            )

        mirror_member_phase(
            self.store,
            namespace=namespace,
            bulk_name=bulk.meta.name,
            member=key,
            phase=phase,
            policy=self.retry_policy,
            only_from=only_from,
        )

    def _existing_phase(self, calculation: Calculation) -> CalculationPhase:
        try:
            existing = self.store.get(
                Calculation,
                namespace=calculation.meta.namespace,
                name=calculation.meta.name,
            )
        except NotFoundError:
            return CalculationPhase.UNSCHEDULED
        return existing.phase

    def _release(self, pool: WorkerPool, worker: Worker) -> None:
        release_worker(
            self.store,
            namespace=pool.meta.namespace,
            pool_name=pool.meta.name,
            node=worker.node,
            policy=self.retry_policy,
        )


def _creation_order(bulk: CalculationBulk) -> tuple[str, str]:
    created = bulk.meta.created_at.isoformat() if bulk.meta.created_at is not None else ""
    return created, bulk.meta.name
