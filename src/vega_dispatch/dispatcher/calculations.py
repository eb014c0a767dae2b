"""Calculation reconciler: phase bookkeeping and binding unassigned jobs to idle workers."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from vega_dispatch.calculations import is_finished
from vega_dispatch.dispatcher.policy import NoCapacityPolicy
from vega_dispatch.errors import NoCapacityError, NotFoundError, WorkerUnavailableError
from vega_dispatch.metrics import CalculationGauge
from vega_dispatch.models import (
    ASSIGN_LABEL,
    BULK_LABEL,
    BULK_MEMBER_LABEL,
    FACTORY_LABEL,
    POST_CALCULATION_LABEL,
    ROLE_LABEL,
    WORKER_ROLE,
    Calculation,
    CalculationBulkFactory,
    CalculationPhase,
    Condition,
    EventType,
    WorkerPool,
    WorkerProcess,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, update_with_retry
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import (
    finalize_calculation,
    find_worker_by_name,
    mirror_member_phase,
    mirror_post_phase,
    release_worker,
    reserve_worker,
)

logger = logging.getLogger(__name__)

_NON_TERMINAL = (CalculationPhase.CREATED, CalculationPhase.PROCESSING)


class CalculationReconciler:
    """Keep one calculation's phase, owners and worker binding consistent."""

    name: ClassVar[str] = "calculations"
    kind: ClassVar[type[Calculation]] = Calculation
    events: ClassVar[frozenset[EventType]] = frozenset({EventType.ADDED, EventType.MODIFIED})

    def __init__(
        self,
        store: ObjectStore,
        *,
        namespace: str,
        gauge: CalculationGauge | None = None,
        no_capacity: NoCapacityPolicy | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.gauge = gauge or CalculationGauge()
        self.no_capacity = no_capacity or NoCapacityPolicy()
        self.retry_policy = retry_policy

    def matches(self, obj: Any) -> bool:
        return obj.meta.namespace == self.namespace

    def reconcile(self, namespace: str, name: str) -> None:
        calculation = self.store.get(Calculation, namespace=namespace, name=name)
        self.gauge.record(calculation)

        if calculation.phase == CalculationPhase.PROCESSING and is_finished(calculation.steps):
            calculation = finalize_calculation(
                self.store,
                namespace=namespace,
                name=name,
                policy=self.retry_policy,
            )
            self.gauge.record(calculation)

        try:
            self._mirror_to_owners(calculation)
        except NotFoundError as error:
            logger.warning("Owner of calculation %s/%s is gone: %s", namespace, name, error)

        if calculation.phase == CalculationPhase.CREATED and not calculation.assign:
            self._assign(calculation)

    def _mirror_to_owners(self, calculation: Calculation) -> None:
        labels = calculation.meta.labels
        namespace = calculation.meta.namespace

        factory_name = labels.get(FACTORY_LABEL)
        if factory_name and calculation.phase.is_terminal:
            self._complete_factory(calculation, factory_name)

        bulk_name = labels.get(BULK_LABEL)
        if not bulk_name or calculation.phase == CalculationPhase.UNSCHEDULED:
            return
        if POST_CALCULATION_LABEL in labels:
            mirror_post_phase(
                self.store,
                namespace=namespace,
                bulk_name=bulk_name,
                phase=calculation.phase,
                policy=self.retry_policy,
            )
            return
        member = labels.get(BULK_MEMBER_LABEL)
        if member:
            mirror_member_phase(
                self.store,
                namespace=namespace,
                bulk_name=bulk_name,
                member=member,
                phase=calculation.phase,
                policy=self.retry_policy,
            )

    def _complete_factory(self, calculation: Calculation, factory_name: str) -> None:
        succeeded = calculation.phase == CalculationPhase.COMPLETED

        def _mutate(factory: CalculationBulkFactory) -> bool:
            if factory.status.completion_time is not None:
                return False
            now = utc_now()
            factory.status.completion_time = calculation.status.completion_time or now
            factory.status.conditions.append(
                Condition(
                    type="Available" if succeeded else "Unavailable",
                    status="True" if succeeded else "False",
                    reason="Completed" if succeeded else "Failed",
                    message=f"Generation calculation {calculation.meta.name} "
                    f"{calculation.phase.value.lower()}",
                    last_transition_time=now,
                ),
            )
            return True

        update_with_retry(
            self.store,
            CalculationBulkFactory,
            namespace=calculation.meta.namespace,
            name=factory_name,
            mutate=_mutate,
            policy=self.retry_policy,
        )

    def _assign(self, calculation: Calculation) -> None:
        namespace = calculation.meta.namespace
        busy = {
            job.assign
            for phase in _NON_TERMINAL
            for job in self.store.list(Calculation, namespace=namespace, phase=phase)
            if job.assign
        }
        processes = self.store.list(
            WorkerProcess,
            namespace=namespace,
            labels={ROLE_LABEL: WORKER_ROLE},
        )
        free = sorted(process.meta.name for process in processes if process.meta.name not in busy)

        for worker_name in free:
            if self._bind(calculation, worker_name):
                return

        if self.no_capacity.requeues:
            raise NoCapacityError(
                f"No free worker for calculation {namespace}/{calculation.meta.name}",
            )
        logger.info(
            "No free worker for calculation %s/%s, leaving it unassigned",
            namespace,
            calculation.meta.name,
        )

    def _bind(self, calculation: Calculation, worker_name: str) -> bool:
        namespace = calculation.meta.namespace
        reserved_node: str | None = None
        if calculation.worker_pool:
            reserved_node = self._reserve_in_pool(calculation, worker_name)
            if reserved_node is None:
                return False

        bound = False

        def _mutate(current: Calculation) -> bool:
            nonlocal bound
            bound = False
            if current.assign or current.phase != CalculationPhase.CREATED:
                return False
            current.assign = worker_name
            current.meta.labels[ASSIGN_LABEL] = worker_name
            bound = True
            return True

        try:
            update_with_retry(
                self.store,
                Calculation,
                namespace=namespace,
                name=calculation.meta.name,
                mutate=_mutate,
                policy=self.retry_policy,
            )
        except Exception:
            self._release(calculation, reserved_node)
            raise
        if not bound:
            self._release(calculation, reserved_node)
            return True
        logger.info(
            "Assigned calculation %s/%s to %s",
            namespace,
            calculation.meta.name,
            worker_name,
        )
        return True

    def _reserve_in_pool(self, calculation: Calculation, worker_name: str) -> str | None:
        namespace = calculation.meta.namespace
        try:
            pool = self.store.get(WorkerPool, namespace=namespace, name=calculation.worker_pool)
        except NotFoundError:
            logger.warning(
                "Calculation %s/%s targets missing pool %s",
                namespace,
                calculation.meta.name,
                calculation.worker_pool,
            )
            return None
        worker = find_worker_by_name(pool, worker_name)
        if worker is None:
            logger.debug("Worker %s is not part of pool %s", worker_name, calculation.worker_pool)
            return None
        try:
            reserve_worker(
                self.store,
                namespace=namespace,
                pool_name=calculation.worker_pool,
                node=worker.node,
                policy=self.retry_policy,
            )
        except WorkerUnavailableError as error:
            logger.debug("Skipping worker %s: %s", worker_name, error)
            return None
        return worker.node

    def _release(self, calculation: Calculation, node: str | None) -> None:
        if node is None:
            return
        release_worker(
            self.store,
            namespace=calculation.meta.namespace,
            pool_name=calculation.worker_pool,
            node=node,
            policy=self.retry_policy,
        )
