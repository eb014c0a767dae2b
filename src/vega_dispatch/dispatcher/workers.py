"""Worker liveness: recover in-flight jobs of vanished worker processes."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, ClassVar

from vega_dispatch.errors import ConflictError, NotFoundError
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
    WorkerState,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, retry_on_conflict, update_with_retry
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import mirror_member_phase, mirror_post_phase

logger = logging.getLogger(__name__)

_NON_TERMINAL = (CalculationPhase.CREATED, CalculationPhase.PROCESSING)


class WorkerLivenessReconciler:
    """Turn the jobs of a worker process that disappeared back into unscheduled work.

    Nothing happens while the process record exists. Once it is gone:

    1. every pool entry named after the process becomes Unknown;
    2. its Created/Processing calculations are deleted;
    3. bulk members and post calculations of deleted jobs are reset to
       unscheduled, and factory generation jobs get a ``WorkerLost`` condition
       so the factory emits them again.
    """

    name: ClassVar[str] = "workers"
    kind: ClassVar[type[WorkerProcess]] = WorkerProcess
    events: ClassVar[frozenset[EventType]] = frozenset(
        {EventType.ADDED, EventType.MODIFIED, EventType.DELETED},
    )

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
        return (
            obj.meta.namespace == self.namespace
            and obj.meta.labels.get(ROLE_LABEL) == WORKER_ROLE
        )

    def reconcile(self, namespace: str, name: str) -> None:
        try:
            self.store.get(WorkerProcess, namespace=namespace, name=name)
        except NotFoundError:
            logger.warning("Worker process %s/%s is gone, recovering its work", namespace, name)
            self.recover(namespace, name)

    def recover(self, namespace: str, worker_name: str) -> list[str]:
        """Run the recovery steps; returns names of the deleted calculations."""

        self._mark_unknown(namespace, worker_name)
        deleted: list[str] = []
        assigned = self.store.list(
            Calculation,
            namespace=namespace,
            labels={ASSIGN_LABEL: worker_name},
        )
        for calculation in assigned:
            if calculation.phase not in _NON_TERMINAL:
                continue
            if self._delete(calculation):
                deleted.append(calculation.meta.name)
                self._reset_owner(calculation)
        if deleted:
            logger.info(
                "Deleted %d in-flight calculation(s) of worker %s: %s",
                len(deleted),
                worker_name,
                ", ".join(deleted),
            )
        return deleted

    def _mark_unknown(self, namespace: str, worker_name: str) -> None:
        for pool in self.store.list(WorkerPool, namespace=namespace):
            if not any(worker.name == worker_name for worker in pool.workers.values()):
                continue

            def _mutate(current: WorkerPool) -> bool:
                changed = False
                for worker in current.workers.values():
                    if worker.name == worker_name and worker.state != WorkerState.UNKNOWN:
                        worker.state = WorkerState.UNKNOWN
                        worker.last_update_time = utc_now()
                        changed = True
                return changed

            try:
                update_with_retry(
                    self.store,
                    WorkerPool,
                    namespace=namespace,
                    name=pool.meta.name,
                    mutate=_mutate,
                    policy=self.retry_policy,
                )
            except NotFoundError:
                continue
            logger.info("Worker %s in pool %s marked Unknown", worker_name, pool.meta.name)

    def _delete(self, calculation: Calculation) -> bool:
        """Delete the job unless it finished meanwhile; False when nothing was deleted."""

        namespace = calculation.meta.namespace
        name = calculation.meta.name

        def _attempt() -> bool:
            try:
                current = self.store.get(Calculation, namespace=namespace, name=name)
            except NotFoundError:
                return False
            if current.phase not in _NON_TERMINAL:
                return False
            try:
                self.store.delete(
                    Calculation,
                    namespace=namespace,
                    name=name,
                    resource_version=current.meta.resource_version,
                )
            except NotFoundError:
                return False
            return True

        return retry_on_conflict(_attempt, policy=self.retry_policy)

    def _reset_owner(self, calculation: Calculation) -> None:
        labels = calculation.meta.labels
        namespace = calculation.meta.namespace
        bulk_name = labels.get(BULK_LABEL)
        try:
            if bulk_name and POST_CALCULATION_LABEL in labels:
                mirror_post_phase(
                    self.store,
                    namespace=namespace,
                    bulk_name=bulk_name,
                    phase=CalculationPhase.UNSCHEDULED,
                    policy=self.retry_policy,
                )
            elif bulk_name and labels.get(BULK_MEMBER_LABEL):
                mirror_member_phase(
                    self.store,
                    namespace=namespace,
                    bulk_name=bulk_name,
                    member=labels[BULK_MEMBER_LABEL],
                    phase=CalculationPhase.UNSCHEDULED,
                    policy=self.retry_policy,
                )
            factory_name = labels.get(FACTORY_LABEL)
            if factory_name and not bulk_name:
                self._flag_factory(calculation, factory_name)
        except NotFoundError as error:
            logger.warning("Owner of %s is gone: %s", calculation.meta.name, error)

    def _flag_factory(self, calculation: Calculation, factory_name: str) -> None:
        def _mutate(factory: CalculationBulkFactory) -> bool:
            if factory.status.completion_time is not None:
                return False
            factory.status.conditions.append(
                Condition(
                    type="WorkerLost",
                    status="True",
                    reason="WorkerProcessGone",
                    message=f"Generation calculation {calculation.meta.name} was lost "
                    f"with worker {calculation.assign}",
                    last_transition_time=utc_now(),
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


class LeaseReaper:
    """Delete worker process records whose heartbeat lease expired; prune the change log."""

    def __init__(
        self,
        store: ObjectStore,
        *,
        namespace: str,
        lease_seconds: float,
        interval_seconds: float,
        event_retention: timedelta,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.lease_seconds = lease_seconds
        self.interval_seconds = interval_seconds
        self.event_retention = event_retention

    def run_once(self) -> list[str]:
        now = utc_now()
        cutoff = now - timedelta(seconds=self.lease_seconds)
        reaped: list[str] = []
        processes = self.store.list(
            WorkerProcess,
            namespace=self.namespace,
            labels={ROLE_LABEL: WORKER_ROLE},
        )
        for process in processes:
            heartbeat = process.heartbeat_at or process.started_at
            if heartbeat is not None and heartbeat >= cutoff:
                continue
            try:
                self.store.delete(
                    WorkerProcess,
                    namespace=process.meta.namespace,
                    name=process.meta.name,
                    resource_version=process.meta.resource_version,
                )
            except (NotFoundError, ConflictError):
                continue
            logger.warning(
                "Worker process %s missed its lease (last heartbeat %s), removed",
                process.meta.name,
                heartbeat,
            )
            reaped.append(process.meta.name)

        pruned = self.store.prune_events(older_than=now - self.event_retention)
        if pruned:
            logger.debug("Pruned %d change-log entries", pruned)
        return reaped

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Lease reaper pass failed")
            stop_event.wait(self.interval_seconds)
