"""Single-writer scheduler: bind each emitted calculation to a reserved worker slot."""

from __future__ import annotations

import logging
import threading

from vega_dispatch.calculations import first_available_worker
from vega_dispatch.dispatcher.channel import CalculationChannel
from vega_dispatch.dispatcher.policy import NoCapacityPolicy
from vega_dispatch.errors import AlreadyExistsError, NotFoundError, WorkerUnavailableError
from vega_dispatch.models import (
    ASSIGN_LABEL,
    BULK_LABEL,
    BULK_MEMBER_LABEL,
    POST_CALCULATION_LABEL,
    Calculation,
    CalculationPhase,
    Worker,
    WorkerPool,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import (
    mirror_member_phase,
    mirror_post_phase,
    release_worker,
    reserve_worker,
)

logger = logging.getLogger(__name__)


class Scheduler:
    """Consume the hand-off channel until stopped.

    Per job: pick the longest-idle Available worker of the job's pool, reserve
    it, then create the calculation assigned to it. A failed create releases
    the reservation. Jobs without a pool are created unassigned and left to
    the calculation reconciler.
    """

    def __init__(
        self,
        store: ObjectStore,
        channel: CalculationChannel,
        *,
        no_capacity: NoCapacityPolicy | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
        max_reservation_attempts: int = 3,
        receive_timeout_seconds: float = 0.2,
    ) -> None:
        self.store = store
        self.channel = channel
        self.no_capacity = no_capacity or NoCapacityPolicy()
        self.retry_policy = retry_policy
        self.max_reservation_attempts = max(1, max_reservation_attempts)
        self.receive_timeout_seconds = receive_timeout_seconds

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Scheduler started")
        try:
            while not stop_event.is_set():
                calculation = self.channel.receive(timeout=self.receive_timeout_seconds)
                if calculation is None:
                    continue
                try:
                    self.schedule(calculation)
                except Exception:
                    logger.exception("Failed to schedule calculation %s", calculation.meta.name)
        finally:
            self.channel.close()
            logger.info("Scheduler stopped, channel closed")

    def schedule(self, calculation: Calculation) -> Calculation | None:
        """Place one job; returns the stored calculation or None when it was not created."""

        namespace = calculation.meta.namespace
        if not calculation.worker_pool:
            return self._create(calculation, pool=None, worker=None)

        for _ in range(self.max_reservation_attempts):
            try:
                pool = self.store.get(WorkerPool, namespace=namespace, name=calculation.worker_pool)
            except NotFoundError:
                logger.warning(
                    "Worker pool %s/%s for %s does not exist, dropping job",
                    namespace,
                    calculation.worker_pool,
                    calculation.meta.name,
                )
                return None

            worker = first_available_worker(pool.workers.values())
            if worker is None:
                self._no_capacity(calculation)
                return None
            try:
                reserve_worker(
                    self.store,
                    namespace=namespace,
                    pool_name=pool.meta.name,
                    node=worker.node,
                    policy=self.retry_policy,
                )
            except WorkerUnavailableError as error:
                logger.debug("Reservation lost, picking again: %s", error)
                continue
            return self._create(calculation, pool=pool, worker=worker)

        logger.warning(
            "Could not reserve a worker for %s after %d attempts",
            calculation.meta.name,
            self.max_reservation_attempts,
        )
        self._no_capacity(calculation)
        return None

    def _create(
        self,
        calculation: Calculation,
        *,
        pool: WorkerPool | None,
        worker: Worker | None,
    ) -> Calculation | None:
        if worker is not None:
            calculation.assign = worker.name
            calculation.meta.labels[ASSIGN_LABEL] = worker.name
        try:
            created = self.store.create(calculation)
        except AlreadyExistsError:
            self._release(pool, worker)
            logger.debug("Calculation %s already exists", calculation.meta.name)
            self._mirror_existing(calculation)
            return None
        except Exception:
            self._release(pool, worker)
            raise
        logger.info(
            "Created calculation %s/%s on %s",
            created.meta.namespace,
            created.meta.name,
            worker.name if worker is not None else "no worker yet",
        )
        return created

    def _mirror_existing(self, calculation: Calculation) -> None:
        labels = calculation.meta.labels
        bulk_name = labels.get(BULK_LABEL)
        if not bulk_name:
            return
        namespace = calculation.meta.namespace
        try:
            existing = self.store.get(Calculation, namespace=namespace, name=calculation.meta.name)
            if existing.phase == CalculationPhase.UNSCHEDULED:
                return
            if POST_CALCULATION_LABEL in labels:
                mirror_post_phase(
                    self.store,
                    namespace=namespace,
                    bulk_name=bulk_name,
                    phase=existing.phase,
                    policy=self.retry_policy,
                )
            elif labels.get(BULK_MEMBER_LABEL):
                mirror_member_phase(
                    self.store,
                    namespace=namespace,
                    bulk_name=bulk_name,
                    member=labels[BULK_MEMBER_LABEL],
                    phase=existing.phase,
                    policy=self.retry_policy,
                )
        except NotFoundError as error:
            logger.debug("Cannot mirror %s: %s", calculation.meta.name, error)

    def _no_capacity(self, calculation: Calculation) -> None:
        if self.no_capacity.requeues:
            logger.info(
                "No available worker for %s, retrying in %.1fs",
                calculation.meta.name,
                self.no_capacity.requeue_delay_seconds,
            )
            self.channel.send_later(calculation, self.no_capacity.requeue_delay_seconds)
            return
        logger.info("No available worker for %s, dropping job", calculation.meta.name)

    def _release(self, pool: WorkerPool | None, worker: Worker | None) -> None:
        if pool is None or worker is None:
            return
        release_worker(
            self.store,
            namespace=pool.meta.namespace,
            pool_name=pool.meta.name,
            node=worker.node,
            policy=self.retry_policy,
        )
