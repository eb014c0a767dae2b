"""Worker-side calculation agent: pick up assigned jobs and report their outcome."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from typing import Any, ClassVar, Protocol

from vega_dispatch.calculations import is_finished
from vega_dispatch.errors import NotFoundError
from vega_dispatch.models import (
    Calculation,
    CalculationPhase,
    EventType,
    StepStatus,
    WorkerState,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, update_with_retry
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import finalize_calculation, set_worker_state

logger = logging.getLogger(__name__)


class Executor(Protocol):
    """Runs a calculation's steps and reports progress through a ``StepReporter``."""

    def submit(self, calculation: Calculation) -> None:
        """Start executing ``calculation``; must not block until it finishes."""


class StepReporter:
    """Write step progress back to the store under bounded conflict retry."""

    def __init__(self, store: ObjectStore, *, retry_policy: RetryPolicy = DEFAULT_RETRY) -> None:
        self.store = store
        self.retry_policy = retry_policy

    def report_step(self, namespace: str, name: str, index: int, status: StepStatus) -> Calculation:
        def _mutate(calculation: Calculation) -> bool:
            if calculation.phase.is_terminal:
                return False
            if index < 0 or index >= len(calculation.steps):
                raise IndexError(f"Calculation {name} has no step {index}")
            step = calculation.steps[index]
            if step.status == status:
                return False
            step.status = status
            return True

        return update_with_retry(
            self.store,
            Calculation,
            namespace=namespace,
            name=name,
            mutate=_mutate,
            policy=self.retry_policy,
        )

    def report_failure(self, namespace: str, name: str) -> Calculation:
        """Force a job to Failed when the executor could not run it at all."""

        def _mutate(calculation: Calculation) -> bool:
            if calculation.phase.is_terminal:
                return False
            calculation.phase = CalculationPhase.FAILED
            calculation.status.completion_time = utc_now()
            return True

        return update_with_retry(
            self.store,
            Calculation,
            namespace=namespace,
            name=name,
            mutate=_mutate,
            policy=self.retry_policy,
        )


def exit_process(error: BaseException) -> None:
    logger.critical("Worker slot could not be released, terminating process: %s", error)
    os._exit(1)


class CalculationAgent:
    """Reconciler for calculations assigned to this worker.

    * Created: mark the slot Processing, the job Processing, then submit it.
    * Processing with every step done (or one failed): finalize once.
    * Terminal and still the agent's current job: free the slot and count it.
    * Deleted while it was the current job: drop the claim so the slot can
      report itself idle again.

    Freeing the slot is the one write allowed to take the process down: a
    slot left Reserved/Processing forever would silently shrink the pool.
    """

    name: ClassVar[str] = "agent"
    kind: ClassVar[type[Calculation]] = Calculation
    events: ClassVar[frozenset[EventType]] = frozenset(
        {EventType.ADDED, EventType.MODIFIED, EventType.DELETED},
    )

    def __init__(  # noqa: PLR0913
        self,
        store: ObjectStore,
        executor: Executor,
        *,
        namespace: str,
        pool_name: str,
        node_name: str,
        hostname: str,
        on_fatal: Callable[[BaseException], None] = exit_process,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.store = store
        self.executor = executor
        self.namespace = namespace
        self.pool_name = pool_name
        self.node_name = node_name
        self.hostname = hostname
        self.on_fatal = on_fatal
        self.retry_policy = retry_policy
        self._current: str | None = None
        self._lock = threading.Lock()

    @property
    def current(self) -> str | None:
        with self._lock:
            return self._current

    def is_busy(self) -> bool:
        return self.current is not None

    def matches(self, obj: Any) -> bool:
        return obj.meta.namespace == self.namespace and getattr(obj, "assign", "") == self.hostname

    def reconcile(self, namespace: str, name: str) -> None:
        try:
            calculation = self.store.get(Calculation, namespace=namespace, name=name)
        except NotFoundError:
            self._drop_deleted(namespace, name)
            raise
        if calculation.assign != self.hostname:
            return

        if calculation.phase == CalculationPhase.CREATED:
            self._start(calculation)
            return

        if calculation.phase == CalculationPhase.PROCESSING:
            if is_finished(calculation.steps):
                calculation = finalize_calculation(
                    self.store,
                    namespace=namespace,
                    name=name,
                    policy=self.retry_policy,
                )
            elif self._claim(name):
                logger.warning("Resuming calculation %s/%s left Processing", namespace, name)
                self.executor.submit(calculation)
                return

        if calculation.phase.is_terminal:
            self._finish(calculation)

    def _claim(self, name: str) -> bool:
        with self._lock:
            if self._current is None:
                self._current = name
                return True
            if self._current != name:
                logger.warning(
                    "Worker %s already runs %s, not taking %s",
                    self.hostname,
                    self._current,
                    name,
                )
            return False

    def _start(self, calculation: Calculation) -> None:
        namespace = calculation.meta.namespace
        name = calculation.meta.name
        if not self._claim(name):
            return

        try:
            updated = self._mark_processing(calculation)
        except Exception:
            self._release_claim()
            raise
        if updated is None:
            self._release_claim()
            return
        logger.info("Calculation %s/%s started on %s", namespace, name, self.hostname)
        self.executor.submit(updated)

    def _mark_processing(self, calculation: Calculation) -> Calculation | None:
        namespace = calculation.meta.namespace
        try:
            set_worker_state(
                self.store,
                namespace=namespace,
                pool_name=self._pool_of(calculation),
                node=self.node_name,
                state=WorkerState.PROCESSING,
                policy=self.retry_policy,
            )
        except NotFoundError as error:
            logger.warning("Worker %s has no pool entry: %s", self.hostname, error)

        started = False

        def _mutate(current: Calculation) -> bool:
            nonlocal started
            started = False
            if current.phase != CalculationPhase.CREATED or current.assign != self.hostname:
                return False
            current.phase = CalculationPhase.PROCESSING
            current.status.pending_time = utc_now()
            started = True
            return True

        updated = update_with_retry(
            self.store,
            Calculation,
            namespace=namespace,
            name=calculation.meta.name,
            mutate=_mutate,
            policy=self.retry_policy,
        )
        return updated if started else None

    def _finish(self, calculation: Calculation) -> None:
        name = calculation.meta.name
        with self._lock:
            if self._current != name:
                return
        try:
            set_worker_state(
                self.store,
                namespace=calculation.meta.namespace,
                pool_name=self._pool_of(calculation),
                node=self.node_name,
                state=WorkerState.AVAILABLE,
                count_completed=True,
                policy=self.retry_policy,
            )
        except NotFoundError as error:
            logger.warning("Cannot release worker %s: %s", self.hostname, error)
        except Exception as error:
            self.on_fatal(error)
            raise
        self._release_claim()
        logger.info(
            "Calculation %s/%s %s, worker %s is available",
            calculation.meta.namespace,
            name,
            calculation.phase.value.lower(),
            self.hostname,
        )

    def _release_claim(self) -> None:
        with self._lock:
            self._current = None

    def _drop_deleted(self, namespace: str, name: str) -> None:
        with self._lock:
            if self._current != name:
                return
            self._current = None
        logger.warning(
            "Calculation %s/%s was deleted while running on %s, dropping it",
            namespace,
            name,
            self.hostname,
        )

    def _pool_of(self, calculation: Calculation) -> str:
        return calculation.worker_pool or self.pool_name
