"""Guarded state transitions shared by dispatcher and worker loops.

Every function here is a read-modify-write through ``update_with_retry``; the
mutation re-checks the precondition on the freshly fetched object, so a
transition that another writer already made becomes a no-op instead of being
applied twice.
"""

from __future__ import annotations

import logging
from collections.abc import Collection

from vega_dispatch.calculations import final_phase, is_finished
from vega_dispatch.errors import WorkerUnavailableError
from vega_dispatch.models import (
    Calculation,
    CalculationBulk,
    CalculationPhase,
    Worker,
    WorkerPool,
    WorkerState,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, update_with_retry
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)


def find_worker_by_name(pool: WorkerPool, worker_name: str) -> Worker | None:
    for worker in pool.workers.values():
        if worker.name == worker_name:
            return worker
    return None


def reserve_worker(
    store: ObjectStore,
    *,
    namespace: str,
    pool_name: str,
    node: str,
    policy: RetryPolicy = DEFAULT_RETRY,
) -> Worker:
    """Move one slot Available -> Reserved or raise ``WorkerUnavailableError``."""

    def _mutate(pool: WorkerPool) -> None:
        worker = pool.workers.get(node)
        if worker is None:
            raise WorkerUnavailableError(f"Worker node {node} is not registered in {pool_name}")
        if worker.state != WorkerState.AVAILABLE:
            raise WorkerUnavailableError(
                f"Worker {worker.name} in {pool_name} is {worker.state.value}, not Available",
            )
        worker.state = WorkerState.RESERVED
        worker.last_update_time = utc_now()

    updated = update_with_retry(
        store,
        WorkerPool,
        namespace=namespace,
        name=pool_name,
        mutate=_mutate,
        policy=policy,
    )
    logger.info("Reserved worker %s in pool %s", updated.workers[node].name, pool_name)
    return updated.workers[node]


def set_worker_state(  # noqa: PLR0913
    store: ObjectStore,
    *,
    namespace: str,
    pool_name: str,
    node: str,
    state: WorkerState,
    only_from: Collection[WorkerState] | None = None,
    count_completed: bool = False,
    policy: RetryPolicy = DEFAULT_RETRY,
) -> bool:
    """Set a slot's state; returns False when the slot is absent or not in ``only_from``."""

    changed = False

    def _mutate(pool: WorkerPool) -> bool:
        nonlocal changed
        changed = False
        worker = pool.workers.get(node)
        if worker is None:
            return False
        if only_from is not None and worker.state not in only_from:
            return False
        if worker.state == state and not count_completed:
            return False
        worker.state = state
        worker.last_update_time = utc_now()
        if count_completed:
            worker.calculations_processed += 1
        changed = True
        return True

    update_with_retry(
        store,
        WorkerPool,
        namespace=namespace,
        name=pool_name,
        mutate=_mutate,
        policy=policy,
    )
    if changed:
        logger.info("Worker %s in pool %s is now %s", node, pool_name, state.value)
    return changed


def release_worker(
    store: ObjectStore,
    *,
    namespace: str,
    pool_name: str,
    node: str,
    policy: RetryPolicy = DEFAULT_RETRY,
) -> bool:
    """Undo a reservation that did not lead to a created calculation."""

    return set_worker_state(
        store,
        namespace=namespace,
        pool_name=pool_name,
        node=node,
        state=WorkerState.AVAILABLE,
        only_from=(WorkerState.RESERVED,),
        policy=policy,
    )


def finalize_calculation(
    store: ObjectStore,
    *,
    namespace: str,
    name: str,
    policy: RetryPolicy = DEFAULT_RETRY,
) -> Calculation:
    """Processing -> Completed/Failed once every step finished; no-op otherwise."""

    transitioned = False

    def _mutate(calculation: Calculation) -> bool:
        nonlocal transitioned
        transitioned = False
        if calculation.phase != CalculationPhase.PROCESSING or not is_finished(calculation.steps):
            return False
        calculation.phase = final_phase(calculation.steps)
        calculation.status.completion_time = utc_now()
        transitioned = True
        return True

    updated = update_with_retry(
        store,
        Calculation,
        namespace=namespace,
        name=name,
        mutate=_mutate,
        policy=policy,
    )
    if transitioned:
        logger.info("Calculation %s/%s finished as %s", namespace, name, updated.phase.value)
    return updated


def mirror_member_phase(  # noqa: PLR0913
    store: ObjectStore,
    *,
    namespace: str,
    bulk_name: str,
    member: str,
    phase: CalculationPhase,
    policy: RetryPolicy = DEFAULT_RETRY,
    only_from: Collection[CalculationPhase] | None = None,
) -> bool:
    """Copy a calculation phase into its bulk member; False when the member is unknown.

    With ``only_from`` the member is left alone unless its current phase is listed.
    """

    known = True

    def _mutate(bulk: CalculationBulk) -> bool:
        nonlocal known
        entry = bulk.calculations.get(member)
        known = entry is not None
        if entry is None or entry.phase == phase:
            return False
        if only_from is not None and entry.phase not in only_from:
            return False
        entry.phase = phase
        return True

    update_with_retry(
        store,
        CalculationBulk,
        namespace=namespace,
        name=bulk_name,
        mutate=_mutate,
        policy=policy,
    )
    if not known:
        logger.warning("Bulk %s/%s has no member %s", namespace, bulk_name, member)
    return known


def mirror_post_phase(
    store: ObjectStore,
    *,
    namespace: str,
    bulk_name: str,
    phase: CalculationPhase,
    policy: RetryPolicy = DEFAULT_RETRY,
) -> bool:
    known = True

    def _mutate(bulk: CalculationBulk) -> bool:
        nonlocal known
        post = bulk.post_calculation
        known = post is not None
        if post is None or post.phase == phase:
            return False
        post.phase = phase
        return True

    update_with_retry(
        store,
        CalculationBulk,
        namespace=namespace,
        name=bulk_name,
        mutate=_mutate,
        policy=policy,
    )
    if not known:
        logger.warning("Bulk %s/%s has no post calculation", namespace, bulk_name)
    return known
