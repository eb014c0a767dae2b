from __future__ import annotations

from collections.abc import Callable

import allure

from vega_dispatch.calculations import new_calculation
from vega_dispatch.models import (
    ASSIGN_LABEL,
    ROLE_LABEL,
    WORKER_ROLE,
    BulkCalculation,
    Step,
    WorkerPool,
    WorkerProcess,
    WorkerState,
)
from vega_dispatch.retry import RetryPolicy
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import reserve_worker, set_worker_state
from vega_dispatch.worker.registrar import WorkerPoolRegistrar

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Pool Registration & Heartbeat"),
]


def _registrar(
    store: ObjectStore,
    retry: RetryPolicy,
    *,
    is_busy: Callable[[], bool] | None = None,
) -> WorkerPoolRegistrar:
    return WorkerPoolRegistrar(
        store,
        namespace="vega",
        pool_name="pool-a",
        node_name="node-1",
        hostname="host-1",
        is_busy=is_busy,
        retry_policy=retry,
    )


def _state(store: ObjectStore) -> WorkerState:
    pool = store.get(WorkerPool, namespace="vega", name="pool-a")
    return pool.workers["node-1"].state


def test_first_heartbeat_creates_pool_entry_and_process(
    store: ObjectStore,
    fast_retry: RetryPolicy,
) -> None:
    worker = _registrar(store, fast_retry).register_once()

    assert worker.name == "host-1"
    assert worker.state == WorkerState.AVAILABLE
    process = store.get(WorkerProcess, namespace="vega", name="host-1")
    assert process.meta.labels == {ROLE_LABEL: WORKER_ROLE}
    assert process.node == "node-1"
    assert process.pool == "pool-a"
    assert process.heartbeat_at is not None


def test_heartbeat_joins_an_existing_pool_and_refreshes_lease(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
) -> None:
    make_pool(workers=(("node-0", "host-0", WorkerState.AVAILABLE),))
    registrar = _registrar(store, fast_retry)

    registrar.register_once()
    first = store.get(WorkerProcess, namespace="vega", name="host-1")
    registrar.register_once()
    second = store.get(WorkerProcess, namespace="vega", name="host-1")

    pool = store.get(WorkerPool, namespace="vega", name="pool-a")
    assert sorted(pool.workers) == ["node-0", "node-1"]
    assert second.heartbeat_at is not None and first.heartbeat_at is not None
    assert second.heartbeat_at >= first.heartbeat_at
    assert second.meta.resource_version == 2


def test_idle_reservation_survives_one_heartbeat(
    store: ObjectStore,
    fast_retry: RetryPolicy,
) -> None:
    registrar = _registrar(store, fast_retry)
    registrar.register_once()
    reserve_worker(store, namespace="vega", pool_name="pool-a", node="node-1", policy=fast_retry)

    registrar.register_once()
    assert _state(store) == WorkerState.RESERVED

    registrar.register_once()
    assert _state(store) == WorkerState.AVAILABLE


def test_busy_worker_keeps_its_state(store: ObjectStore, fast_retry: RetryPolicy) -> None:
    busy = True
    registrar = _registrar(store, fast_retry, is_busy=lambda: busy)
    registrar.register_once()
    set_worker_state(
        store,
        namespace="vega",
        pool_name="pool-a",
        node="node-1",
        state=WorkerState.PROCESSING,
        policy=fast_retry,
    )

    registrar.register_once()
    registrar.register_once()
    assert _state(store) == WorkerState.PROCESSING

    busy = False
    registrar.register_once()
    assert _state(store) == WorkerState.AVAILABLE


def test_assigned_calculation_keeps_reservation(
    store: ObjectStore,
    fast_retry: RetryPolicy,
) -> None:
    registrar = _registrar(store, fast_retry)
    registrar.register_once()
    reserve_worker(store, namespace="vega", pool_name="pool-a", node="node-1", policy=fast_retry)
    calculation = new_calculation(
        BulkCalculation(steps=[Step(command="echo")]),
        namespace="vega",
        worker_pool="pool-a",
    )
    calculation.assign = "host-1"
    calculation.meta.labels[ASSIGN_LABEL] = "host-1"
    store.create(calculation)

    for _ in range(3):
        registrar.register_once()

    assert _state(store) == WorkerState.RESERVED


def test_deregister_and_leave_pool(store: ObjectStore, fast_retry: RetryPolicy) -> None:
    registrar = _registrar(store, fast_retry)
    registrar.register_once()

    registrar.deregister()
    registrar.deregister()
    registrar.remove_from_pool()

    assert store.list(WorkerProcess, namespace="vega") == []
    assert store.get(WorkerPool, namespace="vega", name="pool-a").workers == {}
