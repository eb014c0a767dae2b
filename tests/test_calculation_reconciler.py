from __future__ import annotations

from collections.abc import Callable

import allure
import pytest

from vega_dispatch.calculations import (
    bulk_member_calculation,
    bulk_post_calculation,
    new_calculation,
)
from vega_dispatch.dispatcher.calculations import CalculationReconciler
from vega_dispatch.dispatcher.policy import NoCapacityAction, NoCapacityPolicy
from vega_dispatch.errors import NoCapacityError
from vega_dispatch.metrics import CalculationGauge
from vega_dispatch.models import (
    ASSIGN_LABEL,
    FACTORY_LABEL,
    BulkCalculation,
    Calculation,
    CalculationBulk,
    CalculationBulkFactory,
    CalculationPhase,
    ObjectMeta,
    Params,
    Step,
    StepStatus,
    WorkerPool,
    WorkerState,
)
from vega_dispatch.retry import RetryPolicy
from vega_dispatch.storage.repository import ObjectStore

pytestmark = [
    allure.epic("Dispatcher"),
    allure.feature("Calculation Reconciler"),
]


def _reconciler(store: ObjectStore, retry: RetryPolicy, **kwargs: object) -> CalculationReconciler:
    return CalculationReconciler(
        store,
        namespace="vega",
        retry_policy=retry,
        **kwargs,  # type: ignore[arg-type]
    )


def _processing(calculation: Calculation, *statuses: StepStatus) -> Calculation:
    calculation.phase = CalculationPhase.PROCESSING
    calculation.assign = "w1"
    calculation.meta.labels[ASSIGN_LABEL] = "w1"
    calculation.steps = [
        Step(command=f"step-{index}", status=status) for index, status in enumerate(statuses)
    ]
    return calculation


def _standalone(teff: float, *, worker_pool: str = "") -> Calculation:
    return new_calculation(
        BulkCalculation(params=Params(teff=teff), steps=[Step(command="echo")]),
        namespace="vega",
        worker_pool=worker_pool,
    )


def test_finished_calculation_completes_exactly_once(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    bulk = make_bulk()
    calculation = _processing(
        bulk_member_calculation(bulk, "m1"),
        StepStatus.COMPLETED,
        StepStatus.COMPLETED,
    )
    store.create(calculation)
    gauge = CalculationGauge()
    reconciler = _reconciler(store, fast_retry, gauge=gauge)

    reconciler.reconcile("vega", calculation.meta.name)
    completed = store.get(Calculation, namespace="vega", name=calculation.meta.name)
    reconciler.reconcile("vega", calculation.meta.name)
    again = store.get(Calculation, namespace="vega", name=calculation.meta.name)

    assert completed.phase == CalculationPhase.COMPLETED
    assert completed.status.completion_time is not None
    assert again.meta.resource_version == completed.meta.resource_version
    assert again.status.completion_time == completed.status.completion_time
    stored_bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert stored_bulk.calculations["m1"].phase == CalculationPhase.COMPLETED
    assert stored_bulk.calculations["m2"].phase == CalculationPhase.UNSCHEDULED
    assert gauge.phase_counts() == {"Completed": 1}


def test_failed_step_fails_the_calculation(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    bulk = make_bulk()
    calculation = _processing(
        bulk_member_calculation(bulk, "m2"),
        StepStatus.FAILED,
        StepStatus.PENDING,
    )
    store.create(calculation)

    _reconciler(store, fast_retry).reconcile("vega", calculation.meta.name)

    stored = store.get(Calculation, namespace="vega", name=calculation.meta.name)
    assert stored.phase == CalculationPhase.FAILED
    stored_bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert stored_bulk.calculations["m2"].phase == CalculationPhase.FAILED


def test_unfinished_calculation_only_mirrors_phase(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    bulk = make_bulk()
    calculation = _processing(
        bulk_member_calculation(bulk, "m1"),
        StepStatus.COMPLETED,
        StepStatus.PROCESSING,
    )
    store.create(calculation)

    _reconciler(store, fast_retry).reconcile("vega", calculation.meta.name)

    stored = store.get(Calculation, namespace="vega", name=calculation.meta.name)
    assert stored.phase == CalculationPhase.PROCESSING
    assert stored.meta.resource_version == 1
    stored_bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert stored_bulk.calculations["m1"].phase == CalculationPhase.PROCESSING


def test_post_calculation_phase_is_mirrored(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    bulk = make_bulk(post=True)
    post = _processing(bulk_post_calculation(bulk), StepStatus.COMPLETED)
    store.create(post)

    _reconciler(store, fast_retry).reconcile("vega", post.meta.name)

    stored_bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert stored_bulk.post_calculation is not None
    assert stored_bulk.post_calculation.phase == CalculationPhase.COMPLETED
    assert all(
        member.phase == CalculationPhase.UNSCHEDULED
        for member in stored_bulk.calculations.values()
    )


@pytest.mark.parametrize(
    ("step_status", "condition"),
    [(StepStatus.COMPLETED, "Available"), (StepStatus.FAILED, "Unavailable")],
)
def test_generation_calculation_completes_its_factory(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    step_status: StepStatus,
    condition: str,
) -> None:
    store.create(CalculationBulkFactory(meta=ObjectMeta(name="grid"), command="make-grid"))
    generation = _processing(
        Calculation(meta=ObjectMeta(name="calc-factory-grid", labels={FACTORY_LABEL: "grid"})),
        step_status,
    )
    store.create(generation)
    reconciler = _reconciler(store, fast_retry)

    reconciler.reconcile("vega", "calc-factory-grid")
    reconciler.reconcile("vega", "calc-factory-grid")

    factory = store.get(CalculationBulkFactory, namespace="vega", name="grid")
    assert factory.status.completion_time is not None
    assert [item.type for item in factory.status.conditions] == [condition]


def test_missing_owner_does_not_block_completion(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    bulk = make_bulk()
    calculation = _processing(bulk_member_calculation(bulk, "m1"), StepStatus.COMPLETED)
    store.create(calculation)
    store.delete(CalculationBulk, namespace="vega", name="bulk-a")

    _reconciler(store, fast_retry).reconcile("vega", calculation.meta.name)

    stored = store.get(Calculation, namespace="vega", name=calculation.meta.name)
    assert stored.phase == CalculationPhase.COMPLETED


def test_unassigned_calculation_is_bound_to_a_free_worker_process(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_process: Callable[..., object],
) -> None:
    make_process("w1")
    make_process("w2")
    busy = _processing(_standalone(1.0), StepStatus.PENDING)
    store.create(busy)
    waiting = store.create(_standalone(2.0))

    _reconciler(store, fast_retry).reconcile("vega", waiting.meta.name)

    stored = store.get(Calculation, namespace="vega", name=waiting.meta.name)
    assert stored.assign == "w2"
    assert stored.meta.labels[ASSIGN_LABEL] == "w2"
    assert stored.phase == CalculationPhase.CREATED


def test_unassigned_pool_calculation_reserves_the_pool_slot(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
    make_process: Callable[..., object],
) -> None:
    make_pool(workers=(("n1", "w1", WorkerState.PROCESSING), ("n2", "w2", WorkerState.AVAILABLE)))
    make_process("w1")
    make_process("w2")
    waiting = store.create(_standalone(3.0, worker_pool="pool-a"))

    _reconciler(store, fast_retry).reconcile("vega", waiting.meta.name)

    stored = store.get(Calculation, namespace="vega", name=waiting.meta.name)
    assert stored.assign == "w2"
    pool = store.get(WorkerPool, namespace="vega", name="pool-a")
    assert pool.workers["n2"].state == WorkerState.RESERVED
    assert pool.workers["n1"].state == WorkerState.PROCESSING


def test_no_free_worker_is_left_unassigned_or_requeued(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_process: Callable[..., object],
) -> None:
    make_process("w1")
    store.create(_processing(_standalone(1.0), StepStatus.PENDING))
    waiting = store.create(_standalone(2.0))

    _reconciler(store, fast_retry).reconcile("vega", waiting.meta.name)
    assert store.get(Calculation, namespace="vega", name=waiting.meta.name).assign == ""

    requeueing = _reconciler(
        store,
        fast_retry,
        no_capacity=NoCapacityPolicy(action=NoCapacityAction.REQUEUE),
    )
    with pytest.raises(NoCapacityError):
        requeueing.reconcile("vega", waiting.meta.name)
