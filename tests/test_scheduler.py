from __future__ import annotations

import threading
import time
from collections.abc import Callable

import allure

from vega_dispatch.calculations import bulk_member_calculation, new_calculation
from vega_dispatch.dispatcher.channel import CalculationChannel, OverflowPolicy
from vega_dispatch.dispatcher.policy import NoCapacityAction, NoCapacityPolicy
from vega_dispatch.dispatcher.scheduler import Scheduler
from vega_dispatch.errors import NotFoundError
from vega_dispatch.models import (
    ASSIGN_LABEL,
    BulkCalculation,
    Calculation,
    CalculationBulk,
    CalculationPhase,
    Params,
    Step,
    WorkerPool,
    WorkerState,
)
from vega_dispatch.retry import RetryPolicy
from vega_dispatch.storage.repository import ObjectStore

pytestmark = [
    allure.epic("Dispatcher"),
    allure.feature("Scheduler"),
]

_TWO_IDLE = (
    ("n1", "w1", WorkerState.AVAILABLE),
    ("n2", "w2", WorkerState.AVAILABLE),
)


def _job(teff: float, *, worker_pool: str = "pool-a") -> Calculation:
    return new_calculation(
        BulkCalculation(params=Params(teff=teff), steps=[Step(command="echo")]),
        namespace="vega",
        worker_pool=worker_pool,
    )


def _scheduler(
    store: ObjectStore,
    retry: RetryPolicy,
    *,
    no_capacity: NoCapacityPolicy | None = None,
) -> tuple[Scheduler, CalculationChannel]:
    channel = CalculationChannel(4, overflow=OverflowPolicy.DROP)
    scheduler = Scheduler(
        store,
        channel,
        no_capacity=no_capacity,
        retry_policy=retry,
        receive_timeout_seconds=0.01,
    )
    return scheduler, channel


def test_job_is_created_on_a_reserved_worker(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
) -> None:
    make_pool(workers=_TWO_IDLE)
    scheduler, _ = _scheduler(store, fast_retry)

    created = scheduler.schedule(_job(1.0))

    assert created is not None
    assert created.assign == "w1"
    assert created.meta.labels[ASSIGN_LABEL] == "w1"
    assert created.phase == CalculationPhase.CREATED
    pool = store.get(WorkerPool, namespace="vega", name="pool-a")
    assert pool.workers["n1"].state == WorkerState.RESERVED
    assert pool.workers["n2"].state == WorkerState.AVAILABLE


def test_consecutive_jobs_never_share_a_worker(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
) -> None:
    make_pool(workers=_TWO_IDLE)
    scheduler, _ = _scheduler(store, fast_retry)

    first = scheduler.schedule(_job(1.0))
    second = scheduler.schedule(_job(2.0))
    third = scheduler.schedule(_job(3.0))

    assert first is not None and second is not None
    assert {first.assign, second.assign} == {"w1", "w2"}
    assert third is None
    assert len(store.list(Calculation)) == 2


def test_job_without_pool_is_created_unassigned(
    store: ObjectStore,
    fast_retry: RetryPolicy,
) -> None:
    scheduler, _ = _scheduler(store, fast_retry)

    created = scheduler.schedule(_job(1.0, worker_pool=""))

    assert created is not None
    assert created.assign == ""
    assert ASSIGN_LABEL not in created.meta.labels


def test_missing_pool_drops_the_job(store: ObjectStore, fast_retry: RetryPolicy) -> None:
    scheduler, channel = _scheduler(store, fast_retry)

    assert scheduler.schedule(_job(1.0, worker_pool="absent")) is None
    assert store.list(Calculation) == []
    assert channel.receive(timeout=0) is None


def test_no_capacity_requeue_offers_the_job_again(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
) -> None:
    make_pool(workers=(("n1", "w1", WorkerState.PROCESSING),))
    scheduler, channel = _scheduler(
        store,
        fast_retry,
        no_capacity=NoCapacityPolicy(
            action=NoCapacityAction.REQUEUE,
            requeue_delay_seconds=0.01,
        ),
    )
    job = _job(1.0)

    assert scheduler.schedule(job) is None

    offered = channel.receive(timeout=2.0)
    assert offered is not None
    assert offered.meta.name == job.meta.name
    assert store.list(Calculation) == []


def test_existing_calculation_releases_reservation_and_mirrors_phase(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    make_pool(workers=_TWO_IDLE)
    bulk = make_bulk(teffs=(5000.0,))
    running = bulk_member_calculation(bulk, "m1")
    running.phase = CalculationPhase.PROCESSING
    running.assign = "w-other"
    store.create(running)
    scheduler, _ = _scheduler(store, fast_retry)

    assert scheduler.schedule(bulk_member_calculation(bulk, "m1")) is None

    pool = store.get(WorkerPool, namespace="vega", name="pool-a")
    assert all(worker.state == WorkerState.AVAILABLE for worker in pool.workers.values())
    stored_bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert stored_bulk.calculations["m1"].phase == CalculationPhase.PROCESSING
    stored = store.get(Calculation, namespace="vega", name=running.meta.name)
    assert stored.assign == "w-other"


def test_run_consumes_channel_until_stopped(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_pool: Callable[..., WorkerPool],
) -> None:
    make_pool(workers=_TWO_IDLE)
    scheduler, channel = _scheduler(store, fast_retry)
    stop_event = threading.Event()
    job = _job(1.0)
    channel.send(job)

    thread = threading.Thread(target=scheduler.run, args=(stop_event,), daemon=True)
    thread.start()
    deadline = time.monotonic() + 5.0
    while time.monotonic() < deadline:
        try:
            store.get(Calculation, namespace="vega", name=job.meta.name)
            break
        except NotFoundError:
            time.sleep(0.02)
    stop_event.set()
    thread.join(timeout=5.0)

    assert not thread.is_alive()
    assert channel.closed
    assert store.get(Calculation, namespace="vega", name=job.meta.name).assign == "w1"
