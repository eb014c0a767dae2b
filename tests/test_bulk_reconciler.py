from __future__ import annotations

from collections.abc import Callable

import allure

from vega_dispatch.dispatcher.bulks import BulkReconciler
from vega_dispatch.dispatcher.channel import CalculationChannel, OverflowPolicy
from vega_dispatch.models import (
    BULK_MEMBER_LABEL,
    POST_CALCULATION_LABEL,
    BulkState,
    Calculation,
    CalculationBulk,
    CalculationPhase,
)
from vega_dispatch.retry import RetryPolicy
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.transitions import mirror_member_phase, mirror_post_phase

pytestmark = [
    allure.epic("Dispatcher"),
    allure.feature("Bulk Reconciler"),
]


def _drain(channel: CalculationChannel) -> list[Calculation]:
    items: list[Calculation] = []
    while (item := channel.receive(timeout=0)) is not None:
        items.append(item)
    return items


def _setup(store: ObjectStore, retry: RetryPolicy) -> tuple[BulkReconciler, CalculationChannel]:
    channel = CalculationChannel(10, overflow=OverflowPolicy.DROP)
    return BulkReconciler(store, channel, namespace="vega", retry_policy=retry), channel


def _finish_members(store: ObjectStore, retry: RetryPolicy, *members: str) -> None:
    for member in members:
        mirror_member_phase(
            store,
            namespace="vega",
            bulk_name="bulk-a",
            member=member,
            phase=CalculationPhase.COMPLETED,
            policy=retry,
        )


def test_new_bulk_turns_processing_and_emits_every_member(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    make_bulk(teffs=(5000.0, 6000.0, 7000.0))
    reconciler, channel = _setup(store, fast_retry)

    reconciler.reconcile("vega", "bulk-a")

    bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert bulk.status.state == BulkState.PROCESSING
    assert bulk.status.created_time is not None
    emitted = _drain(channel)
    assert [calc.meta.labels[BULK_MEMBER_LABEL] for calc in emitted] == ["m1", "m2", "m3"]
    assert all(calc.worker_pool == "pool-a" for calc in emitted)
    assert all(calc.assign == "" for calc in emitted)


def test_only_unscheduled_members_are_emitted(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    make_bulk(teffs=(5000.0, 6000.0, 7000.0))
    mirror_member_phase(
        store,
        namespace="vega",
        bulk_name="bulk-a",
        member="m2",
        phase=CalculationPhase.PROCESSING,
        policy=fast_retry,
    )
    reconciler, channel = _setup(store, fast_retry)

    reconciler.reconcile("vega", "bulk-a")

    assert [calc.meta.labels[BULK_MEMBER_LABEL] for calc in _drain(channel)] == ["m1", "m3"]


def test_post_calculation_waits_for_every_member(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    make_bulk(post=True)
    reconciler, channel = _setup(store, fast_retry)
    _finish_members(store, fast_retry, "m1")
    reconciler.reconcile("vega", "bulk-a")
    assert [calc.meta.labels[BULK_MEMBER_LABEL] for calc in _drain(channel)] == ["m2"]

    _finish_members(store, fast_retry, "m2")
    reconciler.reconcile("vega", "bulk-a")

    emitted = _drain(channel)
    assert len(emitted) == 1
    assert emitted[0].meta.labels[POST_CALCULATION_LABEL] == "true"
    bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert bulk.status.state == BulkState.PROCESSING


def test_bulk_completes_after_post_calculation(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    make_bulk(post=True)
    _finish_members(store, fast_retry, "m1", "m2")
    mirror_post_phase(
        store,
        namespace="vega",
        bulk_name="bulk-a",
        phase=CalculationPhase.FAILED,
        policy=fast_retry,
    )
    reconciler, channel = _setup(store, fast_retry)

    reconciler.reconcile("vega", "bulk-a")
    completed = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    reconciler.reconcile("vega", "bulk-a")

    assert completed.status.state == BulkState.COMPLETED
    assert completed.status.completion_time is not None
    assert _drain(channel) == []
    stored = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert stored.meta.resource_version == completed.meta.resource_version


def test_bulk_without_post_calculation_completes_with_its_members(
    store: ObjectStore,
    fast_retry: RetryPolicy,
    make_bulk: Callable[..., CalculationBulk],
) -> None:
    make_bulk()
    _finish_members(store, fast_retry, "m1", "m2")
    reconciler, channel = _setup(store, fast_retry)

    reconciler.reconcile("vega", "bulk-a")

    bulk = store.get(CalculationBulk, namespace="vega", name="bulk-a")
    assert bulk.status.state == BulkState.COMPLETED
    assert _drain(channel) == []
