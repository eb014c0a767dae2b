"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from vega_dispatch.models import (
    DEFAULT_NAMESPACE,
    ROLE_LABEL,
    WORKER_ROLE,
    BulkCalculation,
    CalculationBulk,
    ObjectMeta,
    Params,
    Step,
    Worker,
    WorkerPool,
    WorkerProcess,
    WorkerState,
)
from vega_dispatch.retry import RetryPolicy
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore

FAST_RETRY = RetryPolicy(attempts=5, delay_seconds=0.0, jitter=0.0)
BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[ObjectStore]:
    repository = ObjectStore(tmp_path / "dispatch.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def fast_retry() -> RetryPolicy:
    return FAST_RETRY


@pytest.fixture()
def make_pool(store: ObjectStore) -> Callable[..., WorkerPool]:
    """Create a pool from ``(node, worker_name, state)`` tuples; earlier tuples look idler."""

    def _make(
        name: str = "pool-a",
        workers: tuple[tuple[str, str, WorkerState], ...] = (),
        namespace: str = DEFAULT_NAMESPACE,
    ) -> WorkerPool:
        entries: dict[str, Worker] = {}
        for index, (node, worker_name, state) in enumerate(workers):
            stamp = BASE_TIME + timedelta(seconds=index)
            entries[node] = Worker(
                name=worker_name,
                node=node,
                registered_time=stamp,
                last_update_time=stamp,
                state=state,
            )
        return store.create(
            WorkerPool(meta=ObjectMeta(name=name, namespace=namespace), workers=entries),
        )

    return _make


@pytest.fixture()
def make_process(store: ObjectStore) -> Callable[..., WorkerProcess]:
    def _make(
        name: str,
        *,
        pool: str = "pool-a",
        heartbeat_at: datetime | None = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> WorkerProcess:
        stamp = heartbeat_at or utc_now()
        return store.create(
            WorkerProcess(
                meta=ObjectMeta(
                    name=name,
                    namespace=namespace,
                    labels={ROLE_LABEL: WORKER_ROLE},
                ),
                node=f"node-{name}",
                pool=pool,
                started_at=stamp,
                heartbeat_at=stamp,
            ),
        )

    return _make


def _bulk_member(teff: float, *, log_g: float = 4.0) -> BulkCalculation:
    return BulkCalculation(
        params=Params(teff=teff, log_g=log_g),
        steps=[Step(command="echo", args=[str(teff)])],
    )


@pytest.fixture()
def make_bulk(store: ObjectStore) -> Callable[..., CalculationBulk]:
    """Create a bulk whose members are keyed ``m1``, ``m2``, ... in the given order."""

    def _make(
        name: str = "bulk-a",
        *,
        teffs: tuple[float, ...] = (5000.0, 6000.0),
        worker_pool: str = "pool-a",
        root_folder: str = "",
        post: bool = False,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> CalculationBulk:
        bulk = CalculationBulk(
            meta=ObjectMeta(name=name, namespace=namespace),
            worker_pool=worker_pool,
            root_folder=root_folder,
            calculations={f"m{index}": _bulk_member(teff) for index, teff in enumerate(teffs, 1)},
            post_calculation=(
                BulkCalculation(steps=[Step(command="collect", args=["all"])]) if post else None
            ),
        )
        return store.create(bulk)

    return _make
