from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure

from vega_dispatch.calculations import (
    VEGA_PIPELINE,
    all_members_terminal,
    bulk_member_calculation,
    bulk_post_calculation,
    calculation_name,
    factory_calculation,
    final_phase,
    first_available_worker,
    is_finished,
    new_calculation,
    unscheduled_members,
)
from vega_dispatch.models import (
    BULK_LABEL,
    BULK_MEMBER_LABEL,
    FACTORY_LABEL,
    POST_CALCULATION_LABEL,
    ROOT_FOLDER_LABEL,
    BulkCalculation,
    CalculationBulk,
    CalculationBulkFactory,
    CalculationPhase,
    ObjectMeta,
    Params,
    Step,
    StepStatus,
    Worker,
    WorkerState,
)

pytestmark = [
    allure.epic("Calculations"),
    allure.feature("Naming & Lifecycle Helpers"),
]

_NAME_ALPHABET = set("bcdfghijklmnpqrstvwxyz0123456789")


def _member(teff: float = 5000.0, **overrides: object) -> BulkCalculation:
    values: dict[str, object] = {
        "params": Params(teff=teff, log_g=4.0),
        "steps": [Step(command="echo", args=["a"])],
    }
    values.update(overrides)
    return BulkCalculation(**values)  # type: ignore[arg-type]


def _worker(node: str, state: WorkerState, offset_seconds: int) -> Worker:
    stamp = datetime(2026, 10, 19, tzinfo=UTC) + timedelta(seconds=offset_seconds)
    return Worker(
        name=f"host-{node}",
        node=node,
        registered_time=stamp,
        last_update_time=stamp,
        state=state,
    )


def test_calculation_name_is_deterministic_and_input_sensitive() -> None:
    first = calculation_name(_member())
    again = calculation_name(_member())
    other = calculation_name(_member(teff=5001.0))
    other_files = calculation_name(_member(input_files=["model.dat"]))

    assert first == again
    assert len({first, other, other_files}) == 3
    assert first.startswith("calc-")
    assert set(first.removeprefix("calc-")) <= _NAME_ALPHABET
    assert len(first) == len("calc-") + 16


def test_calculation_name_ignores_step_status() -> None:
    running = _member(steps=[Step(command="echo", args=["a"], status=StepStatus.COMPLETED)])

    assert calculation_name(running) == calculation_name(_member())


def test_new_calculation_expands_vega_pipeline() -> None:
    calculation = new_calculation(_member(steps=[], pipeline=VEGA_PIPELINE), namespace="vega")

    assert [step.command for step in calculation.steps] == [
        "atlas12_ada",
        "atlas12_ada",
        "/bin/bash",
    ]
    assert calculation.phase == CalculationPhase.CREATED
    assert calculation.status.start_time is not None
    assert calculation.assign == ""


def test_bulk_member_and_post_calculations_carry_owner_labels() -> None:
    bulk = CalculationBulk(
        meta=ObjectMeta(name="bulk-a"),
        worker_pool="pool-a",
        root_folder="runs/a",
        calculations={"m1": _member()},
        post_calculation=_member(teff=0.0, steps=[Step(command="collect")]),
    )

    member = bulk_member_calculation(bulk, "m1")
    assert member.meta.labels == {
        BULK_LABEL: "bulk-a",
        BULK_MEMBER_LABEL: "m1",
        ROOT_FOLDER_LABEL: "runs/a",
    }
    assert member.worker_pool == "pool-a"
    assert member.root_folder == "runs/a"
    assert member.meta.name == calculation_name(_member())

    post = bulk_post_calculation(bulk)
    assert post.meta.labels[POST_CALCULATION_LABEL] == "true"
    assert BULK_MEMBER_LABEL not in post.meta.labels


def test_factory_calculation_runs_the_generation_command() -> None:
    factory = CalculationBulkFactory(
        meta=ObjectMeta(name="grid"),
        command="make-grid",
        args=["--out", "bulk.yaml"],
        worker_pool="pool-a",
    )

    calculation = factory_calculation(factory)

    assert calculation.meta.name == "calc-factory-grid"
    assert calculation.meta.labels == {FACTORY_LABEL: "grid"}
    assert calculation.steps == [Step(command="make-grid", args=["--out", "bulk.yaml"])]
    assert calculation.worker_pool == "pool-a"


def test_is_finished_and_final_phase() -> None:
    done = Step(command="a", status=StepStatus.COMPLETED)
    failed = Step(command="b", status=StepStatus.FAILED)
    pending = Step(command="c")

    assert not is_finished([])
    assert not is_finished([done, pending])
    assert is_finished([done, done])
    assert is_finished([failed, pending])
    assert final_phase([done, done]) == CalculationPhase.COMPLETED
    assert final_phase([done, failed]) == CalculationPhase.FAILED


def test_unscheduled_members_and_terminal_check() -> None:
    bulk = CalculationBulk(
        meta=ObjectMeta(name="bulk-a"),
        calculations={
            "m2": _member(2.0),
            "m1": _member(1.0),
            "m3": _member(3.0, phase=CalculationPhase.COMPLETED),
        },
    )

    assert unscheduled_members(bulk) == ["m1", "m2"]
    assert not all_members_terminal(bulk)

    for member in bulk.calculations.values():
        member.phase = CalculationPhase.FAILED
    assert all_members_terminal(bulk)
    assert all_members_terminal(CalculationBulk(meta=ObjectMeta(name="empty")))


def test_first_available_worker_prefers_longest_idle() -> None:
    workers = [
        _worker("n1", WorkerState.AVAILABLE, 30),
        _worker("n2", WorkerState.PROCESSING, 0),
        _worker("n3", WorkerState.AVAILABLE, 10),
    ]

    chosen = first_available_worker(workers)
    assert chosen is not None
    assert chosen.node == "n3"
    assert first_available_worker([_worker("n1", WorkerState.RESERVED, 0)]) is None
