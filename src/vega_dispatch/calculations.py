"""Calculation naming, construction and lifecycle helpers."""

from __future__ import annotations

import base64
import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import datetime

from vega_dispatch.models import (
    BULK_LABEL,
    BULK_MEMBER_LABEL,
    FACTORY_LABEL,
    POST_CALCULATION_LABEL,
    ROOT_FOLDER_LABEL,
    BulkCalculation,
    Calculation,
    CalculationBulk,
    CalculationBulkFactory,
    CalculationPhase,
    CalculationStatus,
    ObjectMeta,
    Step,
    StepStatus,
    Worker,
    WorkerState,
)
from vega_dispatch.storage.common import utc_now

VEGA_PIPELINE = "vega"

_STANDARD_BASE32 = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_NAME_BASE32 = "bcdfghijklmnpqrstvwxyz0123456789"
_NAME_TRANSLATION = str.maketrans(_STANDARD_BASE32, _NAME_BASE32)


def vega_pipeline_steps() -> list[Step]:
    """Default three-step stellar atmosphere + spectrum synthesis pipeline."""

    return [
        Step(command="atlas12_ada", args=["s"]),
        Step(command="atlas12_ada", args=["r"]),
        Step(command="/bin/bash", args=["-c", "synspec49 < input_tlusty_fortfive"]),
    ]


def input_hash(*inputs: bytes) -> str:
    """Short, name-safe digest of the given inputs.

    SHA-256 truncated to 10 bytes and base32-encoded over a lower-case alphabet that
    skips a, e, o and u, so generated names stay short and rarely spell words.
    """

    digest = hashlib.sha256()
    for chunk in inputs:
        digest.update(chunk)
    encoded = base64.b32encode(digest.digest()[:10]).decode("ascii")
    return encoded.rstrip("=").translate(_NAME_TRANSLATION)


def calculation_name(member: BulkCalculation) -> str:
    """Deterministic calculation name; identical inputs give identical names."""

    canonical = json.dumps(
        {
            "params": member.params.to_payload(),
            "steps": [{"command": step.command, "args": list(step.args)} for step in member.steps],
            "pipeline": member.pipeline,
            "input_files": list(member.input_files),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"calc-{input_hash(canonical.encode('utf-8'))}"


def new_calculation(
    member: BulkCalculation,
    *,
    namespace: str,
    labels: Mapping[str, str] | None = None,
    worker_pool: str = "",
    root_folder: str = "",
    now: datetime | None = None,
) -> Calculation:
    """Build a Created calculation for one logical member."""

    steps = (
        vega_pipeline_steps()
        if member.pipeline == VEGA_PIPELINE
        else [Step(command=step.command, args=list(step.args)) for step in member.steps]
    )
    resolved = BulkCalculation(
        params=member.params,
        steps=steps,
        pipeline=member.pipeline,
        input_files=list(member.input_files),
    )
    return Calculation(
        meta=ObjectMeta(
            name=calculation_name(resolved),
            namespace=namespace,
            labels=dict(labels or {}),
        ),
        params=member.params,
        steps=steps,
        worker_pool=worker_pool,
        pipeline=member.pipeline,
        root_folder=root_folder,
        input_files=list(member.input_files),
        phase=CalculationPhase.CREATED,
        status=CalculationStatus(start_time=now or utc_now()),
    )


def bulk_member_calculation(bulk: CalculationBulk, key: str) -> Calculation:
    member = bulk.calculations[key]
    return new_calculation(
        member,
        namespace=bulk.meta.namespace,
        labels=_bulk_labels(bulk, {BULK_MEMBER_LABEL: key}),
        worker_pool=bulk.worker_pool,
        root_folder=bulk.root_folder,
    )


def bulk_post_calculation(bulk: CalculationBulk) -> Calculation:
    if bulk.post_calculation is None:
        raise ValueError(f"Bulk {bulk.meta.name} has no post calculation")
    return new_calculation(
        bulk.post_calculation,
        namespace=bulk.meta.namespace,
        labels=_bulk_labels(bulk, {POST_CALCULATION_LABEL: "true"}),
        worker_pool=bulk.worker_pool,
        root_folder=bulk.root_folder,
    )


def factory_calculation(
    factory: CalculationBulkFactory,
    *,
    now: datetime | None = None,
) -> Calculation:
    """Single-step calculation that runs a factory's generation command."""

    labels = {FACTORY_LABEL: factory.meta.name}
    if factory.root_folder:
        labels[ROOT_FOLDER_LABEL] = factory.root_folder
    return Calculation(
        meta=ObjectMeta(
            name=f"calc-factory-{factory.meta.name}",
            namespace=factory.meta.namespace,
            labels=labels,
        ),
        steps=[Step(command=factory.command, args=list(factory.args))],
        worker_pool=factory.worker_pool,
        root_folder=factory.root_folder,
        input_files=list(factory.input_files),
        phase=CalculationPhase.CREATED,
        status=CalculationStatus(start_time=now or utc_now()),
    )


def is_finished(steps: Iterable[Step]) -> bool:
    """True once a step failed or every step completed."""

    statuses = [step.status for step in steps]
    if StepStatus.FAILED in statuses:
        return True
    return bool(statuses) and all(status == StepStatus.COMPLETED for status in statuses)


def final_phase(steps: Iterable[Step]) -> CalculationPhase:
    if any(step.status == StepStatus.FAILED for step in steps):
        return CalculationPhase.FAILED
    return CalculationPhase.COMPLETED


def unscheduled_members(bulk: CalculationBulk) -> list[str]:
    """Member keys with an empty mirrored phase, in stable key order."""

    return sorted(
        key
        for key, member in bulk.calculations.items()
        if member.phase == CalculationPhase.UNSCHEDULED
    )


def all_members_terminal(bulk: CalculationBulk) -> bool:
    return all(member.phase.is_terminal for member in bulk.calculations.values())


def sort_workers(workers: Iterable[Worker]) -> list[Worker]:
    """Oldest heartbeat first, so idle slots are used round-robin."""

    return sorted(workers, key=lambda worker: (worker.last_update_time, worker.node))


def first_available_worker(workers: Iterable[Worker]) -> Worker | None:
    for worker in sort_workers(workers):
        if worker.state == WorkerState.AVAILABLE:
            return worker
    return None


def _bulk_labels(bulk: CalculationBulk, extra: Mapping[str, str]) -> dict[str, str]:
    labels = {BULK_LABEL: bulk.meta.name, **extra}
    if bulk.root_folder:
        labels[ROOT_FOLDER_LABEL] = bulk.root_folder
    return labels
