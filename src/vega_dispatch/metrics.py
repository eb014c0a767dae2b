"""Observability metrics for calculations, worker pools and bulks."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from vega_dispatch.models import (
    Calculation,
    CalculationBulk,
    CalculationPhase,
    WorkerPool,
)
from vega_dispatch.storage.common import to_iso


@dataclass(slots=True, frozen=True)
class CalculationSeries:
    """Label set of one gauge sample."""

    calculation_id: str
    phase: str
    created_at: str


class CalculationGauge:
    """Per-calculation gauge keyed by id, phase and creation time.

    Each calculation keeps exactly one series: recording it again under a new
    phase replaces the previous sample.
    """

    def __init__(self) -> None:
        self._series: dict[str, CalculationSeries] = {}
        self._lock = threading.Lock()

    def record(self, calculation: Calculation) -> CalculationSeries:
        series = CalculationSeries(
            calculation_id=calculation.meta.name,
            phase=calculation.phase.value,
            created_at=to_iso(calculation.meta.created_at) or "",
        )
        with self._lock:
            self._series[calculation.meta.name] = series
        return series

    def forget(self, calculation_id: str) -> None:
        with self._lock:
            self._series.pop(calculation_id, None)

    def samples(self) -> dict[CalculationSeries, float]:
        with self._lock:
            return {series: 1.0 for series in self._series.values()}

    def phase_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(series.phase or "Unscheduled" for series in self._series.values()))


@dataclass(slots=True)
class DispatchMetricsSnapshot:
    """Aggregated state used by the stats command."""

    calculation_phase_counts: dict[str, int] = field(default_factory=dict)
    unassigned_created: int = 0
    worker_state_counts: dict[str, int] = field(default_factory=dict)
    workers_per_pool: dict[str, int] = field(default_factory=dict)
    calculations_processed: int = 0
    bulk_state_counts: dict[str, int] = field(default_factory=dict)
    bulk_members_pending: int = 0
    oldest_pending_calculation: datetime | None = None


def build_dispatch_metrics(
    *,
    calculations: list[Calculation],
    pools: list[WorkerPool],
    bulks: list[CalculationBulk],
) -> DispatchMetricsSnapshot:
    """Aggregate stored objects into a snapshot."""

    snapshot = DispatchMetricsSnapshot()
    phase_counts: Counter[str] = Counter()
    for calculation in calculations:
        phase_counts[calculation.phase.value or "Unscheduled"] += 1
        if calculation.phase == CalculationPhase.CREATED:
            if not calculation.assign:
                snapshot.unassigned_created += 1
            created_at = calculation.meta.created_at
            if created_at is not None and (
                snapshot.oldest_pending_calculation is None
                or created_at < snapshot.oldest_pending_calculation
            ):
                snapshot.oldest_pending_calculation = created_at
    snapshot.calculation_phase_counts = dict(phase_counts)

    worker_states: Counter[str] = Counter()
    for pool in pools:
        snapshot.workers_per_pool[pool.meta.name] = len(pool.workers)
        for worker in pool.workers.values():
            worker_states[worker.state.value] += 1
            snapshot.calculations_processed += worker.calculations_processed
    snapshot.worker_state_counts = dict(worker_states)

    bulk_states: Counter[str] = Counter()
    for bulk in bulks:
        bulk_states[bulk.status.state.value or "New"] += 1
        snapshot.bulk_members_pending += sum(
            1 for member in bulk.calculations.values() if not member.phase.is_terminal
        )
    snapshot.bulk_state_counts = dict(bulk_states)
    return snapshot


def render_stats_lines(*, snapshot: DispatchMetricsSnapshot, namespace: str) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    oldest = snapshot.oldest_pending_calculation
    return [
        f"Dispatch state (namespace={namespace})",
        "Calculations: " + (_fmt_key_value(snapshot.calculation_phase_counts) or "none"),
        f"Unassigned created calculations: {snapshot.unassigned_created}",
        "Oldest pending calculation: " + (to_iso(oldest) if oldest is not None else "n/a"),
        "Workers: " + (_fmt_key_value(snapshot.worker_state_counts) or "none"),
        "Pools: " + (_fmt_key_value(snapshot.workers_per_pool) or "none"),
        f"Calculations processed by workers: {snapshot.calculations_processed}",
        "Bulks: " + (_fmt_key_value(snapshot.bulk_state_counts) or "none"),
        f"Bulk members not finished: {snapshot.bulk_members_pending}",
    ]


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
