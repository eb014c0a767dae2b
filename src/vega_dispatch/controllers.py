"""Controllers for vega-dispatch CLI commands."""

from __future__ import annotations

import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from vega_dispatch.calculations import new_calculation
from vega_dispatch.config import Settings
from vega_dispatch.contracts import read_bulk_definition
from vega_dispatch.dispatcher.manager import DispatcherManager
from vega_dispatch.errors import NotFoundError
from vega_dispatch.informer import describe_event
from vega_dispatch.metrics import build_dispatch_metrics, render_stats_lines
from vega_dispatch.models import (
    ASSIGN_LABEL,
    BULK_LABEL,
    RESULTS_COLLECTED_LABEL,
    BulkCalculation,
    Calculation,
    CalculationBulk,
    CalculationBulkFactory,
    CalculationPhase,
    Condition,
    FactoryStatus,
    ObjectMeta,
    Params,
    Step,
    WorkerPool,
)
from vega_dispatch.retry import update_with_retry
from vega_dispatch.storage.common import to_iso, utc_now
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.worker.runtime import WorkerRuntime


@dataclass(slots=True)
class DispatcherRunCommand:
    """CLI input for the dispatcher process."""

    db_path: Path | None
    namespace: str | None
    shared_storage_root: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for a worker process."""

    db_path: Path | None
    namespace: str | None
    pool: str | None
    node_name: str | None
    hostname: str | None
    shared_storage_root: Path | None


@dataclass(slots=True)
class CalculationListCommand:
    """CLI input for calculation listing."""

    db_path: Path | None
    namespace: str | None
    phase: str | None
    bulk: str | None
    assign: str | None
    limit: int


@dataclass(slots=True)
class CalculationNameCommand:
    """CLI input for commands addressing one calculation."""

    db_path: Path | None
    namespace: str | None
    name: str


@dataclass(slots=True)
class CalculationCreateCommand:
    """CLI input for a standalone calculation."""

    db_path: Path | None
    namespace: str | None
    teff: float
    log_g: float
    pipeline: str
    steps: tuple[str, ...]
    worker_pool: str
    root_folder: str
    input_files: tuple[str, ...]


@dataclass(slots=True)
class BulkSubmitCommand:
    """CLI input for bulk submission from a definition file."""

    db_path: Path | None
    namespace: str | None
    definition_path: Path


@dataclass(slots=True)
class FactoryCreateCommand:
    """CLI input for bulk factory creation."""

    db_path: Path | None
    namespace: str | None
    name: str
    command: str
    args: tuple[str, ...]
    bulk_output: str
    worker_pool: str
    root_folder: str
    input_files: tuple[str, ...]


@dataclass(slots=True)
class FactoryCompleteCommand:
    """CLI input for marking an externally run generation step as finished."""

    db_path: Path | None
    namespace: str | None
    name: str
    failed: bool


@dataclass(slots=True)
class NamespaceCommand:
    """CLI input for namespace-wide listings and stats."""

    db_path: Path | None
    namespace: str | None


@dataclass(slots=True)
class EventsCommand:
    """CLI input for change-log inspection."""

    db_path: Path | None
    after_id: int
    kind: str | None
    limit: int


class DispatchCliController:
    """Coordinates runtime, submission and inspection CLI operations."""

    def run_dispatcher(self, command: DispatcherRunCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        if command.shared_storage_root is not None:
            settings.shared_storage_root = command.shared_storage_root
        settings.validate_for_dispatcher()
        with _store(settings) as store:
            DispatcherManager(store, settings).run_forever()
        return [f"Dispatcher stopped: namespace={settings.namespace}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        worker = settings.worker
        worker.pool = command.pool or worker.pool
        worker.hostname = command.hostname or worker.hostname
        worker.node_name = command.node_name or worker.node_name
        if command.shared_storage_root is not None:
            settings.shared_storage_root = command.shared_storage_root
        settings.validate_for_worker()
        with _store(settings) as store:
            WorkerRuntime(store, settings).run_forever()
        return [f"Worker stopped: {worker.hostname} pool={worker.pool}"]

    def list_calculations(self, command: CalculationListCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        phase = _parse_phase(command.phase)
        labels: dict[str, str] = {}
        if command.bulk:
            labels[BULK_LABEL] = command.bulk
        if command.assign:
            labels[ASSIGN_LABEL] = command.assign
        with _store(settings) as store:
            calculations = store.list(
                Calculation,
                namespace=settings.namespace,
                labels=labels,
                phase=phase,
            )

        shown = calculations[: command.limit]
        lines = [f"Calculations: {len(calculations)}"]
        for calculation in shown:
            lines.append(
                f"  {calculation.meta.name} phase={calculation.phase.value or '-'} "
                f"assign={calculation.assign or '-'} pool={calculation.worker_pool or '-'} "
                f"bulk={calculation.meta.labels.get(BULK_LABEL, '-')}",
            )
        return lines

    def inspect_calculation(self, command: CalculationNameCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        with _store(settings) as store:
            try:
                calculation = store.get(
                    Calculation,
                    namespace=settings.namespace,
                    name=command.name,
                )
            except NotFoundError:
                return [f"Calculation not found: {command.name}"]

        status = calculation.status
        lines = [
            f"Calculation: {calculation.meta.namespace}/{calculation.meta.name}",
            f"Phase: {calculation.phase.value or '-'}",
            f"Assign: {calculation.assign or '-'}",
            f"Pool: {calculation.worker_pool or '-'}",
            f"Params: teff={calculation.params.teff} log_g={calculation.params.log_g}",
            f"Pipeline: {calculation.pipeline or '-'}",
            f"Root folder: {calculation.root_folder or '-'}",
            f"Input files: {', '.join(calculation.input_files) or '-'}",
            f"Started: {to_iso(status.start_time) or '-'}",
            f"Pending: {to_iso(status.pending_time) or '-'}",
            f"Completed: {to_iso(status.completion_time) or '-'}",
            f"Version: {calculation.meta.resource_version}",
            f"Labels: {_fmt_labels(calculation.meta.labels)}",
            f"Steps: {len(calculation.steps)}",
        ]
        for index, step in enumerate(calculation.steps):
            lines.append(
                f"  [{index}] {step.status.value or 'Pending'} "
                f"{shlex.join([step.command, *step.args])}",
            )
        return lines

    def create_calculation(self, command: CalculationCreateCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        steps = [_parse_step(raw) for raw in command.steps]
        if not steps and not command.pipeline:
            raise ValueError("Pass at least one --step or a --pipeline.")
        calculation = new_calculation(
            BulkCalculation(
                params=Params(teff=command.teff, log_g=command.log_g),
                steps=steps,
                pipeline=command.pipeline,
                input_files=list(command.input_files),
            ),
            namespace=settings.namespace,
            worker_pool=command.worker_pool,
            root_folder=command.root_folder,
        )
        with _store(settings) as store:
            created = store.create(calculation)
        return [
            f"Calculation created: name={created.meta.name} phase={created.phase.value} "
            f"steps={len(created.steps)}",
        ]

    def mark_collected(self, command: CalculationNameCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)

        def _mutate(calculation: Calculation) -> bool:
            if not calculation.phase.is_terminal:
                raise ValueError(
                    f"Calculation {calculation.meta.name} is "
                    f"{calculation.phase.value or 'unscheduled'}"
                    ", results can only be collected from finished calculations.",
                )
            if calculation.meta.labels.get(RESULTS_COLLECTED_LABEL) == "true":
                return False
            calculation.meta.labels[RESULTS_COLLECTED_LABEL] = "true"
            return True

        with _store(settings) as store:
            update_with_retry(
                store,
                Calculation,
                namespace=settings.namespace,
                name=command.name,
                mutate=_mutate,
                policy=settings.retry.policy(),
            )
        return [f"Results collected: {command.name}"]

    def submit_bulk(self, command: BulkSubmitCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        bulk = read_bulk_definition(command.definition_path, default_namespace=settings.namespace)
        with _store(settings) as store:
            created = store.create(bulk)
        return [
            f"Bulk submitted: name={created.meta.namespace}/{created.meta.name} "
            f"members={len(created.calculations)} pool={created.worker_pool or '-'} "
            f"post_calculation={'yes' if created.post_calculation is not None else 'no'}",
        ]

    def list_bulks(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        with _store(settings) as store:
            bulks = store.list(CalculationBulk, namespace=settings.namespace)

        lines = [f"Bulks: {len(bulks)}"]
        for bulk in bulks:
            finished = sum(1 for member in bulk.calculations.values() if member.phase.is_terminal)
            lines.append(
                f"  {bulk.meta.name} state={bulk.status.state.value or 'New'} "
                f"finished={finished}/{len(bulk.calculations)} pool={bulk.worker_pool or '-'} "
                f"created={to_iso(bulk.meta.created_at) or '-'}",
            )
        return lines

    def create_factory(self, command: FactoryCreateCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        if not command.command.strip():
            raise ValueError("--command must be a non-empty string.")
        if not command.bulk_output.strip():
            raise ValueError("--bulk-output must be a non-empty path.")
        factory = CalculationBulkFactory(
            meta=ObjectMeta(name=command.name, namespace=settings.namespace),
            command=command.command,
            args=list(command.args),
            bulk_output=command.bulk_output,
            worker_pool=command.worker_pool,
            root_folder=command.root_folder,
            input_files=list(command.input_files),
            status=FactoryStatus(created_time=utc_now()),
        )
        with _store(settings) as store:
            created = store.create(factory)
        return [
            f"Factory created: name={created.meta.name} output={created.bulk_output} "
            f"pool={created.worker_pool or '-'}",
        ]

    def complete_factory(self, command: FactoryCompleteCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)

        def _mutate(factory: CalculationBulkFactory) -> bool:
            if factory.status.completion_time is not None:
                return False
            now = utc_now()
            factory.status.completion_time = now
            factory.status.conditions.append(
                Condition(
                    type="Unavailable" if command.failed else "Available",
                    status="False" if command.failed else "True",
                    reason="MarkedFailed" if command.failed else "MarkedComplete",
                    message="Generation step finished outside the dispatcher",
                    last_transition_time=now,
                ),
            )
            return True

        with _store(settings) as store:
            factory = update_with_retry(
                store,
                CalculationBulkFactory,
                namespace=settings.namespace,
                name=command.name,
                mutate=_mutate,
                policy=settings.retry.policy(),
            )
        return [
            f"Factory {factory.meta.name} completed at "
            f"{to_iso(factory.status.completion_time)} ({factory.status.conditions[-1].type})",
        ]

    def list_factories(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        with _store(settings) as store:
            factories = store.list(CalculationBulkFactory, namespace=settings.namespace)

        lines = [f"Factories: {len(factories)}"]
        for factory in factories:
            condition = factory.status.conditions[-1].type if factory.status.conditions else "-"
            lines.append(
                f"  {factory.meta.name} completed={to_iso(factory.status.completion_time) or '-'} "
                f"bulk_created={factory.status.bulk_created} condition={condition}",
            )
        return lines

    def list_pools(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.db_path, command.namespace)
        with _store(settings) as store:
            pools = store.list(WorkerPool, namespace=settings.namespace)

        lines = [f"Pools: {len(pools)}"]
        for pool in pools:
            lines.append(f"  {pool.meta.name} workers={len(pool.workers)}")
            for node in sorted(pool.workers):
                worker = pool.workers[node]
                lines.append(
                    f"    {node} name={worker.name} state={worker.state.value} "
                    f"processed={worker.calculations_processed} "
                    f"last_update={to_iso(worker.last_update_time)}",
                )
        return lines

    def stats(self, command: NamespaceCommand) -> list[str]:
        """Show operator-facing dispatch state."""

        settings = _settings(command.db_path, command.namespace)
        with _store(settings) as store:
            calculations = store.list(Calculation, namespace=settings.namespace)
            pools = store.list(WorkerPool, namespace=settings.namespace)
            bulks = store.list(CalculationBulk, namespace=settings.namespace)

        snapshot = build_dispatch_metrics(calculations=calculations, pools=pools, bulks=bulks)
        return render_stats_lines(snapshot=snapshot, namespace=settings.namespace)

    def events(self, command: EventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        kinds = (command.kind,) if command.kind else None
        with _store(settings) as store:
            events = store.list_events(after_id=command.after_id, kinds=kinds, limit=command.limit)

        lines = [f"Events: {len(events)}"]
        for event in events:
            lines.append(f"  #{event.event_id} {to_iso(event.created_at)} {describe_event(event)}")
        return lines


def _settings(db_path: Path | None, namespace: str | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if namespace:
        settings.namespace = namespace
    return settings


def _parse_phase(value: str | None) -> CalculationPhase | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    for phase in CalculationPhase:
        if normalized == (phase.value.lower() or "unscheduled"):
            return phase
    allowed = ", ".join(phase.value or "Unscheduled" for phase in CalculationPhase)
    raise ValueError(f"Unknown calculation phase {value!r}. Expected one of: {allowed}")


def _parse_step(raw: str) -> Step:
    parts = shlex.split(raw)
    if not parts:
        raise ValueError("--step must not be empty.")
    return Step(command=parts[0], args=parts[1:])


def _fmt_labels(labels: dict[str, str]) -> str:
    if not labels:
        return "-"
    return " ".join(f"{key}={labels[key]}" for key in sorted(labels))


@contextmanager
def _store(settings: Settings) -> Iterator[ObjectStore]:
    store = ObjectStore(settings.db_path, busy_timeout_ms=settings.store.busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
