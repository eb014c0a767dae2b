"""Domain models for calculations, worker pools, bulks and bulk factories."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Protocol, TypeVar

from vega_dispatch.storage.common import from_iso, to_iso

DEFAULT_NAMESPACE = "vega"

BULK_LABEL = "vegaproject.io/bulk"
BULK_MEMBER_LABEL = "vegaproject.io/calculationName"
ROOT_FOLDER_LABEL = "vegaproject.io/root-folder"
ASSIGN_LABEL = "vegaproject.io/assign"
FACTORY_LABEL = "vegaproject.io/factory"
POST_CALCULATION_LABEL = "vegaproject.io/post-calculation"
RESULTS_COLLECTED_LABEL = "vegaproject.io/results-collected"
ROLE_LABEL = "vegaproject.io/role"
WORKER_ROLE = "worker"


class CalculationPhase(str, Enum):
    """Calculation lifecycle; the empty value means not yet scheduled."""

    UNSCHEDULED = ""
    CREATED = "Created"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CalculationPhase.COMPLETED, CalculationPhase.FAILED)


class StepStatus(str, Enum):
    """Per-step execution status."""

    PENDING = ""
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class WorkerState(str, Enum):
    """Execution slot state inside a worker pool."""

    AVAILABLE = "Available"
    RESERVED = "Reserved"
    PROCESSING = "Processing"
    UNKNOWN = "Unknown"


class BulkState(str, Enum):
    """Overall state of a calculation bulk."""

    NEW = ""
    AVAILABLE = "Available"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    UNKNOWN = "Unknown"


@dataclass(slots=True)
class ObjectMeta:
    """Identity, labels and concurrency token of a stored object."""

    name: str
    namespace: str = DEFAULT_NAMESPACE
    labels: dict[str, str] = field(default_factory=dict)
    uid: str | None = None
    resource_version: int = 0
    created_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "uid": self.uid,
            "resource_version": self.resource_version,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ObjectMeta:
        return cls(
            name=str(payload["name"]),
            namespace=str(payload.get("namespace") or DEFAULT_NAMESPACE),
            labels={str(k): str(v) for k, v in (payload.get("labels") or {}).items()},
            uid=payload.get("uid"),
            resource_version=int(payload.get("resource_version") or 0),
            created_at=_parse_time(payload.get("created_at")),
        )


@dataclass(slots=True)
class Params:
    """Scalar stellar-atmosphere input parameters."""

    teff: float = 0.0
    log_g: float = 0.0

    def to_payload(self) -> dict[str, float]:
        return {"teff": self.teff, "log_g": self.log_g}

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> Params:
        payload = payload or {}
        return cls(teff=float(payload.get("teff", 0.0)), log_g=float(payload.get("log_g", 0.0)))


@dataclass(slots=True)
class Step:
    """One command of a calculation pipeline."""

    command: str
    args: list[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING

    def to_payload(self) -> dict[str, Any]:
        return {"command": self.command, "args": list(self.args), "status": self.status.value}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Step:
        return cls(
            command=str(payload["command"]),
            args=[str(arg) for arg in payload.get("args") or []],
            status=StepStatus(payload.get("status") or ""),
        )


@dataclass(slots=True)
class CalculationStatus:
    """Lifecycle timestamps of a calculation."""

    start_time: datetime | None = None
    pending_time: datetime | None = None
    completion_time: datetime | None = None


@dataclass(slots=True)
class Calculation:
    """One unit of work bound to at most one worker."""

    KIND: ClassVar[str] = "Calculation"

    meta: ObjectMeta
    params: Params = field(default_factory=Params)
    steps: list[Step] = field(default_factory=list)
    assign: str = ""
    worker_pool: str = ""
    pipeline: str = ""
    root_folder: str = ""
    input_files: list[str] = field(default_factory=list)
    phase: CalculationPhase = CalculationPhase.UNSCHEDULED
    status: CalculationStatus = field(default_factory=CalculationStatus)

    @property
    def indexed_phase(self) -> str:
        return self.phase.value

    def to_payload(self) -> dict[str, Any]:
        return {
            "params": self.params.to_payload(),
            "steps": [step.to_payload() for step in self.steps],
            "assign": self.assign,
            "worker_pool": self.worker_pool,
            "pipeline": self.pipeline,
            "root_folder": self.root_folder,
            "input_files": list(self.input_files),
            "phase": self.phase.value,
            "status": {
                "start_time": to_iso(self.status.start_time),
                "pending_time": to_iso(self.status.pending_time),
                "completion_time": to_iso(self.status.completion_time),
            },
        }

    @classmethod
    def from_payload(cls, meta: ObjectMeta, payload: dict[str, Any]) -> Calculation:
        status = payload.get("status") or {}
        return cls(
            meta=meta,
            params=Params.from_payload(payload.get("params")),
            steps=[Step.from_payload(item) for item in payload.get("steps") or []],
            assign=str(payload.get("assign") or ""),
            worker_pool=str(payload.get("worker_pool") or ""),
            pipeline=str(payload.get("pipeline") or ""),
            root_folder=str(payload.get("root_folder") or ""),
            input_files=[str(item) for item in payload.get("input_files") or []],
            phase=CalculationPhase(payload.get("phase") or ""),
            status=CalculationStatus(
                start_time=_parse_time(status.get("start_time")),
                pending_time=_parse_time(status.get("pending_time")),
                completion_time=_parse_time(status.get("completion_time")),
            ),
        )


@dataclass(slots=True)
class Worker:
    """Execution slot keyed by node inside a worker pool."""

    name: str
    node: str
    registered_time: datetime
    last_update_time: datetime
    calculations_processed: int = 0
    state: WorkerState = WorkerState.AVAILABLE

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "node": self.node,
            "registered_time": to_iso(self.registered_time),
            "last_update_time": to_iso(self.last_update_time),
            "calculations_processed": self.calculations_processed,
            "state": self.state.value,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Worker:
        return cls(
            name=str(payload["name"]),
            node=str(payload["node"]),
            registered_time=from_iso(str(payload["registered_time"])),
            last_update_time=from_iso(str(payload["last_update_time"])),
            calculations_processed=int(payload.get("calculations_processed") or 0),
            state=WorkerState(payload["state"]),
        )


@dataclass(slots=True)
class WorkerPool:
    """Named map of execution slots."""

    KIND: ClassVar[str] = "WorkerPool"

    meta: ObjectMeta
    workers: dict[str, Worker] = field(default_factory=dict)

    @property
    def indexed_phase(self) -> str | None:
        return None

    def to_payload(self) -> dict[str, Any]:
        return {"workers": {node: worker.to_payload() for node, worker in self.workers.items()}}

    @classmethod
    def from_payload(cls, meta: ObjectMeta, payload: dict[str, Any]) -> WorkerPool:
        return cls(
            meta=meta,
            workers={
                str(node): Worker.from_payload(item)
                for node, item in (payload.get("workers") or {}).items()
            },
        )


@dataclass(slots=True)
class BulkCalculation:
    """Logical member of a bulk, mirrored from the calculation it produced."""

    params: Params = field(default_factory=Params)
    steps: list[Step] = field(default_factory=list)
    pipeline: str = ""
    input_files: list[str] = field(default_factory=list)
    phase: CalculationPhase = CalculationPhase.UNSCHEDULED

    def to_payload(self) -> dict[str, Any]:
        return {
            "params": self.params.to_payload(),
            "steps": [step.to_payload() for step in self.steps],
            "pipeline": self.pipeline,
            "input_files": list(self.input_files),
            "phase": self.phase.value,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BulkCalculation:
        return cls(
            params=Params.from_payload(payload.get("params")),
            steps=[Step.from_payload(item) for item in payload.get("steps") or []],
            pipeline=str(payload.get("pipeline") or ""),
            input_files=[str(item) for item in payload.get("input_files") or []],
            phase=CalculationPhase(payload.get("phase") or ""),
        )


@dataclass(slots=True)
class BulkStatus:
    created_time: datetime | None = None
    completion_time: datetime | None = None
    state: BulkState = BulkState.NEW


@dataclass(slots=True)
class CalculationBulk:
    """Batch request that expands into many calculations."""

    KIND: ClassVar[str] = "CalculationBulk"

    meta: ObjectMeta
    worker_pool: str = ""
    root_folder: str = ""
    calculations: dict[str, BulkCalculation] = field(default_factory=dict)
    post_calculation: BulkCalculation | None = None
    status: BulkStatus = field(default_factory=BulkStatus)

    @property
    def indexed_phase(self) -> str:
        return self.status.state.value

    def to_payload(self) -> dict[str, Any]:
        return {
            "worker_pool": self.worker_pool,
            "root_folder": self.root_folder,
            "calculations": {key: calc.to_payload() for key, calc in self.calculations.items()},
            "post_calculation": (
                self.post_calculation.to_payload() if self.post_calculation is not None else None
            ),
            "status": {
                "created_time": to_iso(self.status.created_time),
                "completion_time": to_iso(self.status.completion_time),
                "state": self.status.state.value,
            },
        }

    @classmethod
    def from_payload(cls, meta: ObjectMeta, payload: dict[str, Any]) -> CalculationBulk:
        status = payload.get("status") or {}
        post = payload.get("post_calculation")
        return cls(
            meta=meta,
            worker_pool=str(payload.get("worker_pool") or ""),
            root_folder=str(payload.get("root_folder") or ""),
            calculations={
                str(key): BulkCalculation.from_payload(item)
                for key, item in (payload.get("calculations") or {}).items()
            },
            post_calculation=BulkCalculation.from_payload(post) if post else None,
            status=BulkStatus(
                created_time=_parse_time(status.get("created_time")),
                completion_time=_parse_time(status.get("completion_time")),
                state=BulkState(status.get("state") or ""),
            ),
        )


@dataclass(slots=True)
class Condition:
    """Observed condition of a bulk factory."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "last_transition_time": to_iso(self.last_transition_time),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Condition:
        return cls(
            type=str(payload["type"]),
            status=str(payload["status"]),
            reason=str(payload.get("reason") or ""),
            message=str(payload.get("message") or ""),
            last_transition_time=_parse_time(payload.get("last_transition_time")),
        )


@dataclass(slots=True)
class FactoryStatus:
    created_time: datetime | None = None
    completion_time: datetime | None = None
    bulk_created: bool = False
    conditions: list[Condition] = field(default_factory=list)


@dataclass(slots=True)
class CalculationBulkFactory:
    """External generation step whose output file defines one bulk."""

    KIND: ClassVar[str] = "CalculationBulkFactory"

    meta: ObjectMeta
    command: str = ""
    args: list[str] = field(default_factory=list)
    bulk_output: str = ""
    worker_pool: str = ""
    root_folder: str = ""
    input_files: list[str] = field(default_factory=list)
    status: FactoryStatus = field(default_factory=FactoryStatus)

    @property
    def indexed_phase(self) -> str | None:
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "bulk_output": self.bulk_output,
            "worker_pool": self.worker_pool,
            "root_folder": self.root_folder,
            "input_files": list(self.input_files),
            "status": {
                "created_time": to_iso(self.status.created_time),
                "completion_time": to_iso(self.status.completion_time),
                "bulk_created": self.status.bulk_created,
                "conditions": [condition.to_payload() for condition in self.status.conditions],
            },
        }

    @classmethod
    def from_payload(cls, meta: ObjectMeta, payload: dict[str, Any]) -> CalculationBulkFactory:
        status = payload.get("status") or {}
        return cls(
            meta=meta,
            command=str(payload.get("command") or ""),
            args=[str(arg) for arg in payload.get("args") or []],
            bulk_output=str(payload.get("bulk_output") or ""),
            worker_pool=str(payload.get("worker_pool") or ""),
            root_folder=str(payload.get("root_folder") or ""),
            input_files=[str(item) for item in payload.get("input_files") or []],
            status=FactoryStatus(
                created_time=_parse_time(status.get("created_time")),
                completion_time=_parse_time(status.get("completion_time")),
                bulk_created=bool(status.get("bulk_created", False)),
                conditions=[
                    Condition.from_payload(item) for item in status.get("conditions") or []
                ],
            ),
        )


@dataclass(slots=True)
class WorkerProcess:
    """Liveness record of one running worker process, refreshed by heartbeat."""

    KIND: ClassVar[str] = "WorkerProcess"

    meta: ObjectMeta
    node: str = ""
    pool: str = ""
    started_at: datetime | None = None
    heartbeat_at: datetime | None = None

    @property
    def indexed_phase(self) -> str | None:
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "node": self.node,
            "pool": self.pool,
            "started_at": to_iso(self.started_at),
            "heartbeat_at": to_iso(self.heartbeat_at),
        }

    @classmethod
    def from_payload(cls, meta: ObjectMeta, payload: dict[str, Any]) -> WorkerProcess:
        return cls(
            meta=meta,
            node=str(payload.get("node") or ""),
            pool=str(payload.get("pool") or ""),
            started_at=_parse_time(payload.get("started_at")),
            heartbeat_at=_parse_time(payload.get("heartbeat_at")),
        )


class EventType(str, Enum):
    """Change kinds recorded in the store's event log."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(slots=True)
class ObjectEvent:
    """One change notification with the object snapshot it produced."""

    event_id: int
    event_type: EventType
    kind: str
    obj: Any
    created_at: datetime


class StoredEntity(Protocol):
    """Structural type of every object kind kept in the store."""

    KIND: ClassVar[str]
    meta: ObjectMeta

    @property
    def indexed_phase(self) -> str | None: ...

    def to_payload(self) -> dict[str, Any]: ...


EntityT = TypeVar(
    "EntityT",
    Calculation,
    WorkerPool,
    CalculationBulk,
    CalculationBulkFactory,
    WorkerProcess,
)

ENTITY_TYPES: dict[str, Any] = {
    entity.KIND: entity
    for entity in (
        Calculation,
        WorkerPool,
        CalculationBulk,
        CalculationBulkFactory,
        WorkerProcess,
    )
}


def decode_entity(kind: str, meta: ObjectMeta, payload: dict[str, Any]) -> Any:
    """Build the typed entity for a stored kind."""

    try:
        entity_type = ENTITY_TYPES[kind]
    except KeyError as error:
        raise ValueError(f"Unsupported object kind: {kind}") from error
    return entity_type.from_payload(meta, payload)


def _parse_time(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    return from_iso(str(value))
