"""Runtime configuration for the dispatcher and worker processes."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

from vega_dispatch.dispatcher.channel import OverflowPolicy
from vega_dispatch.dispatcher.policy import NoCapacityAction, NoCapacityPolicy
from vega_dispatch.models import DEFAULT_NAMESPACE
from vega_dispatch.retry import RetryPolicy
from vega_dispatch.taskqueue import ExponentialRateLimiter

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

ChoiceT = TypeVar("ChoiceT", OverflowPolicy, NoCapacityAction)


@dataclass(slots=True)
class StoreSettings:
    """Object store and watch settings."""

    busy_timeout_ms: int = 5_000
    watch_poll_seconds: float = 0.2


@dataclass(slots=True)
class DispatcherSettings:
    """Control-plane settings."""

    channel_capacity: int = 1
    channel_overflow: OverflowPolicy = OverflowPolicy.BLOCK
    no_capacity_action: NoCapacityAction = NoCapacityAction.DROP
    no_capacity_requeue_seconds: float = 5.0
    max_concurrent_reconciles: int = 1
    worker_lease_seconds: float = 60.0
    reaper_interval_seconds: float = 10.0
    event_retention_hours: int = 24

    @property
    def no_capacity(self) -> NoCapacityPolicy:
        return NoCapacityPolicy(
            action=self.no_capacity_action,
            requeue_delay_seconds=self.no_capacity_requeue_seconds,
        )

    @property
    def event_retention(self) -> timedelta:
        return timedelta(hours=self.event_retention_hours)


@dataclass(slots=True)
class WorkerSettings:
    """Worker-process settings."""

    pool: str = ""
    node_name: str = ""
    hostname: str = ""
    heartbeat_seconds: float = 10.0
    exit_on_fatal: bool = True


@dataclass(slots=True)
class RetrySettings:
    """Conflict retry and queue backoff settings."""

    conflict_attempts: int = 5
    conflict_backoff_seconds: float = 0.01
    queue_base_delay_seconds: float = 0.005
    queue_max_delay_seconds: float = 1000.0

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.conflict_attempts,
            delay_seconds=self.conflict_backoff_seconds,
        )

    def rate_limiter(self) -> ExponentialRateLimiter:
        return ExponentialRateLimiter(
            base_delay_seconds=self.queue_base_delay_seconds,
            max_delay_seconds=self.queue_max_delay_seconds,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".vega_dispatch.db")
    namespace: str = DEFAULT_NAMESPACE
    shared_storage_root: Path = Path(".")
    log_level: str = "WARNING"
    store: StoreSettings = field(default_factory=StoreSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        hostname = os.getenv("VEGA_DISPATCH_HOSTNAME", "").strip() or socket.gethostname()
        return cls(
            db_path=db_path or Path(os.getenv("VEGA_DISPATCH_DB_PATH", ".vega_dispatch.db")),
            namespace=os.getenv("VEGA_DISPATCH_NAMESPACE", DEFAULT_NAMESPACE),
            shared_storage_root=Path(os.getenv("VEGA_DISPATCH_SHARED_STORAGE_ROOT", ".")),
            log_level=os.getenv("VEGA_DISPATCH_LOG_LEVEL", "WARNING").strip().upper(),
            store=StoreSettings(
                busy_timeout_ms=int(os.getenv("VEGA_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                watch_poll_seconds=float(os.getenv("VEGA_DISPATCH_WATCH_POLL_SECONDS", "0.2")),
            ),
            dispatcher=DispatcherSettings(
                channel_capacity=int(os.getenv("VEGA_DISPATCH_CHANNEL_CAPACITY", "1")),
                channel_overflow=_env_choice(
                    "VEGA_DISPATCH_CHANNEL_OVERFLOW",
                    OverflowPolicy,
                    default=OverflowPolicy.BLOCK,
                ),
                no_capacity_action=_env_choice(
                    "VEGA_DISPATCH_NO_CAPACITY_ACTION",
                    NoCapacityAction,
                    default=NoCapacityAction.DROP,
                ),
                no_capacity_requeue_seconds=float(
                    os.getenv("VEGA_DISPATCH_NO_CAPACITY_REQUEUE_SECONDS", "5.0"),
                ),
                max_concurrent_reconciles=int(
                    os.getenv("VEGA_DISPATCH_MAX_CONCURRENT_RECONCILES", "1"),
                ),
                worker_lease_seconds=float(os.getenv("VEGA_DISPATCH_WORKER_LEASE_SECONDS", "60")),
                reaper_interval_seconds=float(
                    os.getenv("VEGA_DISPATCH_REAPER_INTERVAL_SECONDS", "10"),
                ),
                event_retention_hours=int(os.getenv("VEGA_DISPATCH_EVENT_RETENTION_HOURS", "24")),
            ),
            worker=WorkerSettings(
                pool=os.getenv("VEGA_DISPATCH_POOL", "").strip(),
                node_name=os.getenv("VEGA_DISPATCH_NODE_NAME", "").strip() or hostname,
                hostname=hostname,
                heartbeat_seconds=float(os.getenv("VEGA_DISPATCH_HEARTBEAT_SECONDS", "10")),
                exit_on_fatal=_env_bool("VEGA_DISPATCH_EXIT_ON_FATAL", default=True),
            ),
            retry=RetrySettings(
                conflict_attempts=int(os.getenv("VEGA_DISPATCH_CONFLICT_ATTEMPTS", "5")),
                conflict_backoff_seconds=float(
                    os.getenv("VEGA_DISPATCH_CONFLICT_BACKOFF_SECONDS", "0.01"),
                ),
                queue_base_delay_seconds=float(
                    os.getenv("VEGA_DISPATCH_QUEUE_BASE_DELAY_SECONDS", "0.005"),
                ),
                queue_max_delay_seconds=float(
                    os.getenv("VEGA_DISPATCH_QUEUE_MAX_DELAY_SECONDS", "1000"),
                ),
            ),
        )

    def validate_common(self) -> None:
        """Raise configuration error for settings shared by every process."""

        if not self.namespace.strip():
            raise ValueError("VEGA_DISPATCH_NAMESPACE must be a non-empty string.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"VEGA_DISPATCH_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.store.busy_timeout_ms < 0:
            raise ValueError("VEGA_DISPATCH_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.store.watch_poll_seconds <= 0:
            raise ValueError("VEGA_DISPATCH_WATCH_POLL_SECONDS must be > 0.")
        if self.retry.conflict_attempts < 1:
            raise ValueError("VEGA_DISPATCH_CONFLICT_ATTEMPTS must be >= 1.")
        if self.retry.conflict_backoff_seconds < 0:
            raise ValueError("VEGA_DISPATCH_CONFLICT_BACKOFF_SECONDS must be >= 0.")
        if self.retry.queue_base_delay_seconds <= 0:
            raise ValueError("VEGA_DISPATCH_QUEUE_BASE_DELAY_SECONDS must be > 0.")
        if self.retry.queue_max_delay_seconds < self.retry.queue_base_delay_seconds:
            raise ValueError(
                "VEGA_DISPATCH_QUEUE_MAX_DELAY_SECONDS must be >= "
                "VEGA_DISPATCH_QUEUE_BASE_DELAY_SECONDS.",
            )

    def validate_for_dispatcher(self) -> None:
        """Raise configuration error if the dispatcher cannot run with these settings."""

        self.validate_common()
        dispatcher = self.dispatcher
        if dispatcher.channel_capacity < 1:
            raise ValueError("VEGA_DISPATCH_CHANNEL_CAPACITY must be >= 1.")
        if dispatcher.no_capacity_requeue_seconds <= 0:
            raise ValueError("VEGA_DISPATCH_NO_CAPACITY_REQUEUE_SECONDS must be > 0.")
        if dispatcher.max_concurrent_reconciles < 1:
            raise ValueError("VEGA_DISPATCH_MAX_CONCURRENT_RECONCILES must be >= 1.")
        if dispatcher.worker_lease_seconds <= 0:
            raise ValueError("VEGA_DISPATCH_WORKER_LEASE_SECONDS must be > 0.")
        if dispatcher.reaper_interval_seconds <= 0:
            raise ValueError("VEGA_DISPATCH_REAPER_INTERVAL_SECONDS must be > 0.")
        if dispatcher.event_retention_hours < 1:
            raise ValueError("VEGA_DISPATCH_EVENT_RETENTION_HOURS must be >= 1.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if a worker cannot run with these settings."""

        self.validate_common()
        if not self.worker.pool:
            raise ValueError("A worker pool is required. Set VEGA_DISPATCH_POOL or pass --pool.")
        if not self.worker.node_name or not self.worker.hostname:
            raise ValueError("VEGA_DISPATCH_NODE_NAME and VEGA_DISPATCH_HOSTNAME must resolve.")
        if self.worker.heartbeat_seconds <= 0:
            raise ValueError("VEGA_DISPATCH_HEARTBEAT_SECONDS must be > 0.")
        if self.worker.heartbeat_seconds >= self.dispatcher.worker_lease_seconds:
            raise ValueError(
                "VEGA_DISPATCH_HEARTBEAT_SECONDS must be shorter than "
                "VEGA_DISPATCH_WORKER_LEASE_SECONDS.",
            )


def _env_choice(name: str, choices: type[ChoiceT], *, default: ChoiceT) -> ChoiceT:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return choices(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(choice.value for choice in choices)
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Expected one of: {allowed}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
