"""Error taxonomy shared by the store, the reconcilers and the task queue."""

from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for dispatch engine errors."""


class NotFoundError(DispatchError):
    """Object vanished or never existed; the task queue forgets such keys."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class AlreadyExistsError(DispatchError):
    """Create hit an existing object with the same identity."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} already exists")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictError(DispatchError):
    """Conditional write lost against a newer resource version."""

    def __init__(self, kind: str, namespace: str, name: str, *, expected_version: int) -> None:
        super().__init__(
            f"{kind} {namespace}/{name} was modified concurrently "
            f"(expected resource_version={expected_version})",
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.expected_version = expected_version


class NoCapacityError(DispatchError):
    """No free worker could take a job and the policy asks for a retry."""


class WorkerUnavailableError(DispatchError):
    """A worker slot could not be reserved because it is no longer Available."""


class ChannelClosedError(DispatchError):
    """The scheduling hand-off channel no longer accepts jobs."""


class InvalidDefinitionError(DispatchError, ValueError):
    """Structurally invalid bulk definition; retrying cannot fix it."""
