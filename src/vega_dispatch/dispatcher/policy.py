"""What to do with a job when no worker can take it."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class NoCapacityAction(str, Enum):
    DROP = "drop"
    REQUEUE = "requeue"


@dataclass(slots=True, frozen=True)
class NoCapacityPolicy:
    """``drop`` leaves the job for the next triggering event; ``requeue`` retries it later."""

    action: NoCapacityAction = NoCapacityAction.DROP
    requeue_delay_seconds: float = 5.0

    @property
    def requeues(self) -> bool:
        return self.action == NoCapacityAction.REQUEUE
