"""Bounded optimistic-concurrency retry and the read-modify-write helper."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from vega_dispatch.errors import ConflictError
from vega_dispatch.models import EntityT
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many conflicting writes to absorb before surfacing the conflict."""

    attempts: int = 5
    delay_seconds: float = 0.01
    factor: float = 1.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        base = self.delay_seconds * (self.factor ** max(0, attempt - 1))
        if self.jitter <= 0:
            return base
        return base * (1.0 + random.uniform(0.0, self.jitter))


DEFAULT_RETRY = RetryPolicy()


def retry_on_conflict(
    operation: Callable[[], ResultT],
    *,
    policy: RetryPolicy = DEFAULT_RETRY,
) -> ResultT:
    """Run ``operation``, re-running it on ``ConflictError`` up to ``policy.attempts`` times."""

    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except ConflictError as error:
            if attempt >= policy.attempts:
                logger.warning("Giving up after %d conflicting writes: %s", attempt, error)
                raise
            logger.debug("Write conflict (attempt %d/%d): %s", attempt, policy.attempts, error)
            time.sleep(policy.delay_for(attempt))


def update_with_retry(
    store: ObjectStore,
    kind: type[EntityT],
    *,
    namespace: str,
    name: str,
    mutate: Callable[[EntityT], bool | None],
    policy: RetryPolicy = DEFAULT_RETRY,
) -> EntityT:
    """Fetch, mutate and conditionally write one object under bounded conflict retry.

    ``mutate`` edits the freshly fetched object in place. Returning ``False``
    means nothing changed and skips the write; the fetched object is returned
    as is. Exceptions raised by ``mutate`` abort the update and propagate.
    """

    def _attempt() -> EntityT:
        current = store.get(kind, namespace=namespace, name=name)
        if mutate(current) is False:
            return current
        return store.update(current)

    return retry_on_conflict(_attempt, policy=policy)
