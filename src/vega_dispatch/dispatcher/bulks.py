"""Bulk reconciler: expand a batch definition into calculations."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from vega_dispatch.calculations import (
    all_members_terminal,
    bulk_member_calculation,
    bulk_post_calculation,
    unscheduled_members,
)
from vega_dispatch.dispatcher.channel import CalculationChannel
from vega_dispatch.models import (
    BulkState,
    CalculationBulk,
    CalculationPhase,
    EventType,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, update_with_retry
from vega_dispatch.storage.common import utc_now
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)


class BulkReconciler:
    """Emit one calculation per unscheduled member, then the post calculation."""

    name: ClassVar[str] = "bulks"
    kind: ClassVar[type[CalculationBulk]] = CalculationBulk
    events: ClassVar[frozenset[EventType]] = frozenset({EventType.ADDED, EventType.MODIFIED})

    def __init__(
        self,
        store: ObjectStore,
        channel: CalculationChannel,
        *,
        namespace: str,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.store = store
        self.channel = channel
        self.namespace = namespace
        self.retry_policy = retry_policy

    def matches(self, obj: Any) -> bool:
        return obj.meta.namespace == self.namespace

    def reconcile(self, namespace: str, name: str) -> None:
        bulk = self.store.get(CalculationBulk, namespace=namespace, name=name)
        if bulk.status.state == BulkState.COMPLETED:
            return
        if bulk.status.state != BulkState.PROCESSING:
            bulk = self._mark_processing(bulk)

        if all_members_terminal(bulk):
            post = bulk.post_calculation
            if post is not None and post.phase == CalculationPhase.UNSCHEDULED:
                logger.info(
                    "All members of bulk %s/%s finished, emitting post calculation",
                    namespace,
                    name,
                )
                self.channel.send(bulk_post_calculation(bulk))
                return
            if post is None or post.phase.is_terminal:
                self._mark_completed(bulk)
            return

        for key in unscheduled_members(bulk):
            calculation = bulk_member_calculation(bulk, key)
            logger.debug(
                "Emitting %s for bulk member %s/%s[%s]",
                calculation.meta.name,
                namespace,
                name,
                key,
            )
            self.channel.send(calculation)

    def _mark_processing(self, bulk: CalculationBulk) -> CalculationBulk:
        def _mutate(current: CalculationBulk) -> bool:
            if current.status.state in (BulkState.PROCESSING, BulkState.COMPLETED):
                return False
            current.status.state = BulkState.PROCESSING
            if current.status.created_time is None:
                current.status.created_time = utc_now()
            return True

        updated = update_with_retry(
            self.store,
            CalculationBulk,
            namespace=bulk.meta.namespace,
            name=bulk.meta.name,
            mutate=_mutate,
            policy=self.retry_policy,
        )
        logger.info(
            "Bulk %s/%s is %s",
            bulk.meta.namespace,
            bulk.meta.name,
            updated.status.state.value,
        )
        return updated

    def _mark_completed(self, bulk: CalculationBulk) -> None:
        def _mutate(current: CalculationBulk) -> bool:
            if current.status.state == BulkState.COMPLETED or not all_members_terminal(current):
                return False
            post = current.post_calculation
            if post is not None and not post.phase.is_terminal:
                return False
            current.status.state = BulkState.COMPLETED
            current.status.completion_time = utc_now()
            return True

        updated = update_with_retry(
            self.store,
            CalculationBulk,
            namespace=bulk.meta.namespace,
            name=bulk.meta.name,
            mutate=_mutate,
            policy=self.retry_policy,
        )
        if updated.status.state == BulkState.COMPLETED:
            logger.info("Bulk %s/%s completed", bulk.meta.namespace, bulk.meta.name)
