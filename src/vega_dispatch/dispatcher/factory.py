"""Bulk-factory reconciler: run the generation step, then materialize its bulk."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, ClassVar

from vega_dispatch.calculations import factory_calculation
from vega_dispatch.contracts import read_bulk_definition
from vega_dispatch.dispatcher.channel import CalculationChannel
from vega_dispatch.errors import AlreadyExistsError, InvalidDefinitionError
from vega_dispatch.models import (
    FACTORY_LABEL,
    CalculationBulk,
    CalculationBulkFactory,
    EventType,
)
from vega_dispatch.retry import DEFAULT_RETRY, RetryPolicy, update_with_retry
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)


class FactoryReconciler:
    """Drive one factory to its single bulk."""

    name: ClassVar[str] = "factories"
    kind: ClassVar[type[CalculationBulkFactory]] = CalculationBulkFactory
    events: ClassVar[frozenset[EventType]] = frozenset({EventType.ADDED, EventType.MODIFIED})

    def __init__(
        self,
        store: ObjectStore,
        channel: CalculationChannel,
        *,
        namespace: str,
        shared_storage_root: Path,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
    ) -> None:
        self.store = store
        self.channel = channel
        self.namespace = namespace
        self.shared_storage_root = shared_storage_root
        self.retry_policy = retry_policy

    def matches(self, obj: Any) -> bool:
        return obj.meta.namespace == self.namespace

    def reconcile(self, namespace: str, name: str) -> None:
        factory = self.store.get(CalculationBulkFactory, namespace=namespace, name=name)
        if factory.status.bulk_created:
            return

        if factory.status.completion_time is None:
            calculation = factory_calculation(factory)
            logger.info(
                "Emitting generation calculation %s for factory %s/%s",
                calculation.meta.name,
                namespace,
                name,
            )
            self.channel.send(calculation)
            return

        if _generation_failed(factory):
            logger.warning(
                "Factory %s/%s generation failed, not reading its output",
                namespace,
                name,
            )
            return

        output_path = self.output_path(factory)
        try:
            bulk = read_bulk_definition(output_path, default_namespace=namespace)
        except InvalidDefinitionError as error:
            logger.warning(
                "Bulk output %s of factory %s/%s is invalid: %s",
                output_path,
                namespace,
                name,
                error,
            )
            return

        self._create_bulk(factory, bulk)
        update_with_retry(
            self.store,
            CalculationBulkFactory,
            namespace=namespace,
            name=name,
            mutate=_mark_bulk_created,
            policy=self.retry_policy,
        )
        logger.info("Factory %s/%s produced bulk %s", namespace, name, bulk.meta.name)

    def output_path(self, factory: CalculationBulkFactory) -> Path:
        return self.shared_storage_root / factory.root_folder / factory.bulk_output

    def _create_bulk(self, factory: CalculationBulkFactory, bulk: CalculationBulk) -> None:
        bulk.meta.namespace = factory.meta.namespace
        bulk.meta.labels[FACTORY_LABEL] = factory.meta.name
        if not bulk.worker_pool:
            bulk.worker_pool = factory.worker_pool
        if not bulk.root_folder:
            bulk.root_folder = factory.root_folder
        try:
            self.store.create(bulk)
        except AlreadyExistsError:
            logger.info("Bulk %s/%s already exists", bulk.meta.namespace, bulk.meta.name)


def _generation_failed(factory: CalculationBulkFactory) -> bool:
    if not factory.status.conditions:
        return False
    return factory.status.conditions[-1].type == "Unavailable"


def _mark_bulk_created(factory: CalculationBulkFactory) -> bool:
    if factory.status.bulk_created:
        return False
    factory.status.bulk_created = True
    return True
