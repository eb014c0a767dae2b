"""Dispatcher runtime: informers, controllers, scheduler and lease reaper in one process."""

from __future__ import annotations

import logging
import threading

from vega_dispatch.config import Settings
from vega_dispatch.controller import Controller, Reconciler
from vega_dispatch.dispatcher.bulks import BulkReconciler
from vega_dispatch.dispatcher.calculations import CalculationReconciler
from vega_dispatch.dispatcher.channel import CalculationChannel
from vega_dispatch.dispatcher.factory import FactoryReconciler
from vega_dispatch.dispatcher.scheduler import Scheduler
from vega_dispatch.dispatcher.workerpools import WorkerPoolReconciler
from vega_dispatch.dispatcher.workers import LeaseReaper, WorkerLivenessReconciler
from vega_dispatch.informer import EventHandler, Informer
from vega_dispatch.lifecycle import stop_on_signals
from vega_dispatch.metrics import CalculationGauge
from vega_dispatch.models import (
    Calculation,
    CalculationBulk,
    CalculationBulkFactory,
    StoredEntity,
    WorkerPool,
    WorkerProcess,
)
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)


class DispatcherManager:
    """Wire every dispatcher-side control loop against one store.

    One informer per watched kind feeds the controllers interested in that
    kind. The bulk and factory reconcilers hand jobs to the scheduler through
    a bounded channel. ``stop`` shuts everything down in reverse order.
    """

    def __init__(self, store: ObjectStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.stop_event = threading.Event()
        self.gauge = CalculationGauge()

        dispatcher = settings.dispatcher
        namespace = settings.namespace
        retry_policy = settings.retry.policy()
        self.channel = CalculationChannel(
            dispatcher.channel_capacity,
            overflow=dispatcher.channel_overflow,
            stop_event=self.stop_event,
        )
        self.scheduler = Scheduler(
            store,
            self.channel,
            no_capacity=dispatcher.no_capacity,
            retry_policy=retry_policy,
        )
        self.reaper = LeaseReaper(
            store,
            namespace=namespace,
            lease_seconds=dispatcher.worker_lease_seconds,
            interval_seconds=dispatcher.reaper_interval_seconds,
            event_retention=dispatcher.event_retention,
        )

        reconcilers: list[Reconciler] = [
            CalculationReconciler(
                store,
                namespace=namespace,
                gauge=self.gauge,
                no_capacity=dispatcher.no_capacity,
                retry_policy=retry_policy,
            ),
            BulkReconciler(store, self.channel, namespace=namespace, retry_policy=retry_policy),
            FactoryReconciler(
                store,
                self.channel,
                namespace=namespace,
                shared_storage_root=settings.shared_storage_root,
                retry_policy=retry_policy,
            ),
            WorkerPoolReconciler(store, namespace=namespace, retry_policy=retry_policy),
            WorkerLivenessReconciler(store, namespace=namespace, retry_policy=retry_policy),
        ]
        self.controllers = [
            Controller(
                reconciler,
                max_concurrent_reconciles=dispatcher.max_concurrent_reconciles,
                rate_limiter=settings.retry.rate_limiter(),
            )
            for reconciler in reconcilers
        ]

        kinds: tuple[type[StoredEntity], ...] = (
            Calculation,
            CalculationBulk,
            CalculationBulkFactory,
            WorkerPool,
            WorkerProcess,
        )
        self.informers = {
            kind.KIND: Informer(
                store,
                kind,
                namespace=namespace,
                poll_interval_seconds=settings.store.watch_poll_seconds,
            )
            for kind in kinds
        }
        for controller in self.controllers:
            controller.watch(self.informers[controller.reconciler.kind.KIND])
        self.informers[Calculation.KIND].add_handler(
            EventHandler(on_delete=lambda obj: self.gauge.forget(obj.meta.name)),
        )
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for controller in self.controllers:
            controller.start()
        for informer in self.informers.values():
            informer.start()
        for name, target in (
            ("scheduler", self.scheduler.run),
            ("lease-reaper", self.reaper.run),
        ):
            thread = threading.Thread(
                target=target,
                args=(self.stop_event,),
                name=name,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Dispatcher started in namespace %s", self.settings.namespace)

    def wait_for_cache_sync(self, timeout: float | None = None) -> bool:
        return all(informer.wait_for_cache_sync(timeout) for informer in self.informers.values())

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop watches, drain queues, close the channel and join every thread."""

        self.stop_event.set()
        for informer in self.informers.values():
            informer.stop(timeout=timeout)
        self.channel.close()
        for controller in self.controllers:
            controller.stop(timeout=timeout)
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        logger.info("Dispatcher stopped")

    def run_forever(self) -> None:
        with stop_on_signals(self.stop_event):
            self.start()
            try:
                while not self.stop_event.wait(1.0):
                    pass
            finally:
                self.stop()
