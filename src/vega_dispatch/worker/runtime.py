"""Worker runtime: heartbeat, calculation watch and executor for one node."""

from __future__ import annotations

import logging
import threading

from vega_dispatch.config import Settings
from vega_dispatch.controller import Controller
from vega_dispatch.informer import Informer
from vega_dispatch.lifecycle import stop_on_signals
from vega_dispatch.models import Calculation
from vega_dispatch.storage.repository import ObjectStore
from vega_dispatch.worker.agent import CalculationAgent, Executor, StepReporter, exit_process
from vega_dispatch.worker.executor import SubprocessExecutor
from vega_dispatch.worker.registrar import WorkerPoolRegistrar

logger = logging.getLogger(__name__)


class WorkerRuntime:
    def __init__(
        self,
        store: ObjectStore,
        settings: Settings,
        *,
        executor: Executor | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.stop_event = threading.Event()
        worker = settings.worker
        retry_policy = settings.retry.policy()

        self.reporter = StepReporter(store, retry_policy=retry_policy)
        self.executor = executor or SubprocessExecutor(
            self.reporter,
            shared_storage_root=settings.shared_storage_root,
            stop_event=self.stop_event,
        )
        self.agent = CalculationAgent(
            store,
            self.executor,
            namespace=settings.namespace,
            pool_name=worker.pool,
            node_name=worker.node_name,
            hostname=worker.hostname,
            on_fatal=self._on_fatal,
            retry_policy=retry_policy,
        )
        self.registrar = WorkerPoolRegistrar(
            store,
            namespace=settings.namespace,
            pool_name=worker.pool,
            node_name=worker.node_name,
            hostname=worker.hostname,
            is_busy=self.agent.is_busy,
            retry_policy=retry_policy,
        )
        self.informer = Informer(
            store,
            Calculation,
            namespace=settings.namespace,
            poll_interval_seconds=settings.store.watch_poll_seconds,
        )
        self.controller = Controller(self.agent, rate_limiter=settings.retry.rate_limiter())
        self.controller.watch(self.informer)
        self._heartbeat: threading.Thread | None = None

    def start(self) -> None:
        self.registrar.register_once()
        self.controller.start()
        self.informer.start()
        self._heartbeat = threading.Thread(
            target=self.registrar.run,
            args=(self.stop_event, self.settings.worker.heartbeat_seconds),
            name="heartbeat",
            daemon=True,
        )
        self._heartbeat.start()
        logger.info(
            "Worker %s (node %s) joined pool %s",
            self.settings.worker.hostname,
            self.settings.worker.node_name,
            self.settings.worker.pool,
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        self.stop_event.set()
        self.informer.stop(timeout=timeout)
        self.controller.stop(timeout=timeout)
        if isinstance(self.executor, SubprocessExecutor):
            self.executor.join(timeout=timeout)
        if self._heartbeat is not None:
            self._heartbeat.join(timeout=timeout)
        self.registrar.deregister()
        logger.info("Worker %s stopped", self.settings.worker.hostname)

    def run_forever(self) -> None:
        with stop_on_signals(self.stop_event):
            self.start()
            try:
                while not self.stop_event.wait(1.0):
                    pass
            finally:
                self.stop()

    def _on_fatal(self, error: BaseException) -> None:
        if self.settings.worker.exit_on_fatal:
            exit_process(error)
        logger.critical("Worker slot could not be released, stopping worker: %s", error)
        self.stop_event.set()
