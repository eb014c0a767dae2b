"""Local pipeline executor: run a calculation's steps as subprocesses."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from pathlib import Path

from vega_dispatch.models import Calculation, StepStatus
from vega_dispatch.worker.agent import StepReporter

logger = logging.getLogger(__name__)


class SubprocessExecutor:
    """Run steps in order inside ``<shared_root>/<root_folder>``.

    Each step's stdout/stderr go to ``<name>.step<N>.stdout.log`` and
    ``<name>.step<N>.stderr.log`` in the working folder. A non-zero exit marks
    the step Failed and stops the pipeline. A step interrupted by shutdown is
    left Processing for recovery, and completed steps are skipped when a
    calculation is resumed.
    """

    def __init__(
        self,
        reporter: StepReporter,
        *,
        shared_storage_root: Path,
        stop_event: threading.Event | None = None,
        graceful_shutdown_seconds: float = 10.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.reporter = reporter
        self.shared_storage_root = shared_storage_root
        self.stop_event = stop_event or threading.Event()
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._threads: list[threading.Thread] = []

    def submit(self, calculation: Calculation) -> None:
        thread = threading.Thread(
            target=self.run,
            args=(calculation,),
            name=f"executor-{calculation.meta.name}",
            daemon=True,
        )
        self._threads = [item for item in self._threads if item.is_alive()]
        self._threads.append(thread)
        thread.start()

    def join(self, timeout: float | None = None) -> None:
        for thread in list(self._threads):
            thread.join(timeout=timeout)

    def workdir(self, calculation: Calculation) -> Path:
        return self.shared_storage_root / calculation.root_folder

    def run(self, calculation: Calculation) -> None:
        namespace = calculation.meta.namespace
        name = calculation.meta.name
        try:
            workdir = self.workdir(calculation)
            workdir.mkdir(parents=True, exist_ok=True)
            for index, step in enumerate(calculation.steps):
                if step.status == StepStatus.COMPLETED:
                    continue
                self.reporter.report_step(namespace, name, index, StepStatus.PROCESSING)
                exit_code = self._run_step(
                    [step.command, *step.args],
                    workdir=workdir,
                    log_prefix=f"{name}.step{index}",
                )
                if exit_code is None:
                    logger.info("Step %d of %s/%s interrupted by shutdown", index, namespace, name)
                    return
                if exit_code != 0:
                    logger.warning(
                        "Step %d (%s) of %s/%s exited with %s",
                        index,
                        step.command,
                        namespace,
                        name,
                        exit_code,
                    )
                    self.reporter.report_step(namespace, name, index, StepStatus.FAILED)
                    return
                self.reporter.report_step(namespace, name, index, StepStatus.COMPLETED)
        except Exception:
            logger.exception("Executor failed for %s/%s", namespace, name)
            self.reporter.report_failure(namespace, name)

    def _run_step(self, run_args: list[str], *, workdir: Path, log_prefix: str) -> int | None:
        stdout_path = workdir / f"{log_prefix}.stdout.log"
        stderr_path = workdir / f"{log_prefix}.stderr.log"
        with (
            stdout_path.open("w", encoding="utf-8") as stdout_handle,
            stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=workdir,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except OSError as error:
                stderr_handle.write(f"{error}\n")
                return 127
            return self._wait(process)

    def _wait(self, process: subprocess.Popen[str]) -> int | None:
        shutdown_deadline: float | None = None
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode
            if self.stop_event.is_set():
                now = time.monotonic()
                if shutdown_deadline is None:
                    shutdown_deadline = now + self.graceful_shutdown_seconds
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return None
            time.sleep(self.poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
