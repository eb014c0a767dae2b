"""CLI entrypoint for vega-dispatch."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from vega_dispatch import __version__
from vega_dispatch.controllers import (
    BulkSubmitCommand,
    CalculationCreateCommand,
    CalculationListCommand,
    CalculationNameCommand,
    DispatchCliController,
    DispatcherRunCommand,
    EventsCommand,
    FactoryCompleteCommand,
    FactoryCreateCommand,
    NamespaceCommand,
    WorkerRunCommand,
)
from vega_dispatch.errors import DispatchError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()

CommandT = TypeVar("CommandT")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to VEGA_DISPATCH_DB_PATH.",
)
_namespace_option = click.option(
    "--namespace",
    default=None,
    help="Managed namespace. Defaults to VEGA_DISPATCH_NAMESPACE.",
)


@click.group()
@click.version_option(version=__version__, prog_name="vega-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to VEGA_DISPATCH_LOG_LEVEL or WARNING.",
)
def vega_dispatch(log_level: str | None) -> None:
    """Vega calculation dispatcher CLI.

    Runs the **dispatcher** control plane and **worker** processes against a
    shared SQLite object store, and inspects calculations, bulks, factories
    and worker pools.
    """

    level = (log_level or os.getenv("VEGA_DISPATCH_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )


@vega_dispatch.group()
def dispatcher() -> None:
    """Dispatcher control-plane commands."""


@dispatcher.command("run")
@_db_path_option
@_namespace_option
@click.option(
    "--shared-storage-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Root of the shared folder holding factory outputs.",
)
def dispatcher_run(
    db_path: Path | None,
    namespace: str | None,
    shared_storage_root: Path | None,
) -> None:
    """Run reconcilers, scheduler and lease reaper until SIGINT/SIGTERM."""

    _emit(
        CONTROLLER.run_dispatcher,
        DispatcherRunCommand(
            db_path=db_path,
            namespace=namespace,
            shared_storage_root=shared_storage_root,
        ),
    )


@vega_dispatch.group()
def worker() -> None:
    """Worker process commands."""


@worker.command("run")
@_db_path_option
@_namespace_option
@click.option("--pool", default=None, help="Worker pool to join. Defaults to VEGA_DISPATCH_POOL.")
@click.option("--node-name", default=None, help="Node identity of this slot.")
@click.option("--hostname", default=None, help="Worker name used for assignment.")
@click.option(
    "--shared-storage-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Root of the shared folder calculations run in.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str | None,
    pool: str | None,
    node_name: str | None,
    hostname: str | None,
    shared_storage_root: Path | None,
) -> None:
    """Register in a pool, heartbeat, and execute assigned calculations."""

    _emit(
        CONTROLLER.run_worker,
        WorkerRunCommand(
            db_path=db_path,
            namespace=namespace,
            pool=pool,
            node_name=node_name,
            hostname=hostname,
            shared_storage_root=shared_storage_root,
        ),
    )


@vega_dispatch.group()
def calculations() -> None:
    """Calculation commands."""


@calculations.command("list")
@_db_path_option
@_namespace_option
@click.option("--phase", default=None, help="Phase filter, for example Processing.")
@click.option("--bulk", default=None, help="Only calculations of this bulk.")
@click.option("--assign", default=None, help="Only calculations assigned to this worker.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=50,
    show_default=True,
    help="Max number of calculations to print.",
)
def calculations_list(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str | None,
    phase: str | None,
    bulk: str | None,
    assign: str | None,
    limit: int,
) -> None:
    """List calculations."""

    _emit(
        CONTROLLER.list_calculations,
        CalculationListCommand(
            db_path=db_path,
            namespace=namespace,
            phase=phase,
            bulk=bulk,
            assign=assign,
            limit=limit,
        ),
    )


@calculations.command("inspect")
@_db_path_option
@_namespace_option
@click.argument("name")
def calculations_inspect(db_path: Path | None, namespace: str | None, name: str) -> None:
    """Show one calculation with its steps."""

    _emit(
        CONTROLLER.inspect_calculation,
        CalculationNameCommand(db_path=db_path, namespace=namespace, name=name),
    )


@calculations.command("create")
@_db_path_option
@_namespace_option
@click.option("--teff", type=float, default=0.0, show_default=True, help="Effective temperature.")
@click.option("--log-g", type=float, default=0.0, show_default=True, help="Surface gravity.")
@click.option("--pipeline", default="", help="Named pipeline, for example `vega`.")
@click.option(
    "--step",
    "steps",
    multiple=True,
    help="Shell-quoted step command line. Can be repeated.",
)
@click.option("--pool", "worker_pool", default="", help="Target worker pool.")
@click.option("--root-folder", default="", help="Folder under the shared storage root.")
@click.option("--input-file", "input_files", multiple=True, help="Input file. Can be repeated.")
def calculations_create(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str | None,
    teff: float,
    log_g: float,
    pipeline: str,
    steps: tuple[str, ...],
    worker_pool: str,
    root_folder: str,
    input_files: tuple[str, ...],
) -> None:
    """Create a standalone calculation; identical inputs resolve to the same name."""

    _emit(
        CONTROLLER.create_calculation,
        CalculationCreateCommand(
            db_path=db_path,
            namespace=namespace,
            teff=teff,
            log_g=log_g,
            pipeline=pipeline,
            steps=steps,
            worker_pool=worker_pool,
            root_folder=root_folder,
            input_files=input_files,
        ),
    )


@calculations.command("mark-collected")
@_db_path_option
@_namespace_option
@click.argument("name")
def calculations_mark_collected(db_path: Path | None, namespace: str | None, name: str) -> None:
    """Label a finished calculation as having its results collected."""

    _emit(
        CONTROLLER.mark_collected,
        CalculationNameCommand(db_path=db_path, namespace=namespace, name=name),
    )


@vega_dispatch.group()
def bulks() -> None:
    """Calculation bulk commands."""


@bulks.command("submit")
@_db_path_option
@_namespace_option
@click.argument("definition", type=click.Path(path_type=Path, dir_okay=False, exists=True))
def bulks_submit(db_path: Path | None, namespace: str | None, definition: Path) -> None:
    """Submit a bulk definition file (YAML or JSON)."""

    _emit(
        CONTROLLER.submit_bulk,
        BulkSubmitCommand(db_path=db_path, namespace=namespace, definition_path=definition),
    )


@bulks.command("list")
@_db_path_option
@_namespace_option
def bulks_list(db_path: Path | None, namespace: str | None) -> None:
    """List bulks with their progress."""

    _emit(CONTROLLER.list_bulks, NamespaceCommand(db_path=db_path, namespace=namespace))


@vega_dispatch.group()
def factories() -> None:
    """Bulk factory commands."""


@factories.command("create")
@_db_path_option
@_namespace_option
@click.argument("name")
@click.option("--command", "factory_command", required=True, help="Generation command.")
@click.option("--arg", "args", multiple=True, help="Generation command argument. Can be repeated.")
@click.option(
    "--bulk-output",
    required=True,
    help="Bulk definition file the command writes, relative to the root folder.",
)
@click.option("--pool", "worker_pool", default="", help="Target worker pool.")
@click.option("--root-folder", default="", help="Folder under the shared storage root.")
@click.option("--input-file", "input_files", multiple=True, help="Input file. Can be repeated.")
def factories_create(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str | None,
    name: str,
    factory_command: str,
    args: tuple[str, ...],
    bulk_output: str,
    worker_pool: str,
    root_folder: str,
    input_files: tuple[str, ...],
) -> None:
    """Create a bulk factory."""

    _emit(
        CONTROLLER.create_factory,
        FactoryCreateCommand(
            db_path=db_path,
            namespace=namespace,
            name=name,
            command=factory_command,
            args=args,
            bulk_output=bulk_output,
            worker_pool=worker_pool,
            root_folder=root_folder,
            input_files=input_files,
        ),
    )


@factories.command("complete")
@_db_path_option
@_namespace_option
@click.argument("name")
@click.option("--failed", is_flag=True, default=False, help="Record the generation as failed.")
def factories_complete(
    db_path: Path | None,
    namespace: str | None,
    name: str,
    failed: bool,
) -> None:
    """Mark a factory's generation step as finished."""

    _emit(
        CONTROLLER.complete_factory,
        FactoryCompleteCommand(db_path=db_path, namespace=namespace, name=name, failed=failed),
    )


@factories.command("list")
@_db_path_option
@_namespace_option
def factories_list(db_path: Path | None, namespace: str | None) -> None:
    """List bulk factories."""

    _emit(CONTROLLER.list_factories, NamespaceCommand(db_path=db_path, namespace=namespace))


@vega_dispatch.group()
def pools() -> None:
    """Worker pool commands."""


@pools.command("list")
@_db_path_option
@_namespace_option
def pools_list(db_path: Path | None, namespace: str | None) -> None:
    """List worker pools and their slots."""

    _emit(CONTROLLER.list_pools, NamespaceCommand(db_path=db_path, namespace=namespace))


@vega_dispatch.command("stats")
@_db_path_option
@_namespace_option
def stats(db_path: Path | None, namespace: str | None) -> None:
    """Show calculation, worker and bulk counts."""

    _emit(CONTROLLER.stats, NamespaceCommand(db_path=db_path, namespace=namespace))


@vega_dispatch.command("events")
@_db_path_option
@click.option(
    "--after-id",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only events newer than this id.",
)
@click.option("--kind", default=None, help="Object kind filter, for example Calculation.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=100,
    show_default=True,
    help="Max number of events to print.",
)
def events(db_path: Path | None, after_id: int, kind: str | None, limit: int) -> None:
    """Print the store's change log."""

    _emit(
        CONTROLLER.events,
        EventsCommand(db_path=db_path, after_id=after_id, kind=kind, limit=limit),
    )


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except DispatchError as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    vega_dispatch()
