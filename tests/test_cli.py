from __future__ import annotations

import os
import re
from collections.abc import Callable
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from vega_dispatch import __version__
from vega_dispatch.main import vega_dispatch
from vega_dispatch.models import Calculation, CalculationPhase, WorkerPool, WorkerState
from vega_dispatch.storage.repository import ObjectStore

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Submission & Inspection"),
]

_BULK_DEFINITION = """
metadata:
  name: grid
worker_pool: pool-a
calculations:
  t9000:
    params: {teff: 9000, log_g: 4.0}
    steps:
      - command: echo
        args: ["9000"]
  t9500:
    params: {teff: 9500, log_g: 4.5}
    steps:
      - command: echo
        args: ["9500"]
post_calculation:
  steps:
    - command: collect
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("VEGA_DISPATCH_"):
            monkeypatch.delenv(name, raising=False)


def _invoke(db_path: Path, *args: str) -> tuple[int, str]:
    result = CliRunner().invoke(vega_dispatch, [*args, "--db-path", str(db_path)])
    return result.exit_code, result.output


def _created_name(output: str) -> str:
    match = re.search(r"name=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_create_list_and_inspect_calculation(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    code, output = _invoke(
        db_path,
        "calculations",
        "create",
        "--teff",
        "9000",
        "--log-g",
        "4.0",
        "--step",
        "atlas12_ada s",
        "--step",
        "synthe 'line list'",
        "--root-folder",
        "runs/a",
    )
    assert code == 0, output
    assert "phase=Created steps=2" in output
    name = _created_name(output)

    code, output = _invoke(db_path, "calculations", "list", "--phase", "created")
    assert code == 0, output
    assert "Calculations: 1" in output
    assert name in output

    code, output = _invoke(db_path, "calculations", "inspect", name)
    assert code == 0, output
    assert "Phase: Created" in output
    assert "Root folder: runs/a" in output
    assert "[1] Pending synthe 'line list'" in output

    code, output = _invoke(db_path, "calculations", "inspect", "calc-missing")
    assert code == 0
    assert "Calculation not found: calc-missing" in output


def test_same_inputs_cannot_be_created_twice(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    args = ("calculations", "create", "--teff", "9000", "--step", "echo hi")

    assert _invoke(db_path, *args)[0] == 0
    code, _ = _invoke(db_path, *args)

    assert code == 1


def test_create_requires_steps_or_pipeline(tmp_path: Path) -> None:
    code, _ = _invoke(tmp_path / "cli.db", "calculations", "create", "--teff", "9000")

    assert code == 2


def test_mark_collected_requires_a_finished_calculation(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _, output = _invoke(db_path, "calculations", "create", "--step", "echo hi")
    name = _created_name(output)

    code, _ = _invoke(db_path, "calculations", "mark-collected", name)
    assert code == 2

    store = ObjectStore(db_path)
    calculation = store.get(Calculation, namespace="vega", name=name)
    calculation.phase = CalculationPhase.COMPLETED
    store.update(calculation)
    store.close()

    code, output = _invoke(db_path, "calculations", "mark-collected", name)
    assert code == 0, output
    assert f"Results collected: {name}" in output


def test_submit_and_list_bulk(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    definition = tmp_path / "grid.yaml"
    definition.write_text(_BULK_DEFINITION, "utf-8")

    code, output = _invoke(db_path, "bulks", "submit", str(definition))
    assert code == 0, output
    assert "Bulk submitted: name=vega/grid members=2 pool=pool-a post_calculation=yes" in output

    code, output = _invoke(db_path, "bulks", "list")
    assert code == 0, output
    assert "Bulks: 1" in output
    assert "grid state=New finished=0/2 pool=pool-a" in output


def test_invalid_bulk_definition_is_reported(tmp_path: Path) -> None:
    definition = tmp_path / "broken.yaml"
    definition.write_text("metadata: {name: broken}\ncalculations: []\n", "utf-8")

    code, _ = _invoke(tmp_path / "cli.db", "bulks", "submit", str(definition))

    assert code != 0


def test_factory_create_complete_and_list(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    code, output = _invoke(
        db_path,
        "factories",
        "create",
        "grid-factory",
        "--command",
        "make-grid",
        "--arg",
        "dense",
        "--bulk-output",
        "bulk.yaml",
        "--pool",
        "pool-a",
    )
    assert code == 0, output
    assert "Factory created: name=grid-factory output=bulk.yaml pool=pool-a" in output

    code, output = _invoke(db_path, "factories", "complete", "grid-factory", "--failed")
    assert code == 0, output
    assert "(Unavailable)" in output

    code, output = _invoke(db_path, "factories", "list")
    assert code == 0, output
    assert "Factories: 1" in output
    assert "condition=Unavailable" in output


def test_pools_stats_and_events(
    store: ObjectStore,
    make_pool: Callable[..., WorkerPool],
) -> None:
    make_pool(workers=(("n1", "w1", WorkerState.AVAILABLE), ("n2", "w2", WorkerState.PROCESSING)))
    db_path = store.db_path

    code, output = _invoke(db_path, "pools", "list")
    assert code == 0, output
    assert "Pools: 1" in output
    assert "n2 name=w2 state=Processing" in output

    code, output = _invoke(db_path, "stats")
    assert code == 0, output
    assert "Dispatch state (namespace=vega)" in output
    assert "Available=1 Processing=1" in output

    code, output = _invoke(db_path, "events", "--kind", "WorkerPool")
    assert code == 0, output
    assert "Events: 1" in output
    assert "WorkerPool vega/pool-a" in output


def test_version_and_log_level_options() -> None:
    result = CliRunner().invoke(vega_dispatch, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output

    result = CliRunner().invoke(vega_dispatch, ["--log-level", "loud", "stats"])
    assert result.exit_code == 2
