"""File-based contract for bulk definitions produced by factories or submitted by operators."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from vega_dispatch.errors import InvalidDefinitionError
from vega_dispatch.models import (
    DEFAULT_NAMESPACE,
    BulkCalculation,
    CalculationBulk,
    ObjectMeta,
    Params,
    Step,
)


def read_bulk_definition(
    path: Path,
    *,
    default_namespace: str = DEFAULT_NAMESPACE,
) -> CalculationBulk:
    """Load and validate a bulk definition file.

    ``OSError`` from reading the file propagates unchanged; undecodable bytes
    and anything wrong with the document itself raise ``InvalidDefinitionError``.
    """

    try:
        text = path.read_text("utf-8")
    except UnicodeDecodeError as error:
        raise InvalidDefinitionError(f"Bulk definition {path} is not UTF-8: {error}") from error
    return parse_bulk_definition(load_definition_text(text), default_namespace=default_namespace)


def load_definition_text(text: str) -> dict[str, Any]:
    """Decode YAML (or JSON, which YAML accepts) into a top-level mapping."""

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise InvalidDefinitionError(f"Bulk definition is not valid YAML/JSON: {error}") from error
    if not isinstance(raw, dict):
        raise InvalidDefinitionError("Bulk definition must be a mapping at top level")
    return raw


def parse_bulk_definition(
    raw: dict[str, Any],
    *,
    default_namespace: str = DEFAULT_NAMESPACE,
) -> CalculationBulk:
    metadata = raw.get("metadata")
    if not isinstance(metadata, dict):
        raise InvalidDefinitionError("metadata must be an object")
    name = metadata.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InvalidDefinitionError("metadata.name must be a non-empty string")
    namespace = metadata.get("namespace") or default_namespace
    if not isinstance(namespace, str):
        raise InvalidDefinitionError("metadata.namespace must be a string")
    labels = metadata.get("labels") or {}
    if not isinstance(labels, dict):
        raise InvalidDefinitionError("metadata.labels must be an object")

    raw_calculations = raw.get("calculations") or {}
    if not isinstance(raw_calculations, dict):
        raise InvalidDefinitionError("calculations must be an object keyed by member name")
    calculations = {
        str(key): _parse_member(value, where=f"calculations.{key}")
        for key, value in raw_calculations.items()
    }

    raw_post = raw.get("post_calculation")
    post = _parse_member(raw_post, where="post_calculation") if raw_post is not None else None

    return CalculationBulk(
        meta=ObjectMeta(
            name=name.strip(),
            namespace=namespace,
            labels={str(key): str(value) for key, value in labels.items()},
        ),
        worker_pool=_optional_str(raw, "worker_pool"),
        root_folder=_optional_str(raw, "root_folder"),
        calculations=calculations,
        post_calculation=post,
    )


def _parse_member(raw: Any, *, where: str) -> BulkCalculation:
    if not isinstance(raw, dict):
        raise InvalidDefinitionError(f"{where} must be an object")

    params = raw.get("params") or {}
    if not isinstance(params, dict):
        raise InvalidDefinitionError(f"{where}.params must be an object")
    try:
        parsed_params = Params.from_payload(params)
    except (TypeError, ValueError) as error:
        raise InvalidDefinitionError(f"{where}.params must hold numbers: {error}") from error

    raw_steps = raw.get("steps") or []
    if not isinstance(raw_steps, list):
        raise InvalidDefinitionError(f"{where}.steps must be an array")
    steps: list[Step] = []
    for index, item in enumerate(raw_steps):
        if not isinstance(item, dict) or not isinstance(item.get("command"), str):
            raise InvalidDefinitionError(f"{where}.steps[{index}].command must be a string")
        args = item.get("args") or []
        if not isinstance(args, list):
            raise InvalidDefinitionError(f"{where}.steps[{index}].args must be an array")
        steps.append(Step(command=item["command"], args=[str(arg) for arg in args]))

    input_files = raw.get("input_files") or []
    if not isinstance(input_files, list):
        raise InvalidDefinitionError(f"{where}.input_files must be an array")

    pipeline = _optional_str(raw, "pipeline")
    if not steps and not pipeline:
        raise InvalidDefinitionError(f"{where} needs either steps or a pipeline")

    return BulkCalculation(
        params=parsed_params,
        steps=steps,
        pipeline=pipeline,
        input_files=[str(item) for item in input_files],
    )


def _optional_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidDefinitionError(f"{key} must be a string")
    return value
