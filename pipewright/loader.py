"""Load a pipeline definition from ``pipewright.toml``.

Example::

    name = "web"

    [triggers]
    branches = ["main", "release/*"]
    ignore_paths = ["k8s/**", "*.md"]

    [gitops]
    manifest_path = "k8s/deployment.yaml"
    image_name = "ghcr.io/acme/web"

    [[stages]]
    id = "build"
    name = "Build"
    produced_artifacts = ["build-artifacts"]

    [[stages.steps]]
    name = "compile"
    run = "npm run build"

    [[stages.steps]]
    name = "upload"
    uses = "publish-artifact"
    with = { key = "build-artifacts", path = "dist" }

Any problem with the file (syntax, schema, graph shape) is reported as a
``ConfigurationError`` before a run can start.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pipewright.core.stage_graph import ConfigurationError, StageGraph
from pipewright.models.config import PipelineDefinition

_STAGE_ALIASES = {"id": "stage_id", "name": "display_name"}


def _normalise_stage(raw: dict[str, Any]) -> dict[str, Any]:
    stage = {_STAGE_ALIASES.get(k, k): v for k, v in raw.items()}
    steps = []
    for step in stage.get("steps", []):
        step = dict(step)
        if isinstance(step.get("severity_filter"), str):
            step["severity_filter"] = step["severity_filter"].upper()
        steps.append(step)
    stage["steps"] = steps
    return stage


def parse_definition(data: dict[str, Any]) -> PipelineDefinition:
    """Validate a decoded TOML document into a :class:`PipelineDefinition`."""
    document = dict(data)
    document["stages"] = [_normalise_stage(s) for s in document.get("stages", [])]
    try:
        definition = PipelineDefinition.model_validate(document)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid pipeline definition: {problems}") from exc
    StageGraph(definition.stages)
    return definition


def loads_definition(text: str) -> PipelineDefinition:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML: {exc}") from exc
    return parse_definition(data)


def load_definition(path: Path | str) -> PipelineDefinition:
    """Read and validate the definition file at *path*."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"Definition file not found: {path}") from None
    return loads_definition(text)
