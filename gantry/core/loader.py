"""Pipeline definition loading and pre-execution validation.

A pipeline file is YAML::

    name: container-service
    parameters:
      image_name: {required: true}
      python_version: {default: "3.13"}
    secrets: [REGISTRY_TOKEN]
    tasks:
      build:
        run: docker build -t ${{ params.image_name }} ${{ run.source_dir }}
        outputs: {image: image.tar}
      test:
        needs: [build]
        run: pytest --junitxml=test-results.xml
        outputs: [test-results.xml]

Everything that can be checked without executing anything is checked
here: schema, graph shape, artifact hand-offs, template references, and
the parameter/secret bags of a run.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import ValidationError

from gantry.core.errors import DefinitionError, MissingParameterError
from gantry.core.graph import DependencyGraph
from gantry.core.templating import check_template
from gantry.models.pipeline import PipelineDefinition

logger = logging.getLogger(__name__)


def parse_pipeline(text: str, *, default_name: str = "pipeline") -> PipelineDefinition:
    """Parse YAML text into a validated ``PipelineDefinition``."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Pipeline is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise DefinitionError("Pipeline file must contain a mapping at top level.")

    raw.setdefault("name", default_name)
    try:
        definition = PipelineDefinition.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid pipeline definition:\n{exc}") from exc

    validate_definition(definition)
    return definition


def load_pipeline(path: Path) -> PipelineDefinition:
    """Read and validate a pipeline file; its stem is the default name."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DefinitionError(f"Cannot read pipeline file {path}: {exc}") from exc
    definition = parse_pipeline(text, default_name=path.stem)
    logger.debug("Loaded pipeline %s from %s", definition.name, path)
    return definition


def validate_definition(definition: PipelineDefinition) -> DependencyGraph:
    """Check graph shape and template references; return the built graph."""
    if not definition.tasks:
        raise DefinitionError(f"Pipeline {definition.name!r} defines no tasks.")

    graph = DependencyGraph.from_pipeline(definition)
    known = {
        "parameters": definition.parameters.keys(),
        "secrets": definition.secrets.keys(),
        "env": definition.env.keys(),
    }
    for task in definition.tasks:
        templates = [
            *((f"run[{i}]", cmd) for i, cmd in enumerate(task.run)),
            *((f"with.{k}", v) for k, v in task.options.items()),
            *((f"env.{k}", v) for k, v in task.env.items()),
        ]
        for where, template in templates:
            check_template(template, where=f"task {task.name} {where}", **known)
    return graph


def bind_parameters(
    definition: PipelineDefinition,
    parameters: Mapping[str, str] | None = None,
    secrets: Mapping[str, str] | None = None,
) -> tuple[dict[str, str], dict[str, str]]:
    """Resolve a run's parameter and secret bags against the declarations.

    Defaults are applied; missing required values raise
    ``MissingParameterError``; undeclared parameters raise
    ``DefinitionError``. Undeclared secrets are dropped.
    """
    parameters = dict(parameters or {})
    secrets = dict(secrets or {})

    unknown = sorted(set(parameters) - set(definition.parameters))
    if unknown:
        raise DefinitionError(f"Undeclared parameter(s): {', '.join(unknown)}")

    extra_secrets = sorted(set(secrets) - set(definition.secrets))
    if extra_secrets:
        logger.warning("Ignoring undeclared secret(s): %s", ", ".join(extra_secrets))

    missing: list[str] = []
    bound_params: dict[str, str] = {}
    for name, spec in definition.parameters.items():
        if name in parameters:
            bound_params[name] = str(parameters[name])
        elif spec.default is not None:
            bound_params[name] = spec.default
        elif spec.required:
            missing.append(f"parameter {name}")
        else:
            bound_params[name] = ""

    bound_secrets: dict[str, str] = {}
    for name, spec in definition.secrets.items():
        if secrets.get(name):
            bound_secrets[name] = secrets[name]
        elif spec.required:
            missing.append(f"secret {name}")
        else:
            bound_secrets[name] = ""

    if missing:
        raise MissingParameterError(f"Missing required {', '.join(missing)}")
    return bound_params, bound_secrets
