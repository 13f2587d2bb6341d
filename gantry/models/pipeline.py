"""Pipeline definition models — what a YAML pipeline file validates into."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from gantry.models.tasks import TaskDefinition


class ParameterSpec(BaseModel):
    """A declared run parameter (e.g. image name, language version)."""

    model_config = ConfigDict(frozen=True)

    required: bool = False
    default: str | None = None
    description: str = ""

    @field_validator("default", mode="before")
    @classmethod
    def _stringify_default(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class SecretSpec(BaseModel):
    """A declared secret. Values are supplied per run and never logged."""

    model_config = ConfigDict(frozen=True)

    required: bool = True
    description: str = ""


class PipelineDefinition(BaseModel):
    """A complete pipeline: declared inputs plus the task list.

    ``tasks`` accepts either a list of task bodies or a mapping of
    ``name -> body``; mapping order is the declaration order used to
    break ties between tasks in the same wave.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "pipeline"
    description: str = ""
    parameters: dict[str, ParameterSpec] = {}
    secrets: dict[str, SecretSpec] = {}
    env: dict[str, str] = {}
    tasks: list[TaskDefinition] = []

    @field_validator("parameters", "secrets", mode="before")
    @classmethod
    def _allow_bare_names(cls, value: Any) -> Any:
        # ``secrets: [A, B]`` or ``parameters: {x: null}`` are shorthand.
        if isinstance(value, (list, tuple)):
            return {str(name): {} for name in value}
        if isinstance(value, dict):
            return {str(k): (v if v is not None else {}) for k, v in value.items()}
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @field_validator("tasks", mode="before")
    @classmethod
    def _tasks_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, dict):
            tasks = []
            for name, body in value.items():
                body = dict(body or {})
                body.setdefault("name", str(name))
                tasks.append(body)
            return tasks
        return value

    def get_task(self, name: str) -> TaskDefinition:
        """Return the task named *name*, raising ``KeyError`` if absent."""
        for task in self.tasks:
            if task.name == name:
                return task
        raise KeyError(name)
