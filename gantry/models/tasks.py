"""Task models — definitions, statuses, and the legal transition table."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskStatus(str, Enum):
    """Lifecycle status of a task within one run."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED}
)


# Legal status changes, enforced by TaskStateMachine.
# RUNNING -> READY is a retry after an infrastructure failure.
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.READY, TaskStatus.SKIPPED},
    TaskStatus.READY: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.READY},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.SKIPPED: set(),
}


class TaskOutcome(str, Enum):
    """How a terminal task ended, as shown in reports.

    ``SUCCEEDED_WITH_WARNINGS`` marks a best-effort task whose collaborator
    failed; it gates dependents like a success but stays visible.
    """

    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNINGS = "succeeded_with_warnings"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why a task was skipped instead of executed."""

    UPSTREAM_FAILED = "upstream_failed"
    UPSTREAM_SKIPPED = "upstream_skipped"
    CONDITION = "condition"
    CANCELLED = "cancelled"

    @property
    def is_failure(self) -> bool:
        """Whether this skip counts against the run's status."""
        return self in (SkipReason.UPSTREAM_FAILED, SkipReason.CANCELLED)


class RetryPolicy(BaseModel):
    """Bounded retry for infrastructure failures.

    Collaborator failures (non-zero exits) are never retried.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=0, ge=0)
    backoff_seconds: float = Field(default=0.0, ge=0.0)

    def can_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after *attempt* attempts."""
        return attempt <= self.max_retries


class RunCondition(BaseModel):
    """Guard that restricts a task to certain branches or environments.

    Empty lists mean "no restriction". Branch entries are shell-style
    patterns matched against the run's ref with ``refs/heads/`` stripped.
    """

    model_config = ConfigDict(frozen=True)

    branches: list[str] = []
    environments: list[str] = []

    @field_validator("branches", "environments", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class TaskDefinition(BaseModel):
    """Declarative description of one unit of delegated work.

    The ``needs`` list encodes the DAG: a task cannot start until every
    task it needs has succeeded, unless it is marked ``always``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    needs: list[str] = []
    uses: str = "shell"
    run: list[str] = []
    options: dict[str, str] = Field(default_factory=dict, alias="with")
    env: dict[str, str] = {}
    inputs: list[str] = []
    outputs: dict[str, str] = {}  # artifact name -> workspace-relative path
    allow_failure: bool = False  # best-effort: failure does not block dependents
    always: bool = False  # run once dependencies are terminal, whatever the outcome
    when: RunCondition | None = None
    retry: RetryPolicy = RetryPolicy()
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("needs", "inputs", mode="before")
    @classmethod
    def _coerce_name_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("run", mode="before")
    @classmethod
    def _coerce_commands(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("outputs", mode="before")
    @classmethod
    def _coerce_outputs(cls, value: Any) -> Any:
        # A bare list names files that double as artifact names.
        if value is None:
            return {}
        if isinstance(value, (list, tuple)):
            return {str(path): str(path) for path in value}
        return value

    @field_validator("options", "env", mode="before")
    @classmethod
    def _stringify_values(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @property
    def required(self) -> bool:
        """Whether a failure of this task fails the run."""
        return not self.allow_failure
