"""Run report models — the structured output of a finished run."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from gantry.models.artifacts import ArtifactRef
from gantry.models.tasks import SkipReason, TaskOutcome, TaskStatus


class RunStatus(str, Enum):
    """Overall status of one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskEvent(BaseModel):
    """Emitted to scheduler listeners on every task status change."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    task_name: str
    from_status: TaskStatus
    to_status: TaskStatus
    attempt: int = 0
    detail: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class TaskReport(BaseModel):
    """Final record of one task within a run."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: TaskStatus
    outcome: TaskOutcome
    required: bool = True
    skip_reason: SkipReason | None = None
    error: str = ""
    error_type: str = ""  # exception class behind the error, if any
    exit_code: int | None = None
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    artifacts: list[ArtifactRef] = []
    logs: str = ""  # collaborator output, secrets redacted

    @property
    def counts_as_failure(self) -> bool:
        """Whether this task makes the run fail."""
        if not self.required:
            return False
        if self.status == TaskStatus.FAILED:
            return True
        return (
            self.status == TaskStatus.SKIPPED
            and self.skip_reason is not None
            and self.skip_reason.is_failure
        )


class RunReport(BaseModel):
    """Structured report emitted when a run reaches its terminal status."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline: str
    status: RunStatus
    ref: str = ""
    revision: str = ""
    environment: str = ""
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    error: str = ""  # run-level fatal error (artifact contract violation)
    tasks: list[TaskReport] = []

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        """Process exit code: 0 iff the run succeeded."""
        return 0 if self.succeeded else 1

    @property
    def failed_tasks(self) -> list[str]:
        """Names of required tasks whose collaborator failed."""
        return [
            t.name
            for t in self.tasks
            if t.required and t.status == TaskStatus.FAILED
        ]

    @property
    def artifacts(self) -> list[ArtifactRef]:
        return [ref for t in self.tasks for ref in t.artifacts]

    def get_task(self, name: str) -> TaskReport:
        for task in self.tasks:
            if task.name == name:
                return task
        raise KeyError(name)
