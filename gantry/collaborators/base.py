"""The uniform contract between the orchestrator and the tools doing real work.

Any object with an ``execute(invocation) -> CollaboratorResult`` method
satisfies ``Collaborator``. The orchestrator never interprets what a
collaborator does; it records the status and captures declared outputs.

Failure signalling:
- return a result with status FAILED for a tool failure (non-zero exit);
- raise ``InfrastructureError`` when the environment itself failed and the
  attempt may be retried;
- any other exception is treated as a crashed tool.
"""

from __future__ import annotations

import threading
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class CollaboratorStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Invocation(BaseModel):
    """Everything a collaborator receives for one task attempt."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    run_id: str
    task_name: str
    attempt: int = 1
    commands: list[str] = []  # rendered; may contain secret values
    options: dict[str, str] = {}  # the task's ``with:`` block, rendered
    env: dict[str, str] = {}
    inputs: dict[str, bytes] = {}  # artifact name -> bytes
    input_files: dict[str, str] = {}  # artifact name -> file name to materialize as
    outputs: dict[str, str] = {}  # declared artifact name -> workspace-relative path
    parameters: dict[str, str] = {}
    secrets: dict[str, str] = {}
    workspace: Path
    source_dir: Path = Field(default_factory=Path.cwd)
    timeout_seconds: float | None = None
    cancel_event: threading.Event = Field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class CollaboratorResult(BaseModel):
    """What a collaborator reports back: status, produced outputs, logs."""

    model_config = ConfigDict(frozen=True)

    status: CollaboratorStatus
    outputs: dict[str, bytes] = {}
    logs: str = ""
    exit_code: int | None = None
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == CollaboratorStatus.SUCCEEDED


@runtime_checkable
class Collaborator(Protocol):
    """Protocol for external tool backends."""

    def execute(self, invocation: Invocation) -> CollaboratorResult:
        """Run the task's work and report the outcome."""
        ...
