"""Gantry data models — all Pydantic v2, all frozen (immutable)."""

from gantry.models.artifacts import ArtifactPayload, ArtifactRef
from gantry.models.config import EngineConfig, RunContext
from gantry.models.ledger import LedgerEntry
from gantry.models.pipeline import ParameterSpec, PipelineDefinition, SecretSpec
from gantry.models.reports import RunReport, RunStatus, TaskEvent, TaskReport
from gantry.models.tasks import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    RetryPolicy,
    RunCondition,
    SkipReason,
    TaskDefinition,
    TaskOutcome,
    TaskStatus,
)

__all__ = [
    # tasks
    "TaskStatus",
    "TaskOutcome",
    "SkipReason",
    "RetryPolicy",
    "RunCondition",
    "TaskDefinition",
    "VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    # pipeline
    "ParameterSpec",
    "SecretSpec",
    "PipelineDefinition",
    # artifacts
    "ArtifactRef",
    "ArtifactPayload",
    # config
    "EngineConfig",
    "RunContext",
    # ledger
    "LedgerEntry",
    # reports
    "RunStatus",
    "TaskEvent",
    "TaskReport",
    "RunReport",
]
