"""Engine and per-run configuration models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from gantry.config import GantrySettings


class EngineConfig(BaseModel):
    """Where the orchestrator keeps its state and how wide it runs.

    Derived from ``GantrySettings`` by default; tests build it directly
    with temporary paths.
    """

    model_config = ConfigDict(frozen=True)

    ledger_db_path: Path = Path(".gantry/ledger.db")
    artifact_store_path: Path = Path(".gantry/artifacts")
    workspace_path: Path = Path(".gantry/workspaces")
    max_parallelism: int = Field(default=4, ge=1)
    poll_interval_seconds: float = Field(default=0.2, gt=0)
    artifact_retention_days: int = Field(default=90, ge=0)

    @classmethod
    def from_settings(cls, settings: GantrySettings) -> EngineConfig:
        """Build an engine config from environment-driven settings."""
        return cls(
            ledger_db_path=settings.ledger_path,
            artifact_store_path=settings.artifact_store_path,
            workspace_path=settings.workspace_path,
            max_parallelism=settings.max_parallelism,
            poll_interval_seconds=settings.poll_interval_seconds,
            artifact_retention_days=settings.artifact_retention_days,
        )


def _new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"run-{ts}-{uuid.uuid4().hex[:6]}"


class RunContext(BaseModel):
    """Per-run facts that templates and ``when`` guards can see."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=_new_run_id)
    ref: str = ""  # branch or tag, e.g. "refs/heads/master" or "master"
    revision: str = ""  # commit id
    environment: str = ""  # deployment target, e.g. "dev"
    source_dir: Path = Field(default_factory=Path.cwd)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def branch(self) -> str:
        """The ref with any ``refs/heads/`` prefix removed."""
        return self.ref.removeprefix("refs/heads/")

    def template_namespace(self) -> dict[str, str]:
        """Values exposed to command templates as ``run.*``."""
        return {
            "id": self.run_id,
            "ref": self.ref,
            "branch": self.branch,
            "revision": self.revision,
            "environment": self.environment,
            "source_dir": str(self.source_dir),
        }
