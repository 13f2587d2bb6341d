"""Shared test fixtures for Gantry."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from gantry.config import GantrySettings
from gantry.core.artifact_store import ArtifactStore
from gantry.core.orchestrator import Orchestrator
from gantry.core.run_ledger import RunLedger
from gantry.models.config import EngineConfig, RunContext
from gantry.models.pipeline import PipelineDefinition
from gantry.models.tasks import TaskDefinition


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test state."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ArtifactStore:
    """Provide a fresh ArtifactStore in a temp directory."""
    return ArtifactStore(tmp_dir / "artifacts")


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "gantry-test-run-001"


@pytest.fixture
def run_context(run_id: str, tmp_dir: Path) -> RunContext:
    """Run context on the master branch of the dev environment."""
    return RunContext(
        run_id=run_id,
        ref="refs/heads/master",
        revision="0123abcd",
        environment="dev",
        source_dir=tmp_dir,
    )


@pytest.fixture
def engine_config(tmp_dir: Path) -> EngineConfig:
    """Engine config with every path under the temp directory."""
    return EngineConfig(
        ledger_db_path=tmp_dir / "state" / "ledger.db",
        artifact_store_path=tmp_dir / "state" / "artifacts",
        workspace_path=tmp_dir / "state" / "workspaces",
        max_parallelism=4,
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def orchestrator(engine_config: EngineConfig) -> Orchestrator:
    """Orchestrator over temp state, with default settings."""
    return Orchestrator(config=engine_config, settings=GantrySettings(_env_file=None))


@pytest.fixture
def gantry_env(tmp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point GANTRY_* settings at the temp directory (for CLI tests)."""
    state = tmp_dir / "state"
    monkeypatch.setenv("GANTRY_LEDGER_PATH", str(state / "ledger.db"))
    monkeypatch.setenv("GANTRY_ARTIFACT_STORE_PATH", str(state / "artifacts"))
    monkeypatch.setenv("GANTRY_WORKSPACE_PATH", str(state / "workspaces"))
    monkeypatch.setenv("GANTRY_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("GANTRY_ENVIRONMENT", "")
    monkeypatch.chdir(tmp_dir)
    return state


# ---------------------------------------------------------------------------
# Definition factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_task() -> Callable[..., TaskDefinition]:
    """Factory fixture: build a TaskDefinition with sensible defaults."""

    def _factory(name: str, needs: list[str] | None = None, **overrides: Any) -> TaskDefinition:
        defaults: dict[str, Any] = {"name": name, "needs": needs or []}
        defaults.update(overrides)
        return TaskDefinition(**defaults)

    return _factory


@pytest.fixture
def make_pipeline() -> Callable[..., PipelineDefinition]:
    """Factory fixture: build a PipelineDefinition from a ``name -> body`` mapping."""

    def _factory(tasks: dict[str, dict[str, Any]], **overrides: Any) -> PipelineDefinition:
        raw: dict[str, Any] = {"name": "test-pipeline", "tasks": tasks}
        raw.update(overrides)
        return PipelineDefinition.model_validate(raw)

    return _factory


@pytest.fixture
def container_pipeline(make_pipeline) -> PipelineDefinition:
    """The build -> {tests, coverage, lint} -> publish -> deploy pipeline."""
    return make_pipeline(
        {
            "build": {"uses": "fake", "outputs": {"image": "image.tar"}},
            "tests": {"uses": "fake", "needs": ["build"], "outputs": ["test-results.xml"]},
            "coverage": {
                "uses": "fake",
                "needs": ["build"],
                "outputs": {"coverage-report": "coverage.xml"},
            },
            "lint": {
                "uses": "fake",
                "needs": ["build"],
                "allow_failure": True,
                "outputs": {"flake8-report": "flake8-report.xml"},
            },
            "publish": {
                "uses": "fake",
                "needs": ["build", "tests", "coverage", "lint"],
                "inputs": ["image"],
            },
            "deploy": {"uses": "fake", "needs": ["publish"]},
        },
        name="container-service",
    )
