"""Runtime configuration — env-driven via pydantic-settings.

Reads from a .env file and GANTRY_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class GantrySettings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export GANTRY_LOG_LEVEL=DEBUG
        export GANTRY_MAX_PARALLELISM=8
        export GANTRY_LEDGER_PATH=/var/lib/gantry/ledger.db

    Or via .env file::

        GANTRY_ENVIRONMENT=dev
        GANTRY_ARTIFACT_RETENTION_DAYS=30
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="GANTRY_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime
    environment: str = ""  # default deployment target for runs
    log_level: str = "INFO"

    # Storage paths
    ledger_path: Path = Path(".gantry/ledger.db")
    artifact_store_path: Path = Path(".gantry/artifacts")
    workspace_path: Path = Path(".gantry/workspaces")

    # Scheduling
    max_parallelism: int = 4
    poll_interval_seconds: float = 0.2

    # Retention
    artifact_retention_days: int = 90


def get_settings() -> GantrySettings:
    """Read settings fresh from the environment."""
    return GantrySettings()
