"""Pipeline orchestrator — the entry point for running pipelines.

The Orchestrator wires together the RunLedger, ArtifactStore, collaborator
registry and Scheduler, and turns a pipeline definition plus parameter and
secret bags into a ``Run``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from gantry.collaborators.base import Collaborator
from gantry.collaborators.function import FunctionCollaborator
from gantry.collaborators.shell import ShellCollaborator
from gantry.config import GantrySettings, get_settings
from gantry.core.artifact_store import ArtifactStore
from gantry.core.errors import UnknownCollaboratorError
from gantry.core.loader import bind_parameters, validate_definition
from gantry.core.run import Run
from gantry.core.run_ledger import RunLedger
from gantry.core.scheduler import Scheduler
from gantry.core.task_machine import TaskListener
from gantry.models.config import EngineConfig, RunContext
from gantry.models.pipeline import PipelineDefinition
from gantry.models.reports import RunReport

logger = logging.getLogger(__name__)


class Orchestrator:
    """Creates and executes pipeline runs.

    Parameters
    ----------
    config:
        Engine configuration. Derived from ``settings`` if not provided.
    settings:
        Environment-driven settings. Read from the environment if not provided.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        settings: GantrySettings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.config = config or EngineConfig.from_settings(self.settings)

        self.ledger = RunLedger(self.config.ledger_db_path)
        self.artifact_store = ArtifactStore(self.config.artifact_store_path)

        self._collaborators: dict[str, Collaborator] = {"shell": ShellCollaborator()}
        self._listeners: list[TaskListener] = []
        self._active: dict[str, Run] = {}
        self._active_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_collaborator(
        self, name: str, collaborator: Collaborator | Callable[..., Any]
    ) -> None:
        """Make *collaborator* available to tasks as ``uses: <name>``.

        A plain callable is wrapped in a ``FunctionCollaborator``.
        """
        if not isinstance(collaborator, Collaborator):
            collaborator = FunctionCollaborator(collaborator)
        self._collaborators[name] = collaborator

    @property
    def collaborators(self) -> list[str]:
        return sorted(self._collaborators)

    def add_listener(self, listener: TaskListener) -> None:
        """Receive a ``TaskEvent`` for every task transition of every run."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def plan(self, definition: PipelineDefinition) -> list[list[str]]:
        """Validate a definition and return its execution waves."""
        return validate_definition(definition).topological_batches()

    def start_run(
        self,
        definition: PipelineDefinition,
        parameters: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
        *,
        context: RunContext | None = None,
    ) -> Run:
        """Validate everything and return a PENDING run.

        Raises ``DefinitionError`` for an invalid graph, bad templates,
        missing parameters/secrets, or unknown collaborators.
        """
        graph = validate_definition(definition)
        for task in graph:
            if task.uses not in self._collaborators:
                raise UnknownCollaboratorError(
                    f"Task {task.name!r} uses unknown collaborator {task.uses!r}"
                )
        bound_params, bound_secrets = bind_parameters(definition, parameters, secrets)
        context = context or RunContext(environment=self.settings.environment)

        scheduler = Scheduler(
            self.artifact_store,
            self._collaborators,
            context=context,
            parameters=bound_params,
            secrets=bound_secrets,
            env=definition.env,
            workspace_root=self.config.workspace_path,
            ledger=self.ledger,
            pipeline_name=definition.name,
            max_parallelism=self.config.max_parallelism,
            poll_interval=self.config.poll_interval_seconds,
            listeners=self._listeners,
        )
        return Run(definition, graph, context, scheduler, self.artifact_store, self.ledger)

    def run(
        self,
        definition: PipelineDefinition,
        parameters: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
        *,
        context: RunContext | None = None,
        max_parallelism: int | None = None,
    ) -> RunReport:
        """Start a run and execute it to its terminal status."""
        run = self.start_run(definition, parameters, secrets, context=context)
        with self._active_lock:
            self._active[run.run_id] = run
        try:
            return run.execute(max_parallelism)
        finally:
            with self._active_lock:
                self._active.pop(run.run_id, None)

    def cancel(self, run_id: str) -> bool:
        """Cancel an active run. Returns False if no such run is active."""
        with self._active_lock:
            run = self._active.get(run_id)
        if run is None:
            return False
        run.cancel()
        return True

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_report(self, run_id: str) -> RunReport | None:
        """Return the archived report of a finished run."""
        return self.ledger.get_report(run_id)

    def list_runs(self, limit: int = 20) -> list[dict[str, str | None]]:
        return self.ledger.list_runs(limit)

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity of a run's ledger entries."""
        return self.ledger.verify_chain(run_id)

    def prune_artifacts(self, retention_days: int | None = None) -> list[str]:
        """Purge artifacts of runs older than the retention policy."""
        days = self.config.artifact_retention_days if retention_days is None else retention_days
        purged = self.artifact_store.prune_expired(days)
        if purged:
            logger.info("Pruned artifacts of %d run(s)", len(purged))
        return purged
