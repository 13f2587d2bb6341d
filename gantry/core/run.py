"""Run — one execution of a pipeline graph.

Holds the validated graph, the bound parameter and secret bags, the
artifact store and the scheduler, and moves through
PENDING -> RUNNING -> SUCCEEDED | FAILED exactly once.
"""

from __future__ import annotations

import logging
import threading

from gantry.core.artifact_store import ArtifactStore
from gantry.core.graph import DependencyGraph
from gantry.core.run_ledger import RunLedger
from gantry.core.scheduler import Scheduler
from gantry.models.artifacts import ArtifactRef
from gantry.models.config import RunContext
from gantry.models.pipeline import PipelineDefinition
from gantry.models.reports import RunReport, RunStatus

logger = logging.getLogger(__name__)


class RunAlreadyStartedError(RuntimeError):
    """Raised when ``execute()`` is called on a run that already ran."""


class Run:
    """A single pipeline run. Created by ``Orchestrator.start_run``."""

    def __init__(
        self,
        definition: PipelineDefinition,
        graph: DependencyGraph,
        context: RunContext,
        scheduler: Scheduler,
        store: ArtifactStore,
        ledger: RunLedger,
    ) -> None:
        self.definition = definition
        self.graph = graph
        self.context = context
        self.artifact_store = store
        self._scheduler = scheduler
        self._ledger = ledger
        self._status = RunStatus.PENDING
        self._status_lock = threading.Lock()
        self.report: RunReport | None = None

    @property
    def run_id(self) -> str:
        return self.context.run_id

    @property
    def status(self) -> RunStatus:
        return self._status

    def execute(self, max_parallelism: int | None = None) -> RunReport:
        """Run every task and archive the report in the ledger."""
        with self._status_lock:
            if self._status != RunStatus.PENDING:
                raise RunAlreadyStartedError(
                    f"Run {self.run_id} is already {self._status.value}"
                )
            self._status = RunStatus.RUNNING

        self._ledger.record_run_started(
            self.run_id, self.definition.name, self.context.created_at
        )
        logger.info("Run %s of %s started", self.run_id, self.definition.name)
        try:
            report = self._scheduler.run(self.graph, max_parallelism)
        except BaseException:
            self._status = RunStatus.FAILED
            raise

        self._ledger.record_run_finished(report)
        self.report = report
        self._status = report.status
        return report

    def cancel(self) -> None:
        """Stop dispatching new tasks and terminate running ones."""
        self._scheduler.cancel()

    def artifacts(self) -> list[ArtifactRef]:
        """Artifacts published so far in this run."""
        return self.artifact_store.list_artifacts(self.run_id)

    def fetch(self, artifact_name: str) -> bytes:
        """Bytes of a published artifact of this run."""
        return self.artifact_store.fetch(self.run_id, artifact_name)
