"""Scheduler — walks the dependency graph and dispatches tasks to workers.

Algorithm:
- every task starts PENDING with a counter of unfinished dependencies;
- when a counter reaches zero the task is gated: it becomes READY if all
  dependencies succeeded (or it is marked ``always``) and its ``when``
  guard matches, otherwise it is SKIPPED and the skip propagates;
- up to ``max_parallelism`` READY tasks run at once on a thread pool;
- a failure never aborts independent branches already running.

The coordinating thread is the only one that changes counters and the
ready queue. Workers run the collaborator, publish outputs, and return.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections import deque
from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path

from gantry.collaborators.base import Collaborator, CollaboratorResult, Invocation
from gantry.core.artifact_store import ArtifactStore
from gantry.core.errors import (
    ArtifactError,
    ArtifactNotFoundError,
    CollaboratorError,
    InfrastructureError,
    UnknownCollaboratorError,
)
from gantry.core.graph import DependencyGraph
from gantry.core.hasher import compute_invocation_hash, compute_outputs_hash
from gantry.core.policy import evaluate_condition
from gantry.core.run_ledger import RunLedger
from gantry.core.task_machine import TaskListener, TaskStateMachine
from gantry.core.templating import SecretRedactor, render
from gantry.models.artifacts import ArtifactPayload, ArtifactRef
from gantry.models.config import RunContext
from gantry.models.reports import RunReport, RunStatus, TaskReport
from gantry.models.tasks import (
    SkipReason,
    TaskDefinition,
    TaskOutcome,
    TaskStatus,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _TaskRecord:
    """Mutable bookkeeping for one task during a run."""

    def __init__(self, task: TaskDefinition) -> None:
        self.task = task
        self.remaining = len(task.needs)
        self.status = TaskStatus.PENDING
        self.outcome: TaskOutcome | None = None
        self.skip_reason: SkipReason | None = None
        self.error = ""
        self.error_type = ""
        self.exit_code: int | None = None
        self.logs = ""
        self.attempts = 0
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.artifacts: list[ArtifactRef] = []

    def to_report(self) -> TaskReport:
        duration = 0.0
        if self.started_at and self.finished_at:
            duration = (self.finished_at - self.started_at).total_seconds()
        return TaskReport(
            name=self.task.name,
            status=self.status,
            outcome=self.outcome or TaskOutcome.SKIPPED,
            required=self.task.required,
            skip_reason=self.skip_reason,
            error=self.error,
            error_type=self.error_type,
            exit_code=self.exit_code,
            attempts=self.attempts,
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_seconds=duration,
            artifacts=list(self.artifacts),
            logs=self.logs,
        )


class _AttemptResult:
    """What a worker hands back to the coordinator."""

    def __init__(
        self,
        *,
        succeeded: bool,
        tolerated: bool = False,
        error: str = "",
        logs: str = "",
        artifacts: list[ArtifactRef] | None = None,
        invocation_hash: str = "",
        failure: CollaboratorError | None = None,
        fatal: ArtifactError | None = None,
    ) -> None:
        self.succeeded = succeeded
        self.tolerated = tolerated
        self.error = error
        self.failure = failure
        self.logs = logs
        self.artifacts = artifacts or []
        self.invocation_hash = invocation_hash
        self.fatal = fatal

    @property
    def error_type(self) -> str:
        cause = self.fatal or self.failure
        return type(cause).__name__ if cause is not None else ""

    @property
    def exit_code(self) -> int | None:
        return self.failure.exit_code if self.failure is not None else None


class Scheduler:
    """Executes one run of a dependency graph.

    Parameters
    ----------
    store:
        Artifact store shared by all tasks of the run.
    collaborators:
        ``uses`` name -> collaborator.
    context:
        Run context (id, ref, revision, environment, source dir).
    parameters, secrets, env:
        Resolved parameter bag, secret bag, and pipeline constants.
    workspace_root:
        Each task runs in ``{workspace_root}/{run_id}/{task}``.
    ledger:
        Run Ledger for transitions; ``None`` records nothing.
    """

    def __init__(
        self,
        store: ArtifactStore,
        collaborators: Mapping[str, Collaborator],
        *,
        context: RunContext,
        parameters: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
        workspace_root: Path = Path(".gantry/workspaces"),
        ledger: RunLedger | None = None,
        pipeline_name: str = "pipeline",
        max_parallelism: int = 4,
        poll_interval: float = 0.2,
        listeners: Iterable[TaskListener] = (),
    ) -> None:
        self._store = store
        self._collaborators = dict(collaborators)
        self._context = context
        self._parameters = dict(parameters or {})
        self._secrets = dict(secrets or {})
        self._env = dict(env or {})
        self._workspace_root = Path(workspace_root)
        self._ledger = ledger
        self._pipeline_name = pipeline_name
        self._max_parallelism = max_parallelism
        self._poll_interval = poll_interval
        self._listeners = list(listeners)

        self._redact = SecretRedactor(self._secrets.values())
        self._cancel_event = threading.Event()
        self._fatal_error = ""

        self._graph: DependencyGraph | None = None
        self._machine: TaskStateMachine | None = None
        self._records: dict[str, _TaskRecord] = {}
        self._ready: deque[str] = deque()

    @property
    def run_id(self) -> str:
        return self._context.run_id

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop dispatching; ask running collaborators to terminate."""
        if not self._cancel_event.is_set():
            logger.warning("Cancelling run %s", self.run_id)
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self, graph: DependencyGraph, max_parallelism: int | None = None
    ) -> RunReport:
        """Execute every task of *graph* and return the run report.

        The graph is validated first; a ``DefinitionError`` is raised before
        any task executes.
        """
        width = max_parallelism or self._max_parallelism
        if width < 1:
            raise ValueError(f"max_parallelism must be >= 1, got {width}")

        waves = graph.topological_batches()
        for task in graph:
            if task.uses not in self._collaborators:
                raise UnknownCollaboratorError(
                    f"Task {task.name!r} uses unknown collaborator {task.uses!r}"
                )

        self._graph = graph
        self._records = {task.name: _TaskRecord(task) for task in graph}
        self._ready.clear()
        self._machine = TaskStateMachine(self.run_id, graph.task_names, self._ledger)
        for listener in self._listeners:
            self._machine.add_listener(listener)

        started_at = _now()
        logger.info(
            "Run %s: %d task(s) in %d wave(s), max parallelism %d",
            self.run_id, len(graph), len(waves), width,
        )

        for name in graph.task_names:
            if self._records[name].remaining == 0:
                if self._gate(name):
                    self._propagate(name)

        in_flight: dict[Future[_AttemptResult], str] = {}
        with ThreadPoolExecutor(
            max_workers=width, thread_name_prefix=f"gantry-{self.run_id}"
        ) as pool:
            while True:
                if self.cancelled:
                    self._drain_ready()
                while self._ready and len(in_flight) < width:
                    name = self._ready.popleft()
                    self._start(name)
                    in_flight[pool.submit(self._execute, name)] = name
                if not in_flight:
                    break
                try:
                    done, _ = wait(
                        in_flight,
                        timeout=self._poll_interval,
                        return_when=FIRST_COMPLETED,
                    )
                except KeyboardInterrupt:
                    self.cancel()
                    continue
                for future in done:
                    self._complete(in_flight.pop(future), future)

        # Tasks never reached because dispatch stopped.
        for name in self._records:
            if not self._machine.status(name).is_terminal:
                self._skip(name, SkipReason.CANCELLED, "run cancelled")

        return self._build_report(started_at)

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def _gate(self, name: str) -> bool:
        """Decide a task whose dependencies are all terminal.

        Returns True if the task became terminal (skipped).
        """
        record = self._records[name]
        task = record.task
        if self.cancelled:
            self._skip(name, SkipReason.CANCELLED, "run cancelled")
            return True

        if not task.always:
            upstream = [self._records[d] for d in task.needs]
            failed = [
                r.task.name
                for r in upstream
                if r.status == TaskStatus.FAILED
                or (r.skip_reason is not None and r.skip_reason.is_failure)
            ]
            if failed:
                self._skip(
                    name,
                    SkipReason.UPSTREAM_FAILED,
                    f"upstream failed: {', '.join(failed)}",
                )
                return True
            skipped = [r.task.name for r in upstream if r.status == TaskStatus.SKIPPED]
            if skipped:
                self._skip(
                    name,
                    SkipReason.UPSTREAM_SKIPPED,
                    f"upstream skipped: {', '.join(skipped)}",
                )
                return True

        reason = evaluate_condition(task.when, self._context)
        if reason:
            self._skip(name, SkipReason.CONDITION, reason)
            return True

        self._transition(name, TaskStatus.READY)
        self._ready.append(name)
        return False

    def _propagate(self, finished: str) -> None:
        """Release dependents of a terminal task, cascading through skips."""
        pending = deque([finished])
        while pending:
            node = pending.popleft()
            for dependent in self._graph.dependents(node):
                record = self._records[dependent]
                record.remaining -= 1
                if record.remaining == 0 and self._gate(dependent):
                    pending.append(dependent)

    def _skip(self, name: str, reason: SkipReason, detail: str) -> None:
        record = self._records[name]
        record.skip_reason = reason
        record.outcome = TaskOutcome.SKIPPED
        record.error = detail if reason.is_failure else ""
        self._transition(name, TaskStatus.SKIPPED, detail=f"{reason.value}: {detail}")
        logger.info("Skipped %s (%s)", name, detail)

    def _drain_ready(self) -> None:
        while self._ready:
            self._skip(self._ready.popleft(), SkipReason.CANCELLED, "run cancelled")

    def _transition(self, name: str, target: TaskStatus, **kwargs) -> None:
        self._machine.transition(name, target, **kwargs)
        self._records[name].status = target

    # ------------------------------------------------------------------
    # Dispatch and completion (coordinator thread)
    # ------------------------------------------------------------------

    def _start(self, name: str) -> None:
        record = self._records[name]
        record.attempts = 1
        record.started_at = _now()
        self._transition(name, TaskStatus.RUNNING, attempt=1)
        logger.info("Starting %s", name)

    def _complete(self, name: str, future: Future[_AttemptResult]) -> None:
        record = self._records[name]
        record.finished_at = _now()
        try:
            result = future.result()
        except Exception as exc:
            logger.exception("Worker for %s crashed", name)
            failure = CollaboratorError(
                name, self._redact(f"worker crashed: {exc!r}")
            )
            tolerated = self._tolerates(record.task)
            result = _AttemptResult(
                succeeded=tolerated,
                tolerated=tolerated,
                error=failure.message,
                failure=failure,
            )

        record.logs = result.logs
        record.artifacts = result.artifacts
        record.error_type = result.error_type
        record.exit_code = result.exit_code
        refs = [ref.content_address for ref in result.artifacts]
        outputs_hash = compute_outputs_hash(
            name, {ref.name: ref.content_address for ref in result.artifacts}
        )

        if result.succeeded:
            record.outcome = (
                TaskOutcome.SUCCEEDED_WITH_WARNINGS
                if result.tolerated
                else TaskOutcome.SUCCEEDED
            )
            record.error = result.error
            self._transition(
                name,
                TaskStatus.SUCCEEDED,
                attempt=record.attempts,
                detail=result.error,
                invocation_hash=result.invocation_hash,
                outputs_hash=outputs_hash,
                artifact_references=refs,
            )
            if result.tolerated:
                logger.warning("%s failed but is best-effort: %s", name, result.error)
            else:
                logger.info("%s succeeded", name)
        else:
            record.outcome = TaskOutcome.FAILED
            record.error = result.error
            self._transition(
                name,
                TaskStatus.FAILED,
                attempt=record.attempts,
                detail=result.error,
                invocation_hash=result.invocation_hash,
            )
            logger.error("%s failed: %s", name, result.error)

        if result.fatal is not None:
            self._fatal_error = self._redact(str(result.fatal))
            logger.error("Artifact contract violated, aborting: %s", self._fatal_error)
            self.cancel()

        self._propagate(name)

    # ------------------------------------------------------------------
    # Execution (worker thread)
    # ------------------------------------------------------------------

    def _execute(self, name: str) -> _AttemptResult:
        """Run one task, retrying infrastructure failures per its policy."""
        record = self._records[name]
        task = record.task
        while True:
            try:
                return self._attempt(task, record.attempts)
            except InfrastructureError as exc:
                message = self._redact(str(exc))
                if not task.retry.can_retry(record.attempts) or self.cancelled:
                    return self._failure(
                        task,
                        CollaboratorError(
                            name,
                            f"infrastructure failure after {record.attempts} "
                            f"attempt(s): {message}",
                        ),
                    )
                logger.warning(
                    "%s attempt %d hit infrastructure failure, retrying in %.1fs: %s",
                    name, record.attempts, task.retry.backoff_seconds, message,
                )
                self._machine.transition(
                    name, TaskStatus.READY, attempt=record.attempts, detail=message
                )
                self._cancel_event.wait(task.retry.backoff_seconds)
                if self.cancelled:
                    self._machine.transition(
                        name, TaskStatus.RUNNING, attempt=record.attempts,
                        detail="run cancelled",
                    )
                    return self._failure(
                        task,
                        CollaboratorError(
                            name, f"run cancelled while waiting to retry: {message}"
                        ),
                    )
                record.attempts += 1
                self._machine.transition(
                    name, TaskStatus.RUNNING, attempt=record.attempts
                )

    def _attempt(self, task: TaskDefinition, attempt: int) -> _AttemptResult:
        try:
            inputs, input_files, input_addresses = self._resolve_inputs(task)
        except ArtifactError as exc:
            return _AttemptResult(succeeded=False, error=str(exc), fatal=exc)

        invocation_hash = compute_invocation_hash(
            task.name, list(task.run), self._parameters, input_addresses
        )
        namespaces = {
            "params": self._parameters,
            "secrets": self._secrets,
            "env": self._env,
            "run": self._context.template_namespace(),
        }
        workspace = self._workspace_root / self.run_id / task.name
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)

        invocation = Invocation(
            run_id=self.run_id,
            task_name=task.name,
            attempt=attempt,
            commands=[render(cmd, namespaces) for cmd in task.run],
            options={k: render(v, namespaces) for k, v in task.options.items()},
            env={
                **self._env,
                **{k: render(v, namespaces) for k, v in task.env.items()},
            },
            inputs=inputs,
            input_files=input_files,
            outputs=dict(task.outputs),
            parameters=self._parameters,
            secrets=self._secrets,
            workspace=workspace,
            source_dir=self._context.source_dir,
            timeout_seconds=task.timeout_seconds,
            cancel_event=self._cancel_event,
        )

        collaborator = self._collaborators[task.uses]
        try:
            result = collaborator.execute(invocation)
        except InfrastructureError:
            raise
        except Exception as exc:
            return self._failure(
                task,
                CollaboratorError(
                    task.name, self._redact(f"collaborator crashed: {exc!r}")
                ),
                invocation_hash=invocation_hash,
            )

        return self._capture(task, result, invocation_hash)

    def _resolve_inputs(
        self, task: TaskDefinition
    ) -> tuple[dict[str, bytes], dict[str, str], dict[str, str]]:
        inputs: dict[str, bytes] = {}
        files: dict[str, str] = {}
        addresses: dict[str, str] = {}
        for artifact in task.inputs:
            try:
                ref = self._store.describe(self.run_id, artifact)
            except ArtifactNotFoundError:
                producer = self._graph.producer_of(artifact)
                record = self._records.get(producer) if producer else None
                if record is not None and record.outcome == TaskOutcome.SUCCEEDED_WITH_WARNINGS:
                    logger.warning(
                        "%s: input %s missing from best-effort task %s",
                        task.name, artifact, producer,
                    )
                    continue
                raise
            inputs[artifact] = self._store.fetch(self.run_id, artifact)
            files[artifact] = ref.filename or artifact
            addresses[artifact] = ref.content_address
        return inputs, files, addresses

    def _capture(
        self, task: TaskDefinition, result: CollaboratorResult, invocation_hash: str
    ) -> _AttemptResult:
        """Check declared outputs and publish them."""
        logs = self._redact(result.logs)
        undeclared = sorted(set(result.outputs) - set(task.outputs))
        if undeclared:
            logger.warning(
                "%s produced undeclared output(s), ignored: %s",
                task.name, ", ".join(undeclared),
            )
        declared = {k: v for k, v in result.outputs.items() if k in task.outputs}

        if result.succeeded:
            missing = sorted(set(task.outputs) - set(declared))
            if missing:
                return self._failure(
                    task,
                    CollaboratorError(
                        task.name,
                        f"declared output(s) not produced: {', '.join(missing)}",
                    ),
                    logs,
                    invocation_hash,
                    declared,
                )
            return self._publish(task, declared, logs, invocation_hash)

        error = CollaboratorError(
            task.name,
            self._redact(result.error or f"exited with status {result.exit_code}"),
            exit_code=result.exit_code,
        )
        return self._failure(task, error, logs, invocation_hash, declared)

    def _tolerates(self, task: TaskDefinition) -> bool:
        """Best-effort tasks absorb failures, except when the run is cancelled."""
        return task.allow_failure and not self.cancelled

    def _failure(
        self,
        task: TaskDefinition,
        error: CollaboratorError,
        logs: str = "",
        invocation_hash: str = "",
        outputs: dict[str, bytes] | None = None,
    ) -> _AttemptResult:
        if self._tolerates(task):
            return self._publish(
                task, outputs or {}, logs, invocation_hash, failure=error
            )
        return _AttemptResult(
            succeeded=False,
            error=error.message,
            logs=logs,
            invocation_hash=invocation_hash,
            failure=error,
        )

    def _publish(
        self,
        task: TaskDefinition,
        outputs: dict[str, bytes],
        logs: str,
        invocation_hash: str,
        *,
        failure: CollaboratorError | None = None,
    ) -> _AttemptResult:
        payloads = [
            ArtifactPayload(
                name=name, data=data, filename=Path(task.outputs[name]).name
            )
            for name, data in outputs.items()
        ]
        try:
            refs = self._store.publish_many(self.run_id, task.name, payloads)
        except ArtifactError as exc:
            return _AttemptResult(
                succeeded=False,
                error=str(exc),
                logs=logs,
                invocation_hash=invocation_hash,
                fatal=exc,
            )
        return _AttemptResult(
            succeeded=True,
            tolerated=failure is not None,
            error=failure.message if failure is not None else "",
            logs=logs,
            artifacts=refs,
            invocation_hash=invocation_hash,
            failure=failure,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _build_report(self, started_at: datetime) -> RunReport:
        tasks = [self._records[name].to_report() for name in self._graph.task_names]
        failed = bool(self._fatal_error) or self.cancelled or any(
            t.counts_as_failure for t in tasks
        )
        report = RunReport(
            run_id=self.run_id,
            pipeline=self._pipeline_name,
            status=RunStatus.FAILED if failed else RunStatus.SUCCEEDED,
            ref=self._context.ref,
            revision=self._context.revision,
            environment=self._context.environment,
            started_at=started_at,
            finished_at=_now(),
            cancelled=self.cancelled and not self._fatal_error,
            error=self._fatal_error,
            tasks=tasks,
        )
        logger.info(
            "Run %s %s in %.1fs", self.run_id, report.status.value, report.duration_seconds
        )
        return report
