"""Adversarial tests — task status and gating bypass attempts.

These tests verify that:
1. Invalid status transitions are always rejected
2. Terminal statuses cannot be exited
3. Dependents never start before their dependencies finish
4. A collaborator cannot publish over another task's artifact
"""

from __future__ import annotations

import threading

import pytest

from gantry.collaborators.base import CollaboratorResult, CollaboratorStatus, Invocation
from gantry.core.errors import InvalidTransitionError
from gantry.core.task_machine import TaskStateMachine
from gantry.models.reports import RunStatus, TaskEvent
from gantry.models.tasks import TERMINAL_STATUSES, VALID_TRANSITIONS, TaskStatus


class TestTransitionBypassAttempts:
    @pytest.fixture
    def machine(self, ledger) -> TaskStateMachine:
        return TaskStateMachine("gantry-adversarial-sm", ["build", "tests"], ledger)

    def test_cannot_run_without_becoming_ready(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.transition("build", TaskStatus.RUNNING)

    def test_cannot_succeed_without_running(self, machine):
        machine.transition("build", TaskStatus.READY)
        with pytest.raises(InvalidTransitionError):
            machine.transition("build", TaskStatus.SUCCEEDED)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_are_final(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()

    def test_failed_task_cannot_be_revived(self, machine, ledger):
        machine.transition("build", TaskStatus.READY)
        machine.transition("build", TaskStatus.RUNNING, attempt=1)
        machine.transition("build", TaskStatus.FAILED)
        for target in TaskStatus:
            with pytest.raises(InvalidTransitionError):
                machine.transition("build", target)
        # Rejected transitions leave no trace in the ledger.
        assert len(ledger.get_task_history("gantry-adversarial-sm", "build")) == 3

    def test_unknown_task_rejected(self, machine):
        with pytest.raises(InvalidTransitionError, match="Unknown task"):
            machine.transition("deploy", TaskStatus.READY)

    def test_concurrent_double_dispatch_has_one_winner(self, machine):
        machine.transition("build", TaskStatus.READY)
        wins: list[int] = []
        barrier = threading.Barrier(8)

        def dispatch(i: int) -> None:
            barrier.wait()
            try:
                machine.transition("build", TaskStatus.RUNNING, attempt=1)
                wins.append(i)
            except InvalidTransitionError:
                pass

        threads = [threading.Thread(target=dispatch, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1

    def test_listener_failure_does_not_block_transition(self, machine):
        def broken(event: TaskEvent) -> None:
            raise RuntimeError("dashboard offline")

        machine.add_listener(broken)
        machine.transition("build", TaskStatus.READY)
        assert machine.status("build") == TaskStatus.READY


class TestGatingBypassAttempts:
    def test_dependents_start_only_after_dependencies_finish(
        self, orchestrator, container_pipeline
    ):
        finished: set[str] = set()
        violations: list[str] = []
        lock = threading.Lock()

        def tool(invocation: Invocation):
            task = container_pipeline.get_task(invocation.task_name)
            with lock:
                missing = [d for d in task.needs if d not in finished]
                if missing:
                    violations.append(f"{invocation.task_name} before {missing}")
            outputs = {name: b"x" for name in invocation.outputs}
            with lock:
                finished.add(invocation.task_name)
            return outputs

        orchestrator.register_collaborator("fake", tool)
        report = orchestrator.run(container_pipeline, max_parallelism=6)
        assert report.succeeded
        assert violations == []

    def test_collaborator_cannot_overwrite_upstream_artifact(
        self, orchestrator, make_pipeline
    ):
        def hostile(invocation: Invocation):
            if invocation.task_name == "tests":
                # Claims to produce "image" although it does not declare it.
                return {"image": b"malicious"}
            return {name: b"genuine" for name in invocation.outputs}

        orchestrator.register_collaborator("fake", hostile)
        definition = make_pipeline({
            "build": {"uses": "fake", "outputs": {"image": "image.tar"}},
            "tests": {"uses": "fake", "needs": ["build"]},
            "publish": {"uses": "fake", "needs": ["tests"], "inputs": ["image"]},
        })
        report = orchestrator.run(definition)
        assert report.succeeded
        assert orchestrator.artifact_store.fetch(report.run_id, "image") == b"genuine"

    def test_missing_declared_output_fails_the_task(self, orchestrator, make_pipeline):
        def lazy(invocation: Invocation):
            return CollaboratorResult(status=CollaboratorStatus.SUCCEEDED)

        orchestrator.register_collaborator("fake", lazy)
        definition = make_pipeline({
            "build": {"uses": "fake", "outputs": {"image": "image.tar"}},
            "publish": {"uses": "fake", "needs": ["build"], "inputs": ["image"]},
        })
        report = orchestrator.run(definition)
        assert report.status == RunStatus.FAILED
        assert "not produced" in report.get_task("build").error
        assert report.get_task("publish").status == TaskStatus.SKIPPED
