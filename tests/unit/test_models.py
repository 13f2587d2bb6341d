"""Tests for the pydantic models — frozen, coerced, and their derived properties."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from gantry.models import (
    ArtifactRef,
    PipelineDefinition,
    RetryPolicy,
    RunContext,
    RunReport,
    RunStatus,
    SkipReason,
    TaskDefinition,
    TaskOutcome,
    TaskReport,
    TaskStatus,
    VALID_TRANSITIONS,
)


class TestTaskStatus:
    def test_terminal(self):
        assert {s for s in TaskStatus if s.is_terminal} == {
            TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED,
        }

    def test_terminal_states_have_no_exits(self):
        for status in TaskStatus:
            if status.is_terminal:
                assert VALID_TRANSITIONS[status] == set()


class TestTaskDefinition:
    def test_frozen(self):
        task = TaskDefinition(name="build")
        with pytest.raises(ValidationError):
            task.name = "other"

    def test_coercions(self):
        task = TaskDefinition.model_validate({
            "name": "tests",
            "needs": "build",
            "run": "pytest",
            "outputs": ["test-results.xml"],
            "with": {"shell": "/bin/bash", "level": 2},
        })
        assert task.needs == ["build"]
        assert task.run == ["pytest"]
        assert task.outputs == {"test-results.xml": "test-results.xml"}
        assert task.options == {"shell": "/bin/bash", "level": "2"}

    def test_required_follows_allow_failure(self):
        assert TaskDefinition(name="a").required is True
        assert TaskDefinition(name="a", allow_failure=True).required is False

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            TaskDefinition(name="")


class TestRetryPolicy:
    def test_no_retries_by_default(self):
        assert RetryPolicy().can_retry(1) is False

    def test_bounded(self):
        policy = RetryPolicy(max_retries=2)
        assert policy.can_retry(1) is True
        assert policy.can_retry(2) is True
        assert policy.can_retry(3) is False


class TestPipelineDefinition:
    def test_tasks_from_mapping_keep_order(self):
        definition = PipelineDefinition.model_validate({
            "tasks": {"z": {}, "a": {"needs": ["z"]}, "m": None},
        })
        assert [t.name for t in definition.tasks] == ["z", "a", "m"]

    def test_bare_secret_names(self):
        definition = PipelineDefinition.model_validate({"secrets": ["A", "B"], "tasks": []})
        assert set(definition.secrets) == {"A", "B"}
        assert all(spec.required for spec in definition.secrets.values())

    def test_parameter_default_stringified(self):
        definition = PipelineDefinition.model_validate(
            {"parameters": {"python_version": {"default": 3.13}}}
        )
        assert definition.parameters["python_version"].default == "3.13"

    def test_get_task(self):
        definition = PipelineDefinition.model_validate({"tasks": {"a": {}}})
        assert definition.get_task("a").name == "a"
        with pytest.raises(KeyError):
            definition.get_task("b")


class TestRunContext:
    def test_generated_run_id(self):
        a, b = RunContext(), RunContext()
        assert a.run_id.startswith("run-")
        assert a.run_id != b.run_id

    def test_branch(self):
        assert RunContext(ref="refs/heads/master").branch == "master"
        assert RunContext(ref="v1.0").branch == "v1.0"

    def test_template_namespace(self):
        ctx = RunContext(run_id="r1", ref="main", revision="abc", environment="dev", source_dir=Path("/src"))
        assert ctx.template_namespace() == {
            "id": "r1",
            "ref": "main",
            "branch": "main",
            "revision": "abc",
            "environment": "dev",
            "source_dir": str(Path("/src")),
        }


class TestReports:
    def _report(self, *tasks: TaskReport, status=RunStatus.FAILED) -> RunReport:
        now = datetime.now(timezone.utc)
        return RunReport(
            run_id="r", pipeline="p", status=status,
            started_at=now, finished_at=now + timedelta(seconds=2), tasks=list(tasks),
        )

    def test_counts_as_failure(self):
        failed = TaskReport(name="a", status=TaskStatus.FAILED, outcome=TaskOutcome.FAILED)
        tolerated = TaskReport(
            name="b", status=TaskStatus.FAILED, outcome=TaskOutcome.FAILED, required=False,
        )
        cascaded = TaskReport(
            name="c", status=TaskStatus.SKIPPED, outcome=TaskOutcome.SKIPPED,
            skip_reason=SkipReason.UPSTREAM_FAILED,
        )
        guarded = TaskReport(
            name="d", status=TaskStatus.SKIPPED, outcome=TaskOutcome.SKIPPED,
            skip_reason=SkipReason.CONDITION,
        )
        assert failed.counts_as_failure is True
        assert tolerated.counts_as_failure is False
        assert cascaded.counts_as_failure is True
        assert guarded.counts_as_failure is False

    def test_exit_code_and_failed_tasks(self):
        report = self._report(
            TaskReport(name="a", status=TaskStatus.SUCCEEDED, outcome=TaskOutcome.SUCCEEDED),
            TaskReport(name="b", status=TaskStatus.FAILED, outcome=TaskOutcome.FAILED),
        )
        assert report.exit_code == 1
        assert report.failed_tasks == ["b"]
        assert report.duration_seconds == pytest.approx(2.0)
        assert self._report(status=RunStatus.SUCCEEDED).exit_code == 0

    def test_artifacts_flattened(self):
        ref = ArtifactRef(run_id="r", name="image", producer="a", content_address="sha256:ab")
        report = self._report(
            TaskReport(name="a", status=TaskStatus.SUCCEEDED, outcome=TaskOutcome.SUCCEEDED, artifacts=[ref]),
        )
        assert report.artifacts == [ref]
        assert ref.digest == "ab"
