"""Integration tests — full runs through the Orchestrator, ledger, and store.

Exercises the container-service shape end to end:
build -> {tests, coverage, lint} -> publish -> deploy
"""

from __future__ import annotations

import sys
import threading

import pytest

from gantry.collaborators.base import CollaboratorResult, CollaboratorStatus, Invocation
from gantry.core.loader import parse_pipeline
from gantry.core.orchestrator import Orchestrator
from gantry.models.config import RunContext
from gantry.models.reports import RunStatus
from gantry.models.tasks import SkipReason, TaskOutcome, TaskStatus


class FakeToolchain:
    """Stands in for the container engine, test runner, linter, and cloud CLI."""

    def __init__(self) -> None:
        self.failing: set[str] = set()
        self.calls: list[str] = []
        self.received: dict[str, dict[str, bytes]] = {}
        self._lock = threading.Lock()

    def __call__(self, invocation: Invocation):
        with self._lock:
            self.calls.append(invocation.task_name)
            self.received[invocation.task_name] = dict(invocation.inputs)
        outputs = {
            name: f"{invocation.task_name}/{name}".encode()
            for name in invocation.outputs
        }
        if invocation.task_name in self.failing:
            return CollaboratorResult(
                status=CollaboratorStatus.FAILED,
                outputs=outputs,
                logs=f"{invocation.task_name}: 3 problems found\n",
                exit_code=1,
                error="exited with status 1",
            )
        return outputs


@pytest.fixture
def toolchain(orchestrator: Orchestrator) -> FakeToolchain:
    fake = FakeToolchain()
    orchestrator.register_collaborator("fake", fake)
    return fake


def _master(run_id: str = "run-int-001") -> RunContext:
    return RunContext(run_id=run_id, ref="refs/heads/master", environment="dev")


class TestContainerPipeline:
    def test_all_green(self, orchestrator, toolchain, container_pipeline):
        report = orchestrator.run(container_pipeline, context=_master())

        assert report.status == RunStatus.SUCCEEDED
        assert report.exit_code == 0
        assert toolchain.calls[0] == "build"
        assert toolchain.calls[-2:] == ["publish", "deploy"]
        assert toolchain.received["publish"] == {"image": b"build/image"}

        # The run's artifacts are exactly the union of declared outputs.
        assert {ref.name for ref in report.artifacts} == {
            "image", "test-results.xml", "coverage-report", "flake8-report",
        }
        stored = orchestrator.artifact_store.list_artifacts(report.run_id)
        assert {ref.name for ref in stored} == {ref.name for ref in report.artifacts}
        assert orchestrator.artifact_store.fetch(report.run_id, "image") == b"build/image"

    def test_failing_tests_with_tolerated_lint(self, orchestrator, toolchain, container_pipeline):
        toolchain.failing = {"tests", "lint"}
        report = orchestrator.run(container_pipeline, context=_master())

        assert report.status == RunStatus.FAILED
        assert report.exit_code == 1
        assert report.failed_tasks == ["tests"]

        lint = report.get_task("lint")
        assert lint.status == TaskStatus.SUCCEEDED
        assert lint.outcome == TaskOutcome.SUCCEEDED_WITH_WARNINGS
        assert "3 problems found" in lint.logs

        for name in ("publish", "deploy"):
            task = report.get_task(name)
            assert task.status == TaskStatus.SKIPPED
        assert report.get_task("publish").skip_reason == SkipReason.UPSTREAM_FAILED
        assert "publish" not in toolchain.calls
        assert "deploy" not in toolchain.calls

        # Independent branches ran to completion despite the failure.
        assert report.get_task("coverage").status == TaskStatus.SUCCEEDED

        # Completed artifacts are retained for inspection; the failed task's are not.
        names = {ref.name for ref in orchestrator.artifact_store.list_artifacts(report.run_id)}
        assert "image" in names
        assert "coverage-report" in names
        assert "flake8-report" in names
        assert "test-results.xml" not in names

    def test_lint_failure_alone_does_not_fail_the_run(
        self, orchestrator, toolchain, container_pipeline
    ):
        toolchain.failing = {"lint"}
        report = orchestrator.run(container_pipeline, context=_master())
        assert report.succeeded
        assert report.get_task("deploy").status == TaskStatus.SUCCEEDED

    def test_build_failure_skips_everything(self, orchestrator, toolchain, container_pipeline):
        toolchain.failing = {"build"}
        report = orchestrator.run(container_pipeline, context=_master())
        assert toolchain.calls == ["build"]
        skipped = [t.name for t in report.tasks if t.status == TaskStatus.SKIPPED]
        assert skipped == ["tests", "coverage", "lint", "publish", "deploy"]
        assert report.get_task("lint").skip_reason == SkipReason.UPSTREAM_FAILED

    def test_report_and_ledger_agree(self, orchestrator, toolchain, container_pipeline):
        toolchain.failing = {"tests"}
        report = orchestrator.run(container_pipeline, context=_master())

        archived = orchestrator.get_report(report.run_id)
        assert archived == report
        assert orchestrator.verify_chain(report.run_id)

        history = orchestrator.ledger.get_task_history(report.run_id, "tests")
        assert [e.transition for e in history][-1].endswith("failed")


YAML_PIPELINE = """
name: release-train
parameters:
  image_name: {required: true}
secrets: [REGISTRY_TOKEN]
tasks:
  build:
    uses: fake
    run: docker build -t ${{ params.image_name }}:${{ run.revision }} .
    outputs: {image: image.tar}
  publish:
    uses: fake
    needs: build
    inputs: [image]
    run: push ${{ params.image_name }} --token ${{ secrets.REGISTRY_TOKEN }}
    when: {branches: [master, main]}
  deploy:
    uses: fake
    needs: publish
    run: helm upgrade ${{ params.image_name }}
    when: {environments: [dev]}
"""


class TestGatingPolicy:
    @pytest.fixture
    def definition(self):
        return parse_pipeline(YAML_PIPELINE)

    def test_branch_guard_passes_on_master(self, orchestrator, toolchain, definition):
        report = orchestrator.run(
            definition,
            {"image_name": "svc"},
            {"REGISTRY_TOKEN": "s3cr3t-token"},
            context=RunContext(ref="refs/heads/master", revision="abc123", environment="dev"),
        )
        assert report.succeeded
        assert toolchain.calls == ["build", "publish", "deploy"]

    def test_feature_branch_skips_publish_and_deploy(self, orchestrator, toolchain, definition):
        report = orchestrator.run(
            definition,
            {"image_name": "svc"},
            {"REGISTRY_TOKEN": "s3cr3t-token"},
            context=RunContext(ref="refs/heads/feature/x", environment="dev"),
        )
        # A condition skip is a policy decision, not a failure.
        assert report.succeeded
        assert report.get_task("publish").skip_reason == SkipReason.CONDITION
        assert report.get_task("deploy").skip_reason == SkipReason.UPSTREAM_SKIPPED
        assert toolchain.calls == ["build"]

    def test_secrets_never_reach_the_record(self, orchestrator, definition):
        def leaky(invocation: Invocation):
            return CollaboratorResult(
                status=CollaboratorStatus.FAILED
                if invocation.task_name == "publish"
                else CollaboratorStatus.SUCCEEDED,
                outputs={name: b"x" for name in invocation.outputs},
                logs="\n".join(invocation.commands),
                error=f"auth rejected for {invocation.secrets.get('REGISTRY_TOKEN', '')}",
            )

        orchestrator.register_collaborator("fake", leaky)
        report = orchestrator.run(
            definition,
            {"image_name": "svc"},
            {"REGISTRY_TOKEN": "s3cr3t-token"},
            context=RunContext(ref="refs/heads/main"),
        )
        assert not report.succeeded
        dumped = report.model_dump_json()
        assert "s3cr3t-token" not in dumped
        assert "--token ***" in report.get_task("publish").logs

        for entry in orchestrator.ledger.get_run_entries(report.run_id):
            assert "s3cr3t-token" not in entry.model_dump_json()


SHELL_PIPELINE = """
name: shell-e2e
parameters:
  message: {default: shipped}
tasks:
  build:
    run:
      - mkdir -p dist
      - printf '${{ params.message }}' > dist/app.bin
    outputs: {app: dist/app.bin}
  tests:
    needs: build
    inputs: [app]
    run: test "$(cat app.bin)" = "${{ params.message }}" && echo ok > results.txt
    outputs: [results.txt]
  lint:
    needs: build
    allow_failure: true
    run: echo "E501 line too long" && exit 1
  publish:
    needs: [tests, lint]
    inputs: [app]
    run: cp app.bin "$GANTRY_WORKSPACE/published.bin" && echo "$GANTRY_RUN_ID" > run.txt
    outputs: {receipt: run.txt}
"""


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")
class TestShellEndToEnd:
    def test_files_flow_between_tasks(self, orchestrator):
        definition = parse_pipeline(SHELL_PIPELINE)
        report = orchestrator.run(definition, context=RunContext(run_id="run-shell-e2e"))

        assert report.succeeded, [(t.name, t.error, t.logs) for t in report.tasks]
        assert report.get_task("lint").outcome == TaskOutcome.SUCCEEDED_WITH_WARNINGS
        assert "E501" in report.get_task("lint").logs

        store = orchestrator.artifact_store
        assert store.fetch(report.run_id, "app") == b"shipped"
        assert store.fetch(report.run_id, "results.txt").strip() == b"ok"
        assert store.fetch(report.run_id, "receipt").strip() == b"run-shell-e2e"

    def test_parameter_mismatch_fails_tests(self, orchestrator):
        definition = parse_pipeline(SHELL_PIPELINE.replace("${{ params.message }}\" &&", "other\" &&"))
        report = orchestrator.run(definition)
        assert report.status == RunStatus.FAILED
        assert report.failed_tasks == ["tests"]
        assert report.get_task("publish").status == TaskStatus.SKIPPED
