"""Shell collaborator — runs a task's steps as processes in its workspace.

Each step is handed to the system shell in order; the first non-zero exit
fails the task. Input artifacts are written into the workspace before the
first step, declared outputs are read back after the last one. Secrets
reach the process only as environment variables.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time

from gantry.collaborators.base import (
    CollaboratorResult,
    CollaboratorStatus,
    Invocation,
)
from gantry.core.errors import InfrastructureError

logger = logging.getLogger(__name__)


class ShellCollaborator:
    """Runs commands with ``subprocess`` and captures their combined output.

    Parameters
    ----------
    shell:
        Shell executable; ``None`` uses the platform default. A task may
        override it with ``with: {shell: /bin/bash}``.
    poll_interval:
        Seconds between checks for cancellation and timeout.
    inherit_env:
        Whether processes see the orchestrator's own environment.
    kill_grace_seconds:
        How long a terminated process gets before it is killed.
    """

    def __init__(
        self,
        shell: str | None = None,
        *,
        poll_interval: float = 0.1,
        inherit_env: bool = True,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._shell = shell
        self._poll_interval = poll_interval
        self._inherit_env = inherit_env
        self._kill_grace = kill_grace_seconds

    def execute(self, invocation: Invocation) -> CollaboratorResult:
        workspace = invocation.workspace
        try:
            workspace.mkdir(parents=True, exist_ok=True)
            for name, data in invocation.inputs.items():
                target = workspace / invocation.input_files.get(name, name)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
        except OSError as exc:
            raise InfrastructureError(
                f"Cannot prepare workspace {workspace}: {exc}"
            ) from exc

        env = self._build_env(invocation)
        shell = invocation.options.get("shell", self._shell)
        deadline = (
            time.monotonic() + invocation.timeout_seconds
            if invocation.timeout_seconds
            else None
        )
        logs: list[str] = []

        for index, command in enumerate(invocation.commands, start=1):
            try:
                proc = subprocess.Popen(
                    command,
                    shell=True,
                    executable=shell,
                    cwd=workspace,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    start_new_session=os.name == "posix",
                )
            except OSError as exc:
                raise InfrastructureError(
                    f"Cannot start step {index} of {invocation.task_name}: {exc}"
                ) from exc

            output, stop_reason = self._wait(proc, invocation, deadline)
            logs.append(f"$ {command}\n{output}")

            if stop_reason:
                return self._failed(invocation, logs, proc.returncode, stop_reason)
            if proc.returncode != 0:
                return self._failed(
                    invocation,
                    logs,
                    proc.returncode,
                    f"step {index} exited with status {proc.returncode}",
                )

        return CollaboratorResult(
            status=CollaboratorStatus.SUCCEEDED,
            outputs=self._collect_outputs(invocation),
            logs="".join(logs),
            exit_code=0,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_env(self, invocation: Invocation) -> dict[str, str]:
        env = dict(os.environ) if self._inherit_env else {}
        env.update(
            {
                "GANTRY_RUN_ID": invocation.run_id,
                "GANTRY_TASK": invocation.task_name,
                "GANTRY_ATTEMPT": str(invocation.attempt),
                "GANTRY_WORKSPACE": str(invocation.workspace),
                "GANTRY_SOURCE_DIR": str(invocation.source_dir),
            }
        )
        env.update(invocation.env)
        env.update(invocation.secrets)
        return env

    def _wait(
        self,
        proc: subprocess.Popen,
        invocation: Invocation,
        deadline: float | None,
    ) -> tuple[str, str]:
        """Wait for *proc*; return (output, reason it was stopped or "")."""
        while True:
            try:
                output, _ = proc.communicate(timeout=self._poll_interval)
                return output or "", ""
            except subprocess.TimeoutExpired:
                if invocation.cancelled:
                    return self._terminate(proc), "cancelled"
                if deadline is not None and time.monotonic() > deadline:
                    return (
                        self._terminate(proc),
                        f"timed out after {invocation.timeout_seconds:g}s",
                    )

    def _terminate(self, proc: subprocess.Popen) -> str:
        self._signal(proc, kill=False)
        try:
            output, _ = proc.communicate(timeout=self._kill_grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, kill=True)
            output, _ = proc.communicate()
        logger.warning("Terminated process %s", proc.pid)
        return output or ""

    @staticmethod
    def _signal(proc: subprocess.Popen, *, kill: bool) -> None:
        """Signal the step and everything it spawned (its process group on POSIX)."""
        if os.name != "posix":
            if kill:
                proc.kill()
            else:
                proc.terminate()
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL if kill else signal.SIGTERM)
        except ProcessLookupError:
            pass  # already exited

    @staticmethod
    def _collect_outputs(invocation: Invocation) -> dict[str, bytes]:
        outputs: dict[str, bytes] = {}
        for name, relative in invocation.outputs.items():
            path = invocation.workspace / relative
            if path.is_file():
                outputs[name] = path.read_bytes()
        return outputs

    def _failed(
        self,
        invocation: Invocation,
        logs: list[str],
        exit_code: int | None,
        error: str,
    ) -> CollaboratorResult:
        # Outputs written before the failure still count for best-effort tasks.
        return CollaboratorResult(
            status=CollaboratorStatus.FAILED,
            outputs=self._collect_outputs(invocation),
            logs="".join(logs),
            exit_code=exit_code,
            error=error,
        )
