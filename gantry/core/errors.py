"""Error taxonomy for pipeline definition, execution, and artifact hand-off.

Four families, each with a different blast radius:

- ``DefinitionError``     — raised before any task executes; fatal.
- ``CollaboratorError``   — an external tool failed; recorded on the task.
- ``ArtifactError``       — publish/fetch contract violated; fatal to the run.
- ``InfrastructureError`` — worker or store unavailable; retryable.
"""

from __future__ import annotations


class GantryError(Exception):
    """Base class for every error raised by Gantry."""


# ---------------------------------------------------------------------------
# Definition errors
# ---------------------------------------------------------------------------


class DefinitionError(GantryError, ValueError):
    """The pipeline definition is invalid and must not be scheduled."""


class CycleError(DefinitionError):
    """The dependency graph contains a cycle."""


class DuplicateNameError(DefinitionError):
    """Two tasks share the same name."""


class DanglingDependencyError(DefinitionError):
    """A task needs a task that is not defined in the pipeline."""


class DuplicateOutputError(DefinitionError):
    """Two tasks declare the same output artifact name."""


class UnresolvedArtifactError(DefinitionError):
    """A task consumes an artifact that no upstream task produces."""


class TemplateError(DefinitionError):
    """A command template references an unknown parameter, secret, or variable."""


class MissingParameterError(DefinitionError):
    """A required parameter or secret was not supplied for the run."""


class UnknownCollaboratorError(DefinitionError):
    """A task ``uses`` a collaborator that has not been registered."""


# ---------------------------------------------------------------------------
# Execution errors
# ---------------------------------------------------------------------------


class CollaboratorError(GantryError, RuntimeError):
    """An external collaborator returned a failure or crashed.

    Parameters
    ----------
    task_name:
        The task whose collaborator failed.
    message:
        Human-readable failure description (secrets already redacted).
    exit_code:
        Process exit code when the collaborator is a process, else ``None``.
    """

    def __init__(
        self, task_name: str, message: str, *, exit_code: int | None = None
    ) -> None:
        super().__init__(f"{task_name}: {message}")
        self.task_name = task_name
        self.message = message
        self.exit_code = exit_code


class InfrastructureError(GantryError, RuntimeError):
    """The execution environment failed (worker crash, store unavailable).

    Retried at the task level when the task carries a retry policy.
    """


class ArtifactStoreUnavailableError(InfrastructureError):
    """The artifact store could not read or write its backing storage."""


# ---------------------------------------------------------------------------
# Artifact errors
# ---------------------------------------------------------------------------


class ArtifactError(GantryError, RuntimeError):
    """The artifact publish/fetch contract was violated."""


class DuplicatePublishError(ArtifactError):
    """An artifact name was published twice within one run."""


class ArtifactNotFoundError(ArtifactError):
    """An artifact was fetched before its producing task published it."""


class ArtifactIntegrityError(ArtifactError):
    """Stored artifact bytes no longer match their content address."""


# ---------------------------------------------------------------------------
# State errors
# ---------------------------------------------------------------------------


class InvalidTransitionError(GantryError, RuntimeError):
    """A task status change is not permitted by the transition table."""


class LedgerIntegrityError(GantryError, RuntimeError):
    """The run ledger hash chain is broken."""
