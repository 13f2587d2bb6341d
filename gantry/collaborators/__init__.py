"""External collaborators — the tools that do a task's actual work."""

from gantry.collaborators.base import (
    Collaborator,
    CollaboratorResult,
    CollaboratorStatus,
    Invocation,
)
from gantry.collaborators.function import FunctionCollaborator
from gantry.collaborators.shell import ShellCollaborator

__all__ = [
    "Collaborator",
    "CollaboratorResult",
    "CollaboratorStatus",
    "Invocation",
    "FunctionCollaborator",
    "ShellCollaborator",
]
