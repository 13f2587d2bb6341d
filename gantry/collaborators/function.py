"""Function collaborator — runs a Python callable as a task."""

from __future__ import annotations

from collections.abc import Callable, Mapping

from gantry.collaborators.base import (
    CollaboratorResult,
    CollaboratorStatus,
    Invocation,
)

TaskFunction = Callable[[Invocation], "CollaboratorResult | Mapping[str, bytes] | None"]


class FunctionCollaborator:
    """Adapts a plain callable to the ``Collaborator`` protocol.

    The callable may return a full ``CollaboratorResult``, or just a
    mapping of output artifact name to bytes (meaning success), or None.
    Exceptions propagate to the scheduler unchanged.
    """

    def __init__(self, func: TaskFunction) -> None:
        self._func = func

    def execute(self, invocation: Invocation) -> CollaboratorResult:
        result = self._func(invocation)
        if isinstance(result, CollaboratorResult):
            return result
        return CollaboratorResult(
            status=CollaboratorStatus.SUCCEEDED,
            outputs=dict(result or {}),
        )
