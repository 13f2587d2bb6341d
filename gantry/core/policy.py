"""Branch/environment guards for tasks (``when:`` in a pipeline file).

A guard is a policy decision made per pipeline: nothing is restricted
unless the definition says so. A task whose guard does not match is
skipped with reason CONDITION, which does not fail the run.
"""

from __future__ import annotations

from fnmatch import fnmatchcase

from gantry.models.config import RunContext
from gantry.models.tasks import RunCondition


def evaluate_condition(condition: RunCondition | None, context: RunContext) -> str | None:
    """Return ``None`` if the task may run, else the reason it may not."""
    if condition is None:
        return None

    if condition.branches:
        branch = context.branch
        if not any(fnmatchcase(branch, pattern) for pattern in condition.branches):
            return (
                f"branch {branch or '(none)'!s} does not match "
                f"{', '.join(condition.branches)}"
            )

    if condition.environments and context.environment not in condition.environments:
        return (
            f"environment {context.environment or '(none)'!s} is not one of "
            f"{', '.join(condition.environments)}"
        )

    return None
