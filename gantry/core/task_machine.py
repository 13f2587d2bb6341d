"""Task state machine for one run.

Enforces:
- Valid status changes only (VALID_TRANSITIONS table)
- Every change recorded in the Run Ledger
- Every change announced to registered listeners
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from gantry.core.errors import InvalidTransitionError
from gantry.core.run_ledger import RunLedger
from gantry.models.ledger import LedgerEntry
from gantry.models.reports import TaskEvent
from gantry.models.tasks import VALID_TRANSITIONS, TaskStatus

logger = logging.getLogger(__name__)

TaskListener = Callable[[TaskEvent], None]


class TaskStateMachine:
    """Status table of the tasks of a single run.

    Parameters
    ----------
    run_id:
        The run whose tasks this machine tracks.
    task_names:
        Every task of the run; all start PENDING.
    ledger:
        Run Ledger to record transitions into. ``None`` records nothing.
    """

    def __init__(
        self,
        run_id: str,
        task_names: Iterable[str],
        ledger: RunLedger | None = None,
    ) -> None:
        self.run_id = run_id
        self._ledger = ledger
        self._lock = threading.Lock()
        self._statuses: dict[str, TaskStatus] = {
            name: TaskStatus.PENDING for name in task_names
        }
        self._listeners: list[TaskListener] = []

    def add_listener(self, listener: TaskListener) -> None:
        """Call *listener* with a ``TaskEvent`` after every transition."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, task_name: str) -> TaskStatus:
        with self._lock:
            return self._statuses[task_name]

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        task_name: str,
        target: TaskStatus,
        *,
        attempt: int = 0,
        detail: str = "",
        invocation_hash: str = "",
        outputs_hash: str = "",
        artifact_references: list[str] | None = None,
    ) -> LedgerEntry | None:
        """Move *task_name* to *target*, recording it in the ledger.

        Raises ``InvalidTransitionError`` if the change is not allowed.
        Returns the sealed ledger entry, or None without a ledger.
        """
        with self._lock:
            if task_name not in self._statuses:
                raise InvalidTransitionError(f"Unknown task {task_name!r}")
            current = self._statuses[task_name]
            allowed = VALID_TRANSITIONS.get(current, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {task_name} from {current.value} to "
                    f"{target.value}. Allowed: {sorted(s.value for s in allowed)}"
                )
            self._statuses[task_name] = target

        sealed = None
        if self._ledger is not None:
            sealed = self._ledger.append(
                LedgerEntry(
                    run_id=self.run_id,
                    task_name=task_name,
                    transition=f"{current.value}->{target.value}",
                    attempt=attempt,
                    detail=detail,
                    invocation_hash=invocation_hash,
                    outputs_hash=outputs_hash,
                    artifact_references=artifact_references or [],
                )
            )

        logger.debug(
            "%s [%s] %s -> %s", task_name, self.run_id, current.value, target.value
        )
        event = TaskEvent(
            run_id=self.run_id,
            task_name=task_name,
            from_status=current,
            to_status=target,
            attempt=attempt,
            detail=detail,
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Task listener failed on %s", task_name)
        return sealed
