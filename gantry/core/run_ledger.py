"""Append-only, hash-chained Run Ledger backed by SQLite.

Two tables:
- ``task_ledger`` — one row per task status change, each sealed with the
  SHA-256 of the previous row of the same run. No update, no delete.
- ``runs`` — one row per run holding its status and, once terminal, the
  archived ``RunReport`` JSON.

WAL journal mode so the CLI can read while a run is writing.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from gantry.core.errors import LedgerIntegrityError
from gantry.core.hasher import compute_entry_hash
from gantry.models.ledger import LedgerEntry
from gantry.models.reports import RunReport, RunStatus


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS task_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    task_name             TEXT NOT NULL,
    transition            TEXT NOT NULL,
    timestamp_utc         TEXT NOT NULL,
    attempt               INTEGER NOT NULL DEFAULT 0,
    detail                TEXT NOT NULL DEFAULT '',
    invocation_hash       TEXT NOT NULL DEFAULT '',
    outputs_hash          TEXT NOT NULL DEFAULT '',
    artifact_refs_json    TEXT NOT NULL DEFAULT '[]',
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON task_ledger(run_id, id);
"""

_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    run_id        TEXT PRIMARY KEY,
    pipeline      TEXT NOT NULL,
    status        TEXT NOT NULL,
    started_at    TEXT NOT NULL,
    finished_at   TEXT,
    report_json   TEXT
);
"""


class RunLedger:
    """Append-only, hash-chained Run Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes read-latest-hash + insert so chains never fork.
        self._write_lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_RUNS)
            conn.commit()

    # ------------------------------------------------------------------
    # Task transitions: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        This is the only write path for transitions.
        """
        with self._write_lock:
            previous_hash = self._get_latest_hash(entry.run_id)
            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task_ledger
                    (entry_id, run_id, task_name, transition, timestamp_utc,
                     attempt, detail, invocation_hash, outputs_hash,
                     artifact_refs_json, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.task_name,
                    entry.transition,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    entry.attempt,
                    entry.detail,
                    entry.invocation_hash,
                    entry.outputs_hash,
                    json.dumps(entry.artifact_references),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM task_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all transitions of a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_task_history(self, run_id: str, task_name: str) -> list[LedgerEntry]:
        """Return all transitions of one task in a run."""
        return [e for e in self.get_run_entries(run_id) if e.task_name == task_name]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain of a run.

        Returns True if valid, raises ``LedgerIntegrityError`` otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    def record_run_started(
        self, run_id: str, pipeline: str, started_at: datetime
    ) -> None:
        """Register a run as RUNNING."""
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO runs (run_id, pipeline, status, started_at) VALUES (?, ?, ?, ?)",
                (run_id, pipeline, RunStatus.RUNNING.value, started_at.isoformat()),
            )
            conn.commit()

    def record_run_finished(self, report: RunReport) -> None:
        """Archive the terminal report of a run."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (run_id, pipeline, status, started_at, finished_at, report_json)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    finished_at = excluded.finished_at,
                    report_json = excluded.report_json
                """,
                (
                    report.run_id,
                    report.pipeline,
                    report.status.value,
                    report.started_at.isoformat(),
                    report.finished_at.isoformat(),
                    report.model_dump_json(),
                ),
            )
            conn.commit()

    def get_report(self, run_id: str) -> RunReport | None:
        """Return the archived report of a finished run, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT report_json FROM runs WHERE run_id = ?", (run_id,)
            ).fetchone()
        if not row or not row[0]:
            return None
        return RunReport.model_validate_json(row[0])

    def list_runs(self, limit: int = 20) -> list[dict[str, str | None]]:
        """Most recent runs first: run_id, pipeline, status, timestamps."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id, pipeline, status, started_at, finished_at "
                "FROM runs ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        keys = ("run_id", "pipeline", "status", "started_at", "finished_at")
        return [dict(zip(keys, row)) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            run_id,
            task_name,
            transition,
            timestamp_utc,
            attempt,
            detail,
            invocation_hash,
            outputs_hash,
            artifact_refs_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            task_name=task_name,
            transition=transition,
            timestamp_utc=timestamp_utc,
            attempt=attempt,
            detail=detail,
            invocation_hash=invocation_hash,
            outputs_hash=outputs_hash,
            artifact_references=json.loads(artifact_refs_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
