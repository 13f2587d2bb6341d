"""Run Ledger entry model (append-only, hash-chained).

One entry per task status change. Entries are scoped to run_id + task_name
and each links to the previous entry of the same run via SHA-256.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only Run Ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    task_name: str
    transition: str  # "from->to", e.g. "ready->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    attempt: int = 0
    detail: str = ""  # error message or skip reason, secrets redacted
    invocation_hash: str = ""
    outputs_hash: str = ""
    artifact_references: list[str] = []  # content addresses
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed by the ledger, seals this entry
