"""Canonical hashing helpers for content addressing and ledger sealing."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce deterministic canonical JSON bytes.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """Return the ``sha256:<hex>`` address of raw bytes."""
    return f"sha256:{sha256_hex(data)}"


def compute_invocation_hash(
    task_name: str,
    commands: list[str],
    parameters: dict[str, str],
    input_addresses: dict[str, str],
) -> str:
    """SHA-256 of canonical(task + commands + parameters + input addresses).

    Secrets are excluded; the hash is recorded in the ledger.
    """
    payload = {
        "task": task_name,
        "commands": commands,
        "parameters": parameters,
        "inputs": input_addresses,
    }
    return sha256_hex(canonical_json_bytes(payload))


def compute_outputs_hash(task_name: str, output_addresses: dict[str, str]) -> str:
    """SHA-256 of canonical(task + sorted output content addresses)."""
    payload = {"task": task_name, "outputs": output_addresses}
    return sha256_hex(canonical_json_bytes(payload))


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself)."""
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
