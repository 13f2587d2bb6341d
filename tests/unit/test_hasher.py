"""Tests for canonical hashing helpers."""

from __future__ import annotations

import hashlib

from gantry.core.hasher import (
    canonical_json_bytes,
    compute_entry_hash,
    compute_invocation_hash,
    compute_outputs_hash,
    content_address,
)


def test_canonical_json_is_key_order_independent():
    assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'
    assert canonical_json_bytes({"a": 1, "b": 2}) == canonical_json_bytes({"b": 2, "a": 1})


def test_content_address():
    assert content_address(b"image") == "sha256:" + hashlib.sha256(b"image").hexdigest()


def test_entry_hash_ignores_its_own_field():
    entry = {"run_id": "r", "transition": "pending->ready", "entry_hash": ""}
    sealed = dict(entry, entry_hash=compute_entry_hash(entry))
    assert compute_entry_hash(sealed) == sealed["entry_hash"]


def test_invocation_hash_sensitive_to_inputs():
    base = compute_invocation_hash("publish", ["push"], {"image": "svc"}, {"image": "sha256:a"})
    assert base == compute_invocation_hash(
        "publish", ["push"], {"image": "svc"}, {"image": "sha256:a"}
    )
    assert base != compute_invocation_hash(
        "publish", ["push"], {"image": "svc"}, {"image": "sha256:b"}
    )
    assert base != compute_invocation_hash("publish", ["push"], {"image": "other"}, {})


def test_outputs_hash_names_the_task():
    outputs = {"image": "sha256:a"}
    assert compute_outputs_hash("build", outputs) != compute_outputs_hash("rebuild", outputs)
