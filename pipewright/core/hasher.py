"""Canonical hashing helpers for content addressing and run identity."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pipewright.models.events import Event


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """Return the ``sha256:<hex>`` content address of raw bytes."""
    return f"sha256:{sha256_hex(data)}"


def event_fingerprint(event: Event) -> str:
    """SHA-256 of the canonical event, including its delivery id.

    Two deliveries of otherwise identical events get distinct fingerprints,
    so run ids are unique per triggering event.
    """
    payload = event.model_dump(mode="json")
    payload["changed_paths"] = sorted(event.changed_paths)
    return sha256_hex(canonical_json_bytes(payload))


def compute_run_id(event: Event) -> str:
    """Run identifier derived from the triggering event."""
    return f"pw-{event_fingerprint(event)[:16]}"
