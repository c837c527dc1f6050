"""Run-scoped artifact and output records."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ArtifactRecord(BaseModel):
    """Metadata for a stored artifact — the bytes live in the store.

    The ``digest`` is the SHA-256 content address of the bytes.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    run_id: str
    producer: str  # stage_id
    digest: str  # "sha256:<hex>"
    size_bytes: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class OutputRecord(BaseModel):
    """A small scalar value handed from one stage to another (e.g. an image tag)."""

    model_config = ConfigDict(frozen=True)

    key: str
    run_id: str
    producer: str
    value: str
