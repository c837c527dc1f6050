"""Run-scoped artifact and output store.

Content handed from one stage to another lives here for the lifetime of
one run and is discarded afterwards; there is no durable versioning.

Rules enforced on every call:
- Each key is written once per run (``DuplicateArtifactError``), so every
  artifact has exactly one producer.
- A stage may only read keys it declared in ``required_inputs``
  (``ArtifactUnauthorizedError``).
- Reading a key that was never published raises ``ArtifactNotFoundError``.

Writes are serialized per (run, key); there is no global lock on the data
path.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from pathlib import Path

from pipewright.core.hasher import content_address
from pipewright.models.artifacts import ArtifactRecord, OutputRecord
from pipewright.models.stages import StageDefinition

logger = logging.getLogger(__name__)


class ArtifactStoreError(RuntimeError):
    """Base class for artifact contract violations (fatal to the stage)."""


class ArtifactUnauthorizedError(ArtifactStoreError):
    """The consuming stage did not declare the key as a required input."""


class DuplicateArtifactError(ArtifactStoreError):
    """The key was already published in this run."""


class ArtifactNotFoundError(ArtifactStoreError):
    """The key has not been published in this run."""


class RunArtifactStore:
    """In-memory store keyed by ``(run_id, key)``.

    Bulk artifacts are kept as bytes; a ``Path`` given to :meth:`put` is
    read once and snapshotted, so later changes to the file do not leak
    into consumers.
    """

    def __init__(self) -> None:
        self._artifacts: dict[str, dict[str, tuple[ArtifactRecord, bytes]]] = defaultdict(dict)
        self._outputs: dict[str, dict[str, OutputRecord]] = defaultdict(dict)
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, run_id: str, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._key_locks.setdefault((run_id, key), threading.Lock())

    def _check_unclaimed(self, run_id: str, key: str) -> None:
        existing = self._artifacts[run_id].get(key) or self._outputs[run_id].get(key)
        if existing is not None:
            producer = existing[0].producer if isinstance(existing, tuple) else existing.producer
            raise DuplicateArtifactError(
                f"Key {key!r} was already published in run {run_id} by {producer!r}"
            )

    @staticmethod
    def _check_visible(key: str, consumer: StageDefinition) -> None:
        if key not in consumer.required_inputs:
            raise ArtifactUnauthorizedError(
                f"Stage {consumer.stage_id!r} did not declare {key!r} in required_inputs"
            )

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def put(
        self, run_id: str, key: str, content: bytes | Path, *, producer: str
    ) -> ArtifactRecord:
        """Publish bulk content under *key* for *run_id*."""
        data = Path(content).read_bytes() if isinstance(content, Path) else bytes(content)
        with self._lock_for(run_id, key):
            self._check_unclaimed(run_id, key)
            record = ArtifactRecord(
                key=key,
                run_id=run_id,
                producer=producer,
                digest=content_address(data),
                size_bytes=len(data),
            )
            self._artifacts[run_id][key] = (record, data)
        logger.info(
            "Artifact %s published by %s (%d bytes, %s)",
            key, producer, record.size_bytes, record.digest[:19],
        )
        return record

    def get(self, run_id: str, key: str, consumer: StageDefinition) -> bytes:
        """Read an artifact on behalf of *consumer*."""
        self._check_visible(key, consumer)
        entry = self._artifacts.get(run_id, {}).get(key)
        if entry is None:
            raise ArtifactNotFoundError(f"Artifact {key!r} not found in run {run_id}")
        return entry[1]

    def record(self, run_id: str, key: str) -> ArtifactRecord:
        entry = self._artifacts.get(run_id, {}).get(key)
        if entry is None:
            raise ArtifactNotFoundError(f"Artifact {key!r} not found in run {run_id}")
        return entry[0]

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def put_output(self, run_id: str, key: str, value: str, *, producer: str) -> OutputRecord:
        """Publish a scalar output under *key* for *run_id*."""
        with self._lock_for(run_id, key):
            self._check_unclaimed(run_id, key)
            record = OutputRecord(key=key, run_id=run_id, producer=producer, value=str(value))
            self._outputs[run_id][key] = record
        logger.info("Output %s published by %s", key, producer)
        return record

    def get_output(self, run_id: str, key: str, consumer: StageDefinition) -> str:
        """Read a scalar output on behalf of *consumer*."""
        self._check_visible(key, consumer)
        record = self._outputs.get(run_id, {}).get(key)
        if record is None:
            raise ArtifactNotFoundError(f"Output {key!r} not found in run {run_id}")
        return record.value

    def outputs(self, run_id: str) -> dict[str, str]:
        """Snapshot of every scalar output published in *run_id*."""
        return {key: rec.value for key, rec in self._outputs.get(run_id, {}).items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def keys(self, run_id: str) -> list[str]:
        return sorted(set(self._artifacts.get(run_id, {})) | set(self._outputs.get(run_id, {})))

    def discard(self, run_id: str) -> None:
        """Drop everything published in *run_id*."""
        self._artifacts.pop(run_id, None)
        self._outputs.pop(run_id, None)
        with self._locks_guard:
            for lock_key in [k for k in self._key_locks if k[0] == run_id]:
                del self._key_locks[lock_key]
        logger.debug("Discarded artifacts for run %s", run_id)
