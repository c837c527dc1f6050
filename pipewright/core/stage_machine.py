"""Stage state machine for one run.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Dependencies checked before RUNNING
- Cascade cancellation of transitive dependents on failure
- Every transition recorded in the run's audit trail
"""

from __future__ import annotations

import logging
import threading

from pipewright.core.stage_graph import StageGraph
from pipewright.models.stages import (
    VALID_TRANSITIONS,
    StageStatus,
    StageTransition,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class DependencyNotMetError(RuntimeError):
    """Raised when a stage is started before all dependencies succeeded."""


class StageMachine:
    """Tracks stage statuses of a single run.

    Transitions may be requested from worker threads; a lock keeps the
    status map and the audit trail consistent.
    """

    def __init__(self, graph: StageGraph) -> None:
        self._graph = graph
        self._lock = threading.Lock()
        self._statuses: dict[str, StageStatus] = {
            sid: StageStatus.PENDING for sid in graph.stage_ids
        }
        self._transitions: list[StageTransition] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, stage_id: str) -> StageStatus:
        with self._lock:
            return self._statuses[stage_id]

    def snapshot(self) -> dict[str, StageStatus]:
        with self._lock:
            return dict(self._statuses)

    @property
    def transitions(self) -> list[StageTransition]:
        with self._lock:
            return list(self._transitions)

    def pending(self) -> list[str]:
        """Pending stages in topological order."""
        with self._lock:
            return [
                sid for sid in self._graph.stage_ids
                if self._statuses[sid] == StageStatus.PENDING
            ]

    def all_terminal(self) -> bool:
        with self._lock:
            return all(s.is_terminal for s in self._statuses.values())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        stage_id: str,
        target: StageStatus,
        *,
        reason: str | None = None,
        upstream_ref: str | None = None,
    ) -> StageTransition:
        """Move a stage to *target*, validating the transition table.

        Entering RUNNING additionally requires every dependency to have
        succeeded.
        """
        with self._lock:
            return self._transition_locked(
                stage_id, target, reason=reason, upstream_ref=upstream_ref
            )

    def _transition_locked(
        self,
        stage_id: str,
        target: StageStatus,
        *,
        reason: str | None,
        upstream_ref: str | None,
    ) -> StageTransition:
        current = self._statuses[stage_id]
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition {stage_id} from {current.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        if target == StageStatus.RUNNING and not self._graph.are_dependencies_met(
            stage_id, self._statuses
        ):
            reasons = self._graph.get_blocking_reasons(stage_id, self._statuses)
            raise DependencyNotMetError(
                f"Cannot start {stage_id}: dependencies not met. "
                f"Blocked by: {'; '.join(reasons)}"
            )

        entry = StageTransition(
            stage_id=stage_id,
            from_status=current,
            to_status=target,
            reason=reason,
            upstream_ref=upstream_ref,
        )
        self._statuses[stage_id] = target
        self._transitions.append(entry)
        logger.debug("%s: %s -> %s", stage_id, current.value, target.value)
        return entry

    def cascade_cancel(self, failed_stage_id: str) -> list[str]:
        """Cancel every pending transitive dependent of *failed_stage_id*.

        Returns the stage ids that were newly cancelled, in topological order.
        """
        cancelled: list[str] = []
        with self._lock:
            for sid in self._graph.get_dependents(failed_stage_id):
                if self._statuses[sid] != StageStatus.PENDING:
                    continue
                upstream = self._graph.unmet_dependency(sid, self._statuses)
                self._transition_locked(
                    sid,
                    StageStatus.CANCELLED,
                    reason=f"dependency {upstream or failed_stage_id} did not succeed",
                    upstream_ref=upstream or failed_stage_id,
                )
                cancelled.append(sid)
        return cancelled

    def cancel_pending(self, reason: str) -> list[str]:
        """Cancel every stage that has not started yet."""
        cancelled: list[str] = []
        with self._lock:
            for sid in self._graph.stage_ids:
                if self._statuses[sid] == StageStatus.PENDING:
                    self._transition_locked(
                        sid, StageStatus.CANCELLED, reason=reason, upstream_ref=None
                    )
                    cancelled.append(sid)
        return cancelled
