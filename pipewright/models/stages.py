"""Stage and step models — definitions, state machine table, results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pipewright.models.findings import ScanReport, Severity


class StageStatus(str, Enum):
    """Lifecycle of a stage within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED)


# Valid state transitions — enforced by StageMachine.
# A stage that never started can only be cancelled; running stages are never
# cancelled (cancellation is cooperative).
VALID_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.CANCELLED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED},
    StageStatus.SUCCEEDED: set(),
    StageStatus.FAILED: set(),
    StageStatus.CANCELLED: set(),
}


class ExitPolicy(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"


class FailureKind(str, Enum):
    """Why a stage did not succeed."""

    STEP_FAILURE = "step_failure"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    DEPENDENCY_UNMET = "dependency_unmet"
    RUN_CANCELLED = "run_cancelled"
    ARTIFACT_UNAUTHORIZED = "artifact_unauthorized"
    ARTIFACT_NOT_FOUND = "artifact_not_found"
    DUPLICATE_ARTIFACT = "duplicate_artifact"
    MISSING_OUTPUT = "missing_output"
    SECRET_RESOLUTION = "secret_resolution"
    INTERNAL_ERROR = "internal_error"


class StepDefinition(BaseModel):
    """One ordered action inside a stage.

    Exactly one of ``uses`` (a registered step action) or ``run`` (a shell
    command executed by the ``shell`` action) must be given.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    uses: str | None = None
    run: str | None = None
    exit_policy: ExitPolicy = ExitPolicy.FAIL_FAST
    severity_filter: Severity | None = None
    ignore_unfixed: bool = False
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")

    @model_validator(mode="after")
    def _one_action(self) -> StepDefinition:
        if (self.uses is None) == (self.run is None):
            raise ValueError(
                f"step {self.name!r} must set exactly one of 'uses' or 'run'"
            )
        return self

    @property
    def action(self) -> str:
        return self.uses or "shell"


class StageDefinition(BaseModel):
    """A named unit of pipeline work.

    ``depends_on`` encodes the DAG: a stage cannot start until every
    dependency has ``succeeded``.  ``required_inputs`` lists the artifact and
    output keys the stage may read; nothing else is visible to it.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str = ""
    depends_on: list[str] = Field(default_factory=list)
    steps: list[StepDefinition] = Field(default_factory=list)
    required_inputs: list[str] = Field(default_factory=list)
    produced_artifacts: list[str] = Field(default_factory=list)
    produced_outputs: list[str] = Field(default_factory=list)
    secrets: list[str] = Field(default_factory=list)
    timeout_seconds: float | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.stage_id

    @property
    def produced_keys(self) -> set[str]:
        return set(self.produced_artifacts) | set(self.produced_outputs)


class StageTransition(BaseModel):
    """Records a single state transition for the run's audit trail."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    from_status: StageStatus
    to_status: StageStatus
    reason: str | None = None
    upstream_ref: str | None = None  # stage_id that caused a cancellation
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class StepResult(BaseModel):
    """Outcome of one step.  ``log`` is always redacted before it lands here."""

    model_config = ConfigDict(frozen=True)

    name: str
    succeeded: bool
    exit_code: int = 0
    exit_policy: ExitPolicy = ExitPolicy.FAIL_FAST
    attempts: int = 1
    duration_seconds: float = 0.0
    log: str = ""
    reason: str = ""
    scan: ScanReport | None = None


class StageResult(BaseModel):
    """Outcome of one stage within a run."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    status: StageStatus
    steps: list[StepResult] = Field(default_factory=list)
    failure_kind: FailureKind | None = None
    failed_step: str | None = None
    reason: str = ""
    published: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
