"""Pipeline run report."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from pipewright.models.events import Event
from pipewright.models.stages import FailureKind, StageResult, StageStatus, StageTransition


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FirstFailure(BaseModel):
    """The failing stage and step surfaced to the operator."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    step: str | None = None
    kind: FailureKind
    reason: str = ""


class PipelineRun(BaseModel):
    """Terminal report of one pipeline run.

    Every stage in the graph appears in ``stages`` — stages that never ran
    are reported as ``cancelled``, never omitted.  Secret values never
    appear here.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    event: Event
    status: RunStatus
    stages: dict[str, StageResult] = Field(default_factory=dict)
    order: list[str] = Field(default_factory=list)  # topological order
    first_failure: FirstFailure | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    transitions: list[StageTransition] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def status_of(self, stage_id: str) -> StageStatus:
        return self.stages[stage_id].status

    @property
    def statuses(self) -> dict[str, StageStatus]:
        return {sid: result.status for sid, result in self.stages.items()}
