"""Pipewright data models — all Pydantic v2, all frozen (immutable)."""

from pipewright.models.artifacts import ArtifactRecord, OutputRecord
from pipewright.models.config import GitOpsConfig, PipelineDefinition, default_pipeline
from pipewright.models.events import (
    Event,
    EventType,
    TriggerConfig,
    TriggerDecision,
    TriggerReason,
)
from pipewright.models.findings import Finding, ScanReport, Severity, blocking_findings
from pipewright.models.run import FirstFailure, PipelineRun, RunStatus
from pipewright.models.stages import (
    VALID_TRANSITIONS,
    ExitPolicy,
    FailureKind,
    StageDefinition,
    StageResult,
    StageStatus,
    StageTransition,
    StepDefinition,
    StepResult,
)

__all__ = [
    # events
    "Event",
    "EventType",
    "TriggerConfig",
    "TriggerDecision",
    "TriggerReason",
    # stages
    "ExitPolicy",
    "FailureKind",
    "StageDefinition",
    "StageResult",
    "StageStatus",
    "StageTransition",
    "StepDefinition",
    "StepResult",
    "VALID_TRANSITIONS",
    # findings
    "Finding",
    "ScanReport",
    "Severity",
    "blocking_findings",
    # artifacts
    "ArtifactRecord",
    "OutputRecord",
    # run
    "FirstFailure",
    "PipelineRun",
    "RunStatus",
    # config
    "GitOpsConfig",
    "PipelineDefinition",
    "default_pipeline",
]
