"""Built-in step actions and the default registry."""

from __future__ import annotations

from pipewright.core.gitops import GitOpsUpdater
from pipewright.steps.base import (
    StepAction,
    StepContext,
    StepOutcome,
    StepRegistry,
    TransientStepError,
    UnknownStepActionError,
)
from pipewright.steps.container import (
    ContainerBuildStep,
    ContainerPushStep,
    ContainerRuntime,
    InMemoryRegistry,
    PublishArtifactStep,
    RecordingRuntime,
    Registry,
)
from pipewright.steps.gitops import GitOpsStep
from pipewright.steps.quality_gate import QualityGate, QualityGateStep, StaticQualityGate
from pipewright.steps.security import Scanner, SecurityScanStep, SourceSecretScanner, StaticScanner
from pipewright.steps.shell import ShellStep

__all__ = [
    "StepAction",
    "StepContext",
    "StepOutcome",
    "StepRegistry",
    "TransientStepError",
    "UnknownStepActionError",
    "default_registry",
]


def default_registry(
    *,
    scanners: dict[str, Scanner] | None = None,
    quality_gate: QualityGate | None = None,
    runtime: ContainerRuntime | None = None,
    registry: Registry | None = None,
    gitops: GitOpsUpdater | None = None,
    manifest_path: str = "k8s/deployment.yaml",
    image_repository: str = "app",
    quality_gate_timeout_seconds: float = 300.0,
    quality_gate_poll_seconds: float = 5.0,
) -> StepRegistry:
    """Registry with every built-in action wired to the given backends.

    Backends left as ``None`` fall back to the in-memory implementations:
    a source-tree secret scanner plus empty scanners for the rest, a
    passing quality gate, a recording runtime and an in-memory registry.
    ``gitops-update`` is only registered when an updater is supplied.
    """
    if scanners is None:
        scanners = {
            "secrets": SourceSecretScanner(),
            "dependencies": StaticScanner(),
            "iac": StaticScanner(),
            "image": StaticScanner(),
        }

    reg = StepRegistry()
    reg.register("shell", ShellStep())
    reg.register("security-scan", SecurityScanStep(scanners))
    reg.register(
        "quality-gate",
        QualityGateStep(
            quality_gate or StaticQualityGate(),
            timeout_seconds=quality_gate_timeout_seconds,
            poll_seconds=quality_gate_poll_seconds,
        ),
    )
    reg.register("publish-artifact", PublishArtifactStep())
    reg.register("container-build", ContainerBuildStep(runtime or RecordingRuntime()))
    reg.register("container-push", ContainerPushStep(registry or InMemoryRegistry()))
    if gitops is not None:
        reg.register(
            "gitops-update",
            GitOpsStep(gitops, manifest_path=manifest_path, image_repository=image_repository),
        )
    return reg
