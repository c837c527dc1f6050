"""Pipeline definition models and the built-in default pipeline."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from pipewright.models.events import TriggerConfig
from pipewright.models.findings import Severity
from pipewright.models.stages import ExitPolicy, StageDefinition, StepDefinition

BUILD_ARTIFACTS = "build-artifacts"
IMAGE_TAG = "image_tag"
ANALYSIS_TOKEN = "analysis_token"
SCM_WRITE_TOKEN = "scm_write_token"


class GitOpsConfig(BaseModel):
    """Where the deployment descriptor lives and how it is pushed."""

    model_config = ConfigDict(frozen=True)

    manifest_path: str = "k8s/deployment.yaml"
    branch: str = "main"
    remote: str = "origin"
    image_name: str = ""  # repository part of the image reference to rewrite


class PipelineDefinition(BaseModel):
    """Static pipeline definition: triggers, stage graph, GitOps target.

    Loaded from ``pipewright.toml`` (see :mod:`pipewright.loader`) or built
    with :func:`default_pipeline`.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "pipeline"
    triggers: TriggerConfig = TriggerConfig()
    stages: list[StageDefinition] = Field(default_factory=list)
    gitops: GitOpsConfig | None = None

    def stage(self, stage_id: str) -> StageDefinition:
        for sd in self.stages:
            if sd.stage_id == stage_id:
                return sd
        raise KeyError(stage_id)


def default_pipeline(
    *,
    registry: str = "ghcr.io",
    image_name: str = "app",
    manifest_path: str = "k8s/deployment.yaml",
    branch: str = "main",
) -> PipelineDefinition:
    """The standard build → scan → containerize → deploy pipeline.

    secret-scan gates everything; code-quality and dependency-scan run in
    parallel; build hands ``build-artifacts`` to containerize, which hands
    ``image_tag`` to gitops-update.
    """
    image_repo = f"{registry}/{image_name}" if registry else image_name
    manifest_dir = manifest_path.rsplit("/", 1)[0] if "/" in manifest_path else ""
    ignore = [f"{manifest_dir}/**" if manifest_dir else manifest_path, "*.md"]

    stages = [
        StageDefinition(
            stage_id="secret-scan",
            display_name="Secret Scan",
            steps=[
                StepDefinition(
                    name="scan-secrets",
                    uses="security-scan",
                    severity_filter=Severity.LOW,
                    with_={"scanner": "secrets"},
                ),
            ],
        ),
        StageDefinition(
            stage_id="code-quality",
            display_name="Code Quality",
            depends_on=["secret-scan"],
            secrets=[ANALYSIS_TOKEN],
            steps=[
                StepDefinition(name="quality-gate", uses="quality-gate"),
            ],
        ),
        StageDefinition(
            stage_id="dependency-scan",
            display_name="Dependency & IaC Scan",
            depends_on=["secret-scan"],
            steps=[
                StepDefinition(
                    name="scan-dependencies",
                    uses="security-scan",
                    severity_filter=Severity.HIGH,
                    ignore_unfixed=True,
                    with_={"scanner": "dependencies"},
                ),
                StepDefinition(
                    name="scan-iac",
                    uses="security-scan",
                    severity_filter=Severity.HIGH,
                    exit_policy=ExitPolicy.CONTINUE,
                    with_={"scanner": "iac"},
                ),
            ],
        ),
        StageDefinition(
            stage_id="build",
            display_name="Build",
            depends_on=["code-quality", "dependency-scan"],
            produced_artifacts=[BUILD_ARTIFACTS],
            steps=[
                StepDefinition(name="install", run="npm ci"),
                StepDefinition(name="compile", run="npm run build"),
                StepDefinition(
                    name="upload",
                    uses="publish-artifact",
                    with_={"key": BUILD_ARTIFACTS, "path": "dist"},
                ),
            ],
        ),
        StageDefinition(
            stage_id="containerize",
            display_name="Containerize",
            depends_on=["build"],
            required_inputs=[BUILD_ARTIFACTS],
            produced_outputs=[IMAGE_TAG],
            steps=[
                StepDefinition(
                    name="build-image",
                    uses="container-build",
                    with_={"image": image_repo, "artifact": BUILD_ARTIFACTS},
                ),
                StepDefinition(
                    name="scan-image",
                    uses="security-scan",
                    severity_filter=Severity.HIGH,
                    ignore_unfixed=True,
                    with_={"scanner": "image"},
                ),
                StepDefinition(name="push-image", uses="container-push"),
            ],
        ),
        StageDefinition(
            stage_id="gitops-update",
            display_name="GitOps Update",
            depends_on=["containerize"],
            required_inputs=[IMAGE_TAG],
            secrets=[SCM_WRITE_TOKEN],
            steps=[
                StepDefinition(name="update-manifest", uses="gitops-update"),
            ],
        ),
    ]

    return PipelineDefinition(
        name="default",
        triggers=TriggerConfig(branches=[branch], ignore_paths=ignore),
        stages=stages,
        gitops=GitOpsConfig(
            manifest_path=manifest_path,
            branch=branch,
            image_name=image_repo,
        ),
    )
