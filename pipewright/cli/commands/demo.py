"""``pipewright demo`` — run the default pipeline against in-memory services.

Shell steps are echoed instead of executed, scanners return canned
findings, the image is "built" by a recording runtime and the GitOps step
rewrites a manifest in a scratch directory instead of pushing to git.  The
write-back commit's push event is then replayed through the trigger filter
to show that it is suppressed.
"""

from __future__ import annotations

import tempfile
from collections.abc import Callable
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from pipewright.config import PipewrightSettings
from pipewright.core.gitops import replace_image
from pipewright.core.orchestrator import Orchestrator
from pipewright.core.secret_scope import SecretScope
from pipewright.logging_setup import configure_logging
from pipewright.models.config import IMAGE_TAG, GitOpsConfig, default_pipeline
from pipewright.models.events import Event, EventType
from pipewright.models.findings import Finding, Severity
from pipewright.models.run import RunStatus
from pipewright.monitor.renderer import RunRenderer
from pipewright.steps import StepContext, StepOutcome, StepRegistry, default_registry
from pipewright.steps.security import SourceSecretScanner, StaticScanner

console = Console()

_DEMO_SECRETS = {
    "analysis_token": "demo-analysis-token-0001",
    "scm_write_token": "demo-scm-write-token-0002",
}

_MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
spec:
  template:
    spec:
      containers:
        - name: app
          image: {image}:previous
"""


def _echo_shell(ctx: StepContext) -> StepOutcome:
    return StepOutcome(log=f"$ {ctx.step.run if ctx.step else ''}")


class _ScratchManifest:
    """``gitops-update`` stand-in: rewrites the manifest file, no git."""

    def __init__(self, manifest: Path, image_repository: str) -> None:
        self.manifest = manifest
        self.image_repository = image_repository

    def __call__(self, ctx: StepContext) -> StepOutcome:
        image_ref = f"{self.image_repository}:{ctx.read_output(IMAGE_TAG)}"
        text, replaced = replace_image(
            self.manifest.read_text(encoding="utf-8"), self.image_repository, image_ref
        )
        if not replaced:
            return StepOutcome(exit_code=1, log=f"{self.manifest.name} already at {image_ref}")
        self.manifest.write_text(text, encoding="utf-8")
        return StepOutcome(log=f"{', '.join(replaced)} -> {image_ref}")


def _force_failure(
    action: Callable[[StepContext], StepOutcome], stage_id: str
) -> Callable[[StepContext], StepOutcome]:
    def _wrapped(ctx: StepContext) -> StepOutcome:
        if ctx.stage.stage_id == stage_id:
            return StepOutcome(exit_code=1, log=f"forced failure in {stage_id}")
        return action(ctx)

    return _wrapped


def demo_cmd(
    fail_stage: str = typer.Option(
        None, "--fail-stage", help="Make every step of this stage fail."
    ),
    parallelism: int = typer.Option(4, "--parallelism", "-j", help="Maximum concurrent stages."),
    halt_on_failure: bool = typer.Option(
        False, "--halt-on-failure", help="Stop launching stages after the first failure."
    ),
) -> None:
    """Run the default pipeline with in-memory services."""
    settings = PipewrightSettings(
        environment="development",
        max_parallelism=parallelism,
        halt_on_failure=halt_on_failure,
        transport_retry_delay_seconds=0.0,
    )
    definition = default_pipeline(registry="registry.local", image_name="demo-app")
    if fail_stage and fail_stage not in {sd.stage_id for sd in definition.stages}:
        raise typer.BadParameter(f"unknown stage {fail_stage!r}", param_hint="--fail-stage")

    console.print()
    console.print(
        Panel(
            "[bold]Pipewright Demo Pipeline[/bold]\n\n"
            "secret-scan -> (code-quality, dependency-scan) -> build -> containerize -> gitops-update",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    gitops = definition.gitops or GitOpsConfig()
    with tempfile.TemporaryDirectory(prefix="pipewright-demo-") as tmp:
        workdir = Path(tmp)
        (workdir / "dist").mkdir()
        (workdir / "dist" / "index.html").write_text("<h1>demo</h1>\n", encoding="utf-8")
        manifest = workdir / gitops.manifest_path
        manifest.parent.mkdir(parents=True)
        manifest.write_text(_MANIFEST.format(image=gitops.image_name), encoding="utf-8")

        registry = default_registry(
            scanners={
                "secrets": SourceSecretScanner(),
                "dependencies": StaticScanner([
                    Finding(severity=Severity.HIGH, finding_id="CVE-2024-0001",
                            package="left-pad", fixed_version=None),
                    Finding(severity=Severity.LOW, finding_id="CVE-2024-0002",
                            package="lodash", fixed_version="4.17.21"),
                ]),
                "iac": StaticScanner([
                    Finding(severity=Severity.HIGH, finding_id="KSV-0014",
                            package=gitops.manifest_path, description="root filesystem is writable"),
                ]),
                "image": StaticScanner(),
            },
            quality_gate_poll_seconds=0.0,
        )
        registry.register("shell", _echo_shell)
        registry.register("gitops-update", _ScratchManifest(manifest, gitops.image_name))
        if fail_stage:
            registry = StepRegistry({
                name: _force_failure(registry.get(name), fail_stage) for name in registry.names
            })

        scope = SecretScope(_DEMO_SECRETS)
        configure_logging(settings.log_level, scope=scope)
        orchestrator = Orchestrator(
            definition,
            settings=settings,
            registry=registry,
            secret_scope=scope,
            workdir=workdir,
        )
        renderer = RunRenderer(console)

        event = Event(
            type=EventType.PUSH,
            branch=gitops.branch,
            changed_paths=frozenset({"src/app.js"}),
            commit_sha="0123456789abcdef0123",
            actor="demo",
        )
        outcome = orchestrator.handle_event(event)
        renderer.print_decision(outcome.decision)
        if outcome.run is None:
            return
        renderer.print_run(outcome.run)

        if outcome.run.status == RunStatus.SUCCEEDED:
            console.print(f"\n[cyan]{gitops.manifest_path}:[/cyan]")
            console.print(manifest.read_text(encoding="utf-8"), markup=False, highlight=False)
            write_back = Event(
                type=EventType.PUSH,
                branch=gitops.branch,
                changed_paths=frozenset({gitops.manifest_path}),
                actor="pipewright",
            )
            console.print("[cyan]Replaying the write-back push:[/cyan]")
            renderer.print_decision(orchestrator.evaluate(write_back))
