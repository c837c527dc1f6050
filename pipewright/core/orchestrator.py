"""Pipeline orchestrator — the entry point for repository events.

The Orchestrator wires together the Trigger Filter, StageGraph, SecretScope,
RunArtifactStore, StageExecutor, Scheduler and GitOps Updater for one
pipeline definition.

Everything that can be checked statically is checked at construction,
before any event is accepted:

- production constraints (``enforce_production_constraints``);
- graph shape (cycles, unknown dependencies, input/output contracts);
- every step names a registered action;
- loop safety: the GitOps manifest path is covered by the trigger
  ``ignore_paths``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pipewright.config import PipewrightSettings
from pipewright.core.artifact_store import RunArtifactStore
from pipewright.core.executor import StageExecutor
from pipewright.core.gitops import GitOpsUpdater, check_loop_safety
from pipewright.core.production_guard import enforce_production_constraints
from pipewright.core.scheduler import Scheduler
from pipewright.core.secret_scope import SecretScope
from pipewright.core.stage_graph import ConfigurationError, StageGraph
from pipewright.core.trigger_filter import TriggerFilter
from pipewright.models.config import PipelineDefinition, default_pipeline
from pipewright.models.events import Event, TriggerDecision
from pipewright.models.run import PipelineRun
from pipewright.steps import StepRegistry, default_registry

logger = logging.getLogger(__name__)


@dataclass
class EventOutcome:
    """What happened to one incoming event.

    ``write_backs`` holds the trigger decision for every GitOps commit made
    during the run, replayed through the filter.  Each one should be a
    rejection.
    """

    decision: TriggerDecision
    run: PipelineRun | None = None
    write_backs: list[TriggerDecision] = field(default_factory=list)


class Orchestrator:
    """Pipeline orchestrator for one definition.

    Parameters
    ----------
    definition:
        Pipeline definition.  Defaults to :func:`default_pipeline` built
        from *settings*.
    settings:
        Process-wide settings.  Read once; never mutated.
    registry:
        Step actions.  Defaults to :func:`default_registry` with in-memory
        backends and a git-backed GitOps updater.
    secret_scope / artifact_store / gitops:
        Collaborators, overridable for tests.
    """

    def __init__(
        self,
        definition: PipelineDefinition | None = None,
        *,
        settings: PipewrightSettings | None = None,
        registry: StepRegistry | None = None,
        secret_scope: SecretScope | None = None,
        artifact_store: RunArtifactStore | None = None,
        gitops: GitOpsUpdater | None = None,
        workdir: Path | None = None,
    ) -> None:
        self.settings = settings or PipewrightSettings()
        self.definition = definition or default_pipeline(
            registry=self.settings.registry,
            image_name=self.settings.image_name,
            manifest_path=self.settings.manifest_path,
            branch=self.settings.gitops_branch,
        )

        # Production guard — fails hard if production constraints are violated
        enforce_production_constraints(self.settings, self.definition)

        self.graph = StageGraph(self.definition.stages)
        self.trigger_filter = TriggerFilter(self.definition.triggers)

        gitops_config = self.definition.gitops
        if gitops_config is not None:
            check_loop_safety(gitops_config.manifest_path, self.definition.triggers)

        self.workdir = Path(workdir) if workdir is not None else self.settings.repo_path
        self.secret_scope = secret_scope or SecretScope(self.settings.secret_values())
        self.artifact_store = artifact_store or RunArtifactStore()

        self.gitops = gitops
        if self.gitops is None and gitops_config is not None:
            self.gitops = GitOpsUpdater(
                self.workdir,
                image_name=gitops_config.image_name,
                branch=gitops_config.branch,
                remote=gitops_config.remote,
            )

        self.registry = registry or default_registry(
            gitops=self.gitops,
            manifest_path=gitops_config.manifest_path if gitops_config else "",
            image_repository=(
                gitops_config.image_name if gitops_config and gitops_config.image_name
                else self.settings.image_repository
            ),
            quality_gate_timeout_seconds=self.settings.quality_gate_timeout_seconds,
            quality_gate_poll_seconds=self.settings.quality_gate_poll_seconds,
        )
        self._check_actions()

        self.executor = StageExecutor(
            self.registry,
            workdir=self.workdir,
            max_transport_retries=self.settings.max_transport_retries,
            retry_delay_seconds=self.settings.transport_retry_delay_seconds,
        )
        self.scheduler = Scheduler(
            self.executor,
            self.artifact_store,
            self.secret_scope,
            max_parallelism=self.settings.max_parallelism,
            halt_on_failure=self.settings.halt_on_failure,
        )
        logger.debug(
            "Orchestrator ready for %r: %s", self.definition.name, " -> ".join(self.graph.stage_ids)
        )

    def _check_actions(self) -> None:
        missing = sorted({
            f"{sd.stage_id}/{step.name}: {step.action}"
            for sd in self.definition.stages
            for step in sd.steps
            if step.action not in self.registry
        })
        if missing:
            raise ConfigurationError(
                "Steps reference unregistered actions: " + "; ".join(missing)
            )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def evaluate(self, event: Event) -> TriggerDecision:
        return self.trigger_filter.evaluate(event)

    def handle_event(self, event: Event) -> EventOutcome:
        """Filter *event* and, if accepted, run the pipeline for it."""
        decision = self.evaluate(event)
        if not decision.start:
            logger.info(
                "Event %s on %s ignored: %s", event.type.value, event.branch, decision.detail
            )
            return EventOutcome(decision=decision)

        already = len(self.gitops.history) if self.gitops is not None else 0
        run = self.run(event)

        write_backs: list[TriggerDecision] = []
        if self.gitops is not None:
            for update in self.gitops.history[already:]:
                write_backs.append(self.replay_commit(update.commit))
        return EventOutcome(decision=decision, run=run, write_backs=write_backs)

    def run(self, event: Event) -> PipelineRun:
        """Run the pipeline for *event* without consulting the trigger filter."""
        return self.scheduler.run(self.graph, event)

    def cancel(self, run_id: str) -> bool:
        return self.scheduler.cancel(run_id)

    def replay_commit(self, commit: str) -> TriggerDecision:
        """Feed the push generated by a GitOps commit back through the filter."""
        if self.gitops is None:
            raise ConfigurationError("No GitOps target is configured")
        event = self.gitops.commit_event(commit)
        decision = self.evaluate(event)
        if decision.start:
            logger.error(
                "Write-back commit %s would re-trigger the pipeline (paths: %s)",
                commit[:12], ", ".join(sorted(event.changed_paths)),
            )
        else:
            logger.info("Write-back commit %s suppressed: %s", commit[:12], decision.reason.value)
        return decision
