"""Stage Executor — runs one stage's steps with fail-fast gating.

Lifecycle of :meth:`StageExecutor.execute`:

    resolve secrets -> run steps in order -> gate each step
        -> check timeout -> publish declared outputs -> result

- A ``fail_fast`` step failure stops the stage immediately.
- A ``continue`` step failure is recorded; the stage carries on.
- Security steps (``severity_filter`` set) are gated on their structured
  findings, not on the scanner's exit code.
- Publications are buffered and committed only after the last step, so a
  dependent never observes output from a stage that did not succeed.
- Every captured log is redacted before it is stored or logged.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from pathlib import Path

from pipewright.core.artifact_store import (
    ArtifactNotFoundError,
    ArtifactStoreError,
    ArtifactUnauthorizedError,
    DuplicateArtifactError,
    RunArtifactStore,
)
from pipewright.core.secret_scope import SecretResolutionError, SecretScope
from pipewright.models.findings import ScanReport, blocking_findings
from pipewright.models.stages import (
    ExitPolicy,
    FailureKind,
    StageDefinition,
    StageResult,
    StageStatus,
    StepDefinition,
    StepResult,
)
from pipewright.steps.base import (
    StepContext,
    StepOutcome,
    StepRegistry,
    TransientStepError,
    UnknownStepActionError,
)

logger = logging.getLogger(__name__)

_STORE_FAILURE_KINDS: dict[type[ArtifactStoreError], FailureKind] = {
    ArtifactUnauthorizedError: FailureKind.ARTIFACT_UNAUTHORIZED,
    ArtifactNotFoundError: FailureKind.ARTIFACT_NOT_FOUND,
    DuplicateArtifactError: FailureKind.DUPLICATE_ARTIFACT,
}


class _StageAborted(Exception):
    """Internal: a contract violation that ends the stage regardless of policy."""

    def __init__(self, kind: FailureKind, step: str | None, reason: str) -> None:
        super().__init__(reason)
        self.kind = kind
        self.step = step
        self.reason = reason


class StageExecutor:
    """Executes stages on behalf of the Scheduler.

    Parameters
    ----------
    registry:
        Step actions, looked up by ``StepDefinition.action``.
    workdir:
        Working directory handed to every step.
    max_transport_retries:
        Extra attempts for a step raising ``TransientStepError``.
    retry_delay_seconds:
        Pause between such attempts.
    """

    def __init__(
        self,
        registry: StepRegistry,
        *,
        workdir: Path = Path("."),
        max_transport_retries: int = 2,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self.registry = registry
        self.workdir = Path(workdir)
        self.max_transport_retries = max(0, max_transport_retries)
        self.retry_delay_seconds = retry_delay_seconds

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def execute(
        self,
        stage: StageDefinition,
        run_id: str,
        artifact_store: RunArtifactStore,
        secret_scope: SecretScope,
        *,
        env: Mapping[str, str] | None = None,
    ) -> StageResult:
        """Run *stage* and return its result.  Never raises for stage failures.

        *env* carries run-level variables (commit sha, branch, run id) that
        steps may read; it never contains secrets.
        """
        started = time.monotonic()
        deadline = started + stage.timeout_seconds if stage.timeout_seconds else None
        step_results: list[StepResult] = []
        published: list[str] = []
        failure: _StageAborted | None = None
        logger.info("%s [%s] started (%d steps)", stage.name, stage.stage_id, len(stage.steps))

        try:
            with secret_scope.session(stage) as secrets:
                ctx = StepContext(
                    run_id=run_id,
                    stage=stage,
                    store=artifact_store,
                    secrets=secrets,
                    env=dict(env or {}),
                    workdir=self.workdir,
                    deadline=deadline,
                )
                failure = self._run_steps(stage, ctx, secret_scope, step_results, deadline)
                if failure is None:
                    published = self._publish(stage, run_id, ctx, artifact_store)
        except SecretResolutionError as exc:
            failure = _StageAborted(FailureKind.SECRET_RESOLUTION, None, str(exc))
        except _StageAborted as exc:
            failure = exc

        duration = time.monotonic() - started
        if failure is not None:
            reason = secret_scope.redact(failure.reason)
            logger.error(
                "%s [%s] failed (%s) at step %s: %s",
                stage.name, stage.stage_id, failure.kind.value, failure.step, reason,
            )
            return StageResult(
                stage_id=stage.stage_id,
                status=StageStatus.FAILED,
                steps=step_results,
                failure_kind=failure.kind,
                failed_step=failure.step,
                reason=reason,
                duration_seconds=duration,
            )

        logger.info("%s [%s] succeeded in %.2fs", stage.name, stage.stage_id, duration)
        return StageResult(
            stage_id=stage.stage_id,
            status=StageStatus.SUCCEEDED,
            steps=step_results,
            published=published,
            duration_seconds=duration,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_steps(
        self,
        stage: StageDefinition,
        ctx: StepContext,
        scope: SecretScope,
        results: list[StepResult],
        deadline: float | None,
    ) -> _StageAborted | None:
        for step in stage.steps:
            if deadline is not None and time.monotonic() >= deadline:
                return _StageAborted(
                    FailureKind.TIMEOUT_EXCEEDED,
                    step.name,
                    f"stage budget of {stage.timeout_seconds}s exhausted before step started",
                )

            ctx.step = step
            result = self._run_step(step, ctx, scope)
            results.append(result)

            if deadline is not None and time.monotonic() > deadline:
                return _StageAborted(
                    FailureKind.TIMEOUT_EXCEEDED,
                    step.name,
                    f"stage exceeded its budget of {stage.timeout_seconds}s",
                )

            if result.succeeded:
                continue
            if step.exit_policy == ExitPolicy.FAIL_FAST:
                return _StageAborted(FailureKind.STEP_FAILURE, step.name, result.reason)
            logger.warning(
                "%s [%s] step %s failed (continue): %s",
                stage.name, stage.stage_id, step.name, result.reason,
            )
        return None

    def _run_step(self, step: StepDefinition, ctx: StepContext, scope: SecretScope) -> StepResult:
        started = time.monotonic()
        try:
            action = self.registry.get(step.action)
        except UnknownStepActionError as exc:
            raise _StageAborted(FailureKind.INTERNAL_ERROR, step.name, str(exc)) from None

        attempts = 0
        while True:
            attempts += 1
            try:
                outcome = action(ctx)
                break
            except TransientStepError as exc:
                if attempts > self.max_transport_retries:
                    outcome = StepOutcome(
                        exit_code=1,
                        log=ctx.drain_log(),
                    )
                    return self._step_result(
                        step, outcome, scope, started, attempts,
                        reason=f"transport error after {attempts} attempt(s): {exc}",
                    )
                logger.warning(
                    "step %s: transport error (attempt %d/%d), retrying: %s",
                    step.name, attempts, self.max_transport_retries + 1, scope.redact(str(exc)),
                )
                time.sleep(self.retry_delay_seconds)
            except ArtifactStoreError as exc:
                kind = _STORE_FAILURE_KINDS.get(type(exc), FailureKind.INTERNAL_ERROR)
                raise _StageAborted(kind, step.name, str(exc)) from None
            except Exception as exc:  # noqa: BLE001
                outcome = StepOutcome(exit_code=1, log=ctx.drain_log())
                return self._step_result(
                    step, outcome, scope, started, attempts,
                    reason=f"{type(exc).__name__}: {exc}",
                )

        if not outcome.log:
            outcome.log = ctx.drain_log()
        else:
            outcome.log = "\n".join(filter(None, [ctx.drain_log(), outcome.log]))
        return self._step_result(step, outcome, scope, started, attempts)

    @staticmethod
    def _step_result(
        step: StepDefinition,
        outcome: StepOutcome,
        scope: SecretScope,
        started: float,
        attempts: int,
        *,
        reason: str = "",
    ) -> StepResult:
        scan: ScanReport | None = None
        succeeded = outcome.ok and not reason

        if not reason and step.severity_filter is not None and outcome.findings is not None:
            blocking = blocking_findings(
                outcome.findings, step.severity_filter, ignore_unfixed=step.ignore_unfixed
            )
            scan = ScanReport(
                scanner=outcome.scanner or step.name,
                findings=outcome.findings,
                severity_filter=step.severity_filter,
                ignore_unfixed=step.ignore_unfixed,
                blocking=blocking,
            )
            succeeded = scan.passed
            if blocking:
                ids = ", ".join(
                    f"{f.finding_id or '?'} ({f.severity.value})" for f in blocking[:5]
                )
                reason = (
                    f"{len(blocking)} finding(s) at or above "
                    f"{step.severity_filter.value}: {ids}"
                )
        elif not succeeded and not reason:
            reason = f"exited with code {outcome.exit_code}"

        return StepResult(
            name=step.name,
            succeeded=succeeded,
            exit_code=outcome.exit_code,
            exit_policy=step.exit_policy,
            attempts=attempts,
            duration_seconds=time.monotonic() - started,
            log=scope.redact(outcome.log),
            reason=scope.redact(reason),
            scan=scan,
        )

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    @staticmethod
    def _publish(
        stage: StageDefinition,
        run_id: str,
        ctx: StepContext,
        store: RunArtifactStore,
    ) -> list[str]:
        missing = sorted(
            set(stage.produced_artifacts) - set(ctx.pending_artifacts)
            | set(stage.produced_outputs) - set(ctx.pending_outputs)
        )
        if missing:
            raise _StageAborted(
                FailureKind.MISSING_OUTPUT,
                None,
                f"declared but not produced: {', '.join(missing)}",
            )

        published: list[str] = []
        try:
            for key in sorted(ctx.pending_artifacts):
                store.put(run_id, key, ctx.pending_artifacts[key], producer=stage.stage_id)
                published.append(key)
            for key in sorted(ctx.pending_outputs):
                store.put_output(run_id, key, ctx.pending_outputs[key], producer=stage.stage_id)
                published.append(key)
        except ArtifactStoreError as exc:
            kind = _STORE_FAILURE_KINDS.get(type(exc), FailureKind.INTERNAL_ERROR)
            raise _StageAborted(kind, None, str(exc)) from None
        except OSError as exc:
            raise _StageAborted(FailureKind.INTERNAL_ERROR, None, f"cannot read artifact: {exc}") from None
        return published
