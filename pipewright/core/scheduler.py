"""Scheduler — runs a stage graph for one triggering event.

Stages whose dependencies have all succeeded are launched on a thread pool,
at most ``max_parallelism`` at a time.  Launch order and completion
handling both follow the graph's topological order, so two runs of the
same graph with the same step outcomes end with the same statuses.

When a stage fails:

- the run is marked failed and the stage is recorded as the first failure
  (if it is the first);
- every unstarted transitive dependent is cancelled;
- stages already running finish normally;
- independent stages keep running, unless ``halt_on_failure`` is set, in
  which case nothing new is launched and every unstarted stage is
  cancelled.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone

from pipewright.core.artifact_store import RunArtifactStore
from pipewright.core.executor import StageExecutor
from pipewright.core.hasher import compute_run_id
from pipewright.core.secret_scope import SecretScope
from pipewright.core.stage_graph import StageGraph
from pipewright.core.stage_machine import StageMachine
from pipewright.models.events import Event
from pipewright.models.run import FirstFailure, PipelineRun, RunStatus
from pipewright.models.stages import (
    FailureKind,
    StageDefinition,
    StageResult,
    StageStatus,
)

logger = logging.getLogger(__name__)


class Scheduler:
    """Topological, bounded-parallel stage scheduler.

    Parameters
    ----------
    executor:
        Runs one stage at a time on a worker thread.
    artifact_store:
        Run-scoped handoff between stages.  Each run's entries are
        discarded when the run ends.
    secret_scope:
        Secret resolution and redaction.
    max_parallelism:
        Upper bound on concurrently running stages.
    halt_on_failure:
        Stop launching new stages after the first failure.
    """

    def __init__(
        self,
        executor: StageExecutor,
        artifact_store: RunArtifactStore | None = None,
        secret_scope: SecretScope | None = None,
        *,
        max_parallelism: int = 4,
        halt_on_failure: bool = False,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError(f"max_parallelism must be at least 1, got {max_parallelism}")
        self.executor = executor
        self.artifact_store = artifact_store or RunArtifactStore()
        self.secret_scope = secret_scope or SecretScope()
        self.max_parallelism = max_parallelism
        self.halt_on_failure = halt_on_failure
        self._cancel_flags: dict[str, threading.Event] = {}
        self._guard = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, run_id: str) -> bool:
        """Request cooperative cancellation of an active run.

        Unstarted stages are cancelled; running stages finish.  Returns
        False if no such run is active.
        """
        with self._guard:
            flag = self._cancel_flags.get(run_id)
        if flag is None:
            return False
        logger.warning("Cancellation requested for run %s", run_id)
        flag.set()
        return True

    @property
    def active_runs(self) -> list[str]:
        with self._guard:
            return sorted(self._cancel_flags)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        graph: StageGraph | list[StageDefinition],
        event: Event,
        *,
        run_id: str | None = None,
    ) -> PipelineRun:
        """Execute every stage of *graph* for *event* and return the report.

        A stage list is validated into a :class:`StageGraph` first, so an
        invalid definition raises ``ConfigurationError`` before any stage
        executes.
        """
        if not isinstance(graph, StageGraph):
            graph = StageGraph(graph)

        run_id = run_id or compute_run_id(event)
        flag = threading.Event()
        with self._guard:
            if run_id in self._cancel_flags:
                raise ValueError(f"Run {run_id} is already active")
            self._cancel_flags[run_id] = flag

        machine = StageMachine(graph)
        results: dict[str, StageResult] = {}
        first_failure: FirstFailure | None = None
        halted_by: str | None = None
        env = _run_env(run_id, event)
        started_at = datetime.now(timezone.utc)
        outputs: dict[str, str] = {}
        logger.info(
            "Run %s: pending -> running (%d stages, event %s on %s)",
            run_id, len(graph), event.type.value, event.branch,
        )

        try:
            with ThreadPoolExecutor(
                max_workers=self.max_parallelism, thread_name_prefix="pipewright-stage"
            ) as pool:
                in_flight: dict[Future[StageResult], str] = {}

                while True:
                    if flag.is_set():
                        self._record_cancelled(
                            results,
                            machine.cancel_pending("run cancelled"),
                            FailureKind.RUN_CANCELLED,
                            "run cancelled",
                        )
                    elif halted_by is not None:
                        reason = f"run halted after {halted_by} failed"
                        self._record_cancelled(
                            results,
                            machine.cancel_pending(reason),
                            FailureKind.RUN_CANCELLED,
                            reason,
                        )
                    else:
                        self._launch_ready(graph, machine, pool, in_flight, run_id, env)

                    if not in_flight:
                        break

                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in sorted(done, key=lambda f: graph.index(in_flight[f])):
                        stage_id = in_flight.pop(future)
                        result = self._collect(future, stage_id)
                        results[stage_id] = result
                        machine.transition(
                            stage_id, result.status, reason=result.reason or None
                        )
                        if result.status != StageStatus.FAILED:
                            continue

                        if first_failure is None:
                            first_failure = FirstFailure(
                                stage_id=stage_id,
                                step=result.failed_step,
                                kind=result.failure_kind or FailureKind.INTERNAL_ERROR,
                                reason=result.reason,
                            )
                            logger.error("Run %s: first failure in %s", run_id, stage_id)
                        cancelled = machine.cascade_cancel(stage_id)
                        self._record_dependency_cancelled(graph, machine, results, cancelled)
                        if self.halt_on_failure and halted_by is None:
                            halted_by = stage_id

                # No-op for a validated graph.
                leftovers = machine.cancel_pending("never became eligible")
                self._record_cancelled(
                    results, leftovers, FailureKind.DEPENDENCY_UNMET, "never became eligible"
                )
        finally:
            with self._guard:
                self._cancel_flags.pop(run_id, None)
            outputs = {
                key: self.secret_scope.redact(value)
                for key, value in self.artifact_store.outputs(run_id).items()
            }
            self.artifact_store.discard(run_id)

        status = _run_status(results, cancelled_by_request=flag.is_set())
        logger.info("Run %s: running -> %s", run_id, status.value)

        return PipelineRun(
            run_id=run_id,
            event=event,
            status=status,
            stages={sid: results[sid] for sid in graph.stage_ids},
            order=graph.stage_ids,
            first_failure=first_failure,
            outputs=outputs,
            transitions=machine.transitions,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _launch_ready(
        self,
        graph: StageGraph,
        machine: StageMachine,
        pool: ThreadPoolExecutor,
        in_flight: dict[Future[StageResult], str],
        run_id: str,
        env: Mapping[str, str],
    ) -> None:
        for stage_id in machine.pending():
            if len(in_flight) >= self.max_parallelism:
                return
            if not graph.are_dependencies_met(stage_id, machine.snapshot()):
                continue
            machine.transition(stage_id, StageStatus.RUNNING)
            future = pool.submit(
                self.executor.execute,
                graph.get_stage_definition(stage_id),
                run_id,
                self.artifact_store,
                self.secret_scope,
                env=env,
            )
            in_flight[future] = stage_id

    def _collect(self, future: Future[StageResult], stage_id: str) -> StageResult:
        try:
            return future.result()
        except Exception as exc:  # noqa: BLE001
            reason = self.secret_scope.redact(f"{type(exc).__name__}: {exc}")
            logger.exception("Stage %s crashed outside its steps", stage_id)
            return StageResult(
                stage_id=stage_id,
                status=StageStatus.FAILED,
                failure_kind=FailureKind.INTERNAL_ERROR,
                reason=reason,
            )

    @staticmethod
    def _record_dependency_cancelled(
        graph: StageGraph,
        machine: StageMachine,
        results: dict[str, StageResult],
        cancelled: list[str],
    ) -> None:
        statuses = machine.snapshot()
        for stage_id in cancelled:
            upstream = graph.unmet_dependency(stage_id, statuses)
            reason = f"dependency {upstream} did not succeed"
            logger.warning("Stage %s cancelled: %s", stage_id, reason)
            results[stage_id] = StageResult(
                stage_id=stage_id,
                status=StageStatus.CANCELLED,
                failure_kind=FailureKind.DEPENDENCY_UNMET,
                reason=reason,
            )

    @staticmethod
    def _record_cancelled(
        results: dict[str, StageResult],
        cancelled: list[str],
        kind: FailureKind,
        reason: str,
    ) -> None:
        for stage_id in cancelled:
            logger.warning("Stage %s cancelled: %s", stage_id, reason)
            results[stage_id] = StageResult(
                stage_id=stage_id,
                status=StageStatus.CANCELLED,
                failure_kind=kind,
                reason=reason,
            )


def _run_env(run_id: str, event: Event) -> dict[str, str]:
    env = {"RUN_ID": run_id, "BRANCH": event.branch, "EVENT_TYPE": event.type.value}
    if event.commit_sha:
        env["COMMIT_SHA"] = event.commit_sha
    return env


def _run_status(results: Mapping[str, StageResult], *, cancelled_by_request: bool) -> RunStatus:
    statuses = {r.status for r in results.values()}
    if StageStatus.FAILED in statuses:
        return RunStatus.FAILED
    if cancelled_by_request or StageStatus.CANCELLED in statuses:
        return RunStatus.CANCELLED
    return RunStatus.SUCCEEDED
