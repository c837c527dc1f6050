"""Tests for the Scheduler — ordering, cascade cancellation, halting, cancel."""

from __future__ import annotations

import threading
import time

import pytest

from pipewright.core.executor import StageExecutor
from pipewright.core.scheduler import Scheduler
from pipewright.core.stage_graph import ConfigurationError, CyclicDependencyError, StageGraph
from pipewright.models.run import RunStatus
from pipewright.models.stages import FailureKind, StageStatus
from pipewright.steps.base import StepOutcome, StepRegistry


class TestLinearChain:
    def test_all_succeed_in_order(self, scheduler, action, make_stage, make_event):
        stages = [make_stage("a"), make_stage("b", ["a"]), make_stage("c", ["b"])]
        run = scheduler.run(stages, make_event())
        assert run.status == RunStatus.SUCCEEDED
        assert action.stages_run == ["a", "b", "c"]
        assert run.order == ["a", "b", "c"]
        assert run.first_failure is None

    def test_middle_failure_cancels_downstream(self, scheduler, action, make_stage, make_event):
        action.fail("b")
        stages = [make_stage("a"), make_stage("b", ["a"]), make_stage("c", ["b"])]
        run = scheduler.run(stages, make_event())

        assert run.status == RunStatus.FAILED
        assert run.statuses == {
            "a": StageStatus.SUCCEEDED,
            "b": StageStatus.FAILED,
            "c": StageStatus.CANCELLED,
        }
        assert "c" not in action.stages_run
        assert run.first_failure is not None
        assert run.first_failure.stage_id == "b"
        assert run.first_failure.step == "main"
        assert run.stages["c"].failure_kind == FailureKind.DEPENDENCY_UNMET
        assert run.stages["c"].reason == "dependency b did not succeed"

    def test_cancellation_names_nearest_upstream(self, scheduler, action, make_stage, make_event):
        action.fail("a")
        stages = [make_stage("a"), make_stage("b", ["a"]), make_stage("c", ["b"])]
        run = scheduler.run(stages, make_event())
        assert run.stages["b"].reason == "dependency a did not succeed"
        assert run.stages["c"].reason == "dependency b did not succeed"
        cancelled = [t for t in run.transitions if t.to_status == StageStatus.CANCELLED]
        assert [(t.stage_id, t.upstream_ref) for t in cancelled] == [("b", "a"), ("c", "b")]

    def test_every_stage_reported(self, scheduler, action, make_stage, make_event):
        action.fail("a")
        stages = [make_stage("a")] + [make_stage(f"s{i}", ["a"]) for i in range(5)]
        run = scheduler.run(stages, make_event())
        assert set(run.stages) == {"a", "s0", "s1", "s2", "s3", "s4"}


class TestIndependentBranches:
    def _diamond(self, make_stage):
        return [
            make_stage("secret-scan"),
            make_stage("code-quality", ["secret-scan"]),
            make_stage("dependency-scan", ["secret-scan"]),
            make_stage("build", ["code-quality", "dependency-scan"]),
        ]

    def test_sibling_finishes_after_failure(self, scheduler, action, make_stage, make_event):
        action.fail("code-quality")
        run = scheduler.run(self._diamond(make_stage), make_event())
        assert run.status_of("dependency-scan") == StageStatus.SUCCEEDED
        assert run.status_of("build") == StageStatus.CANCELLED
        assert run.first_failure.stage_id == "code-quality"

    def test_unrelated_root_keeps_running(self, executor, artifact_store, secret_scope, action, make_stage, make_event):
        scheduler = Scheduler(executor, artifact_store, secret_scope, max_parallelism=1)
        action.fail("a")
        stages = [make_stage("a"), make_stage("b"), make_stage("c", ["a"])]
        run = scheduler.run(stages, make_event())
        assert run.status_of("b") == StageStatus.SUCCEEDED
        assert run.status_of("c") == StageStatus.CANCELLED
        assert run.status == RunStatus.FAILED

    def test_first_failure_is_first_to_complete(self, scheduler, action, make_stage, make_event):
        def _slow_failure(ctx):
            time.sleep(0.05)
            return StepOutcome(exit_code=1)

        action.on("code-quality", _slow_failure)
        action.fail("dependency-scan")
        run = scheduler.run(self._diamond(make_stage), make_event())
        assert run.first_failure.stage_id == "dependency-scan"
        assert run.status_of("code-quality") == StageStatus.FAILED

    def test_same_outcomes_same_statuses(self, scheduler, action, make_stage, make_event):
        action.fail("dependency-scan")
        first = scheduler.run(self._diamond(make_stage), make_event())
        second = scheduler.run(self._diamond(make_stage), make_event())
        assert first.run_id != second.run_id
        assert first.statuses == second.statuses
        assert first.first_failure == second.first_failure


class TestHaltOnFailure:
    def test_halts_independent_stages(self, executor, artifact_store, secret_scope, action, make_stage, make_event):
        scheduler = Scheduler(
            executor, artifact_store, secret_scope, max_parallelism=1, halt_on_failure=True
        )
        action.fail("a")
        stages = [make_stage("a"), make_stage("b"), make_stage("c", ["a"])]
        run = scheduler.run(stages, make_event())

        assert action.stages_run == ["a"]
        assert run.status == RunStatus.FAILED
        assert run.stages["b"].failure_kind == FailureKind.RUN_CANCELLED
        assert run.stages["b"].reason == "run halted after a failed"
        assert run.stages["c"].failure_kind == FailureKind.DEPENDENCY_UNMET


class TestCancel:
    def test_cancel_stops_unstarted_stages(self, scheduler, action, make_stage, make_event):
        def _cancel_self(ctx):
            assert scheduler.cancel(ctx.run_id)
            return StepOutcome()

        action.on("a", _cancel_self)
        stages = [make_stage("a"), make_stage("b", ["a"])]
        run = scheduler.run(stages, make_event())

        assert run.status == RunStatus.CANCELLED
        assert run.status_of("a") == StageStatus.SUCCEEDED
        assert run.status_of("b") == StageStatus.CANCELLED
        assert run.stages["b"].failure_kind == FailureKind.RUN_CANCELLED
        assert scheduler.active_runs == []

    def test_cancel_unknown_run(self, scheduler):
        assert scheduler.cancel("pw-nope") is False

    def test_duplicate_run_id_rejected(self, scheduler, action, make_stage, make_event):
        errors: list[Exception] = []

        def _reenter(ctx):
            try:
                scheduler.run([make_stage("x")], make_event(), run_id=ctx.run_id)
            except ValueError as exc:
                errors.append(exc)
            return StepOutcome()

        action.on("a", _reenter)
        scheduler.run([make_stage("a")], make_event(), run_id="pw-fixed")
        assert len(errors) == 1
        assert "already active" in str(errors[0])


class TestValidationBeforeExecution:
    def test_cycle_raises_before_any_stage(self, scheduler, action, make_stage, make_event):
        stages = [make_stage("a", ["b"]), make_stage("b", ["a"])]
        with pytest.raises(CyclicDependencyError):
            scheduler.run(stages, make_event())
        assert action.calls == []

    def test_unknown_dependency(self, scheduler, make_stage, make_event):
        with pytest.raises(ConfigurationError, match="unknown stage"):
            scheduler.run([make_stage("a", ["ghost"])], make_event())

    def test_accepts_prebuilt_graph(self, scheduler, make_stage, make_event):
        graph = StageGraph([make_stage("a"), make_stage("b", ["a"])])
        assert scheduler.run(graph, make_event()).status == RunStatus.SUCCEEDED

    def test_parallelism_must_be_positive(self, executor):
        with pytest.raises(ValueError):
            Scheduler(executor, max_parallelism=0)


class TestRunScopedData:
    def test_outputs_snapshot_and_discard(self, scheduler, artifact_store, action, make_stage, make_event):
        action.on("containerize", lambda ctx: ctx.set_output("image_tag", "deadbeef") or StepOutcome())
        stages = [
            make_stage("containerize", produced_outputs=["image_tag"]),
            make_stage("gitops", ["containerize"], required_inputs=["image_tag"]),
        ]
        seen = []
        action.on("gitops", lambda ctx: seen.append(ctx.read_output("image_tag")) or StepOutcome())

        run = scheduler.run(stages, make_event(), run_id="pw-outputs")
        assert run.outputs == {"image_tag": "deadbeef"}
        assert seen == ["deadbeef"]
        assert artifact_store.keys("pw-outputs") == []

    def test_run_env_carries_commit(self, scheduler, action, make_stage, make_event):
        seen = {}
        action.on("a", lambda ctx: seen.update(ctx.env) or StepOutcome())
        run = scheduler.run([make_stage("a")], make_event(commit_sha="c0ffee"))
        assert seen == {
            "RUN_ID": run.run_id,
            "BRANCH": "main",
            "EVENT_TYPE": "push",
            "COMMIT_SHA": "c0ffee",
        }

    def test_crashing_executor_is_internal_error(self, artifact_store, secret_scope, make_stage, make_event):
        class _Broken(StageExecutor):
            def execute(self, *args, **kwargs):
                raise RuntimeError("worker died")

        scheduler = Scheduler(_Broken(StepRegistry()), artifact_store, secret_scope)
        run = scheduler.run([make_stage("a"), make_stage("b", ["a"])], make_event())
        assert run.stages["a"].failure_kind == FailureKind.INTERNAL_ERROR
        assert run.status_of("b") == StageStatus.CANCELLED


class TestParallelism:
    def test_bounded_concurrency(self, executor, artifact_store, secret_scope, action, make_stage, make_event):
        lock = threading.Lock()
        state = {"now": 0, "peak": 0}

        def _busy(ctx):
            with lock:
                state["now"] += 1
                state["peak"] = max(state["peak"], state["now"])
            time.sleep(0.02)
            with lock:
                state["now"] -= 1
            return StepOutcome()

        stages = [make_stage(f"s{i}") for i in range(6)]
        for sd in stages:
            action.on(sd.stage_id, _busy)

        scheduler = Scheduler(executor, artifact_store, secret_scope, max_parallelism=2)
        run = scheduler.run(stages, make_event())
        assert run.status == RunStatus.SUCCEEDED
        assert 1 <= state["peak"] <= 2

    def test_dependent_never_starts_before_dependency_finishes(self, scheduler, action, make_stage, make_event):
        finished: list[str] = []

        def _record(ctx):
            time.sleep(0.01)
            finished.append(ctx.stage.stage_id)
            return StepOutcome()

        def _check(ctx):
            assert finished == ["a"]
            return StepOutcome()

        action.on("a", _record)
        action.on("b", _check)
        run = scheduler.run([make_stage("a"), make_stage("b", ["a"])], make_event())
        assert run.status == RunStatus.SUCCEEDED
