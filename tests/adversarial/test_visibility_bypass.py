"""Adversarial tests: stages cannot read what they did not declare or what is not yet published."""

from __future__ import annotations

import threading

import pytest

from pipewright.core.artifact_store import (
    ArtifactNotFoundError,
    ArtifactUnauthorizedError,
    DuplicateArtifactError,
)
from pipewright.core.stage_graph import ConfigurationError
from pipewright.models.run import RunStatus
from pipewright.models.stages import ExitPolicy, FailureKind, StageStatus, StepDefinition
from pipewright.steps.base import StepOutcome


class TestUndeclaredReads:
    def test_sibling_cannot_read_without_declaring(self, scheduler, action, make_stage, make_event):
        action.on("build", lambda ctx: ctx.publish_artifact("build-artifacts", b"dist") or StepOutcome())
        action.on("snoop", lambda ctx: StepOutcome(log=repr(ctx.read_artifact("build-artifacts"))))
        run = scheduler.run(
            [
                make_stage("build", produced_artifacts=["build-artifacts"]),
                make_stage("snoop", ["build"]),
            ],
            make_event(),
        )
        assert run.stages["snoop"].failure_kind == FailureKind.ARTIFACT_UNAUTHORIZED
        assert run.first_failure.stage_id == "snoop"

    def test_undeclared_output_read_rejected_by_store(self, artifact_store, run_id, make_stage):
        artifact_store.put_output(run_id, "image_tag", "abc", producer="containerize")
        with pytest.raises(ArtifactUnauthorizedError):
            artifact_store.get_output(run_id, "image_tag", make_stage("other"))

    def test_requiring_input_without_depending_on_producer(self, scheduler, action, make_stage, make_event):
        stages = [
            make_stage("build", produced_artifacts=["build-artifacts"]),
            make_stage("racer", required_inputs=["build-artifacts"]),
        ]
        with pytest.raises(ConfigurationError, match="does not \\(transitively\\) depend"):
            scheduler.run(stages, make_event())
        assert action.calls == []


class TestPublicationTiming:
    def test_nothing_visible_while_producer_runs(self, scheduler, artifact_store, action, make_stage, make_event):
        observed: list[list[str]] = []

        def _build(ctx):
            ctx.publish_artifact("build-artifacts", b"dist")
            observed.append(artifact_store.keys(ctx.run_id))
            return StepOutcome()

        action.on("build", _build, step="upload")
        action.on("build", lambda ctx: observed.append(artifact_store.keys(ctx.run_id)) or StepOutcome(), step="verify")
        run = scheduler.run(
            [
                make_stage(
                    "build",
                    steps=[StepDefinition(name="upload", uses="fake"), StepDefinition(name="verify", uses="fake")],
                    produced_artifacts=["build-artifacts"],
                ),
                make_stage("containerize", ["build"], required_inputs=["build-artifacts"]),
            ],
            make_event(),
        )
        assert run.status == RunStatus.SUCCEEDED
        assert observed == [[], []]

    def test_failed_producer_never_publishes(self, scheduler, artifact_store, action, make_stage, make_event):
        def _publish_then_fail(ctx):
            ctx.publish_artifact("build-artifacts", b"half-built")
            return StepOutcome(exit_code=1)

        action.on("build", _publish_then_fail)
        run = scheduler.run(
            [
                make_stage("build", produced_artifacts=["build-artifacts"]),
                make_stage("containerize", ["build"], required_inputs=["build-artifacts"]),
            ],
            make_event(),
            run_id="pw-half",
        )
        assert run.status_of("containerize") == StageStatus.CANCELLED
        assert run.stages["build"].published == []
        assert "containerize" not in action.stages_run

    def test_continue_failure_still_publishes(self, scheduler, action, make_stage, make_event):
        action.on("build", lambda ctx: ctx.publish_artifact("build-artifacts", b"x") or StepOutcome(), step="upload")
        action.fail("build", "lint")
        run = scheduler.run(
            [
                make_stage(
                    "build",
                    steps=[
                        StepDefinition(name="lint", uses="fake", exit_policy=ExitPolicy.CONTINUE),
                        StepDefinition(name="upload", uses="fake"),
                    ],
                    produced_artifacts=["build-artifacts"],
                ),
            ],
            make_event(),
        )
        assert run.stages["build"].published == ["build-artifacts"]


class TestSingleProducer:
    def test_second_writer_rejected(self, artifact_store, run_id):
        artifact_store.put(run_id, "build-artifacts", b"one", producer="build")
        with pytest.raises(DuplicateArtifactError, match="'build'"):
            artifact_store.put(run_id, "build-artifacts", b"two", producer="impostor")

    def test_output_and_artifact_share_key_space(self, artifact_store, run_id):
        artifact_store.put(run_id, "image_tag", b"bytes", producer="a")
        with pytest.raises(DuplicateArtifactError):
            artifact_store.put_output(run_id, "image_tag", "v1", producer="b")

    def test_concurrent_writers_one_wins(self, artifact_store, run_id):
        errors: list[Exception] = []
        barrier = threading.Barrier(6)

        def _write(i: int) -> None:
            barrier.wait()
            try:
                artifact_store.put_output(run_id, "image_tag", str(i), producer=f"s{i}")
            except DuplicateArtifactError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_write, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(errors) == 5

    def test_runs_are_isolated(self, artifact_store, make_stage):
        artifact_store.put("pw-run-a", "build-artifacts", b"a", producer="build")
        consumer = make_stage("containerize", required_inputs=["build-artifacts"])
        with pytest.raises(ArtifactNotFoundError):
            artifact_store.get("pw-run-b", "build-artifacts", consumer)
