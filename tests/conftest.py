"""Shared test fixtures for Pipewright."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from pipewright.core.artifact_store import RunArtifactStore
from pipewright.core.executor import StageExecutor
from pipewright.core.scheduler import Scheduler
from pipewright.core.secret_scope import SecretScope
from pipewright.models.events import Event, EventType
from pipewright.models.stages import StageDefinition, StepDefinition
from pipewright.steps.base import StepContext, StepOutcome, StepRegistry

ANALYSIS_TOKEN_VALUE = "sq-analysis-5f2c9d81"
SCM_TOKEN_VALUE = "ghp-write-7a1e44b0c3"


class RecordingAction:
    """Step action that records every call and replays scripted outcomes.

    Outcomes are looked up by ``(stage_id, step_name)`` first, then by
    ``stage_id``.  An outcome may be a ``StepOutcome``, an exception to
    raise, or a callable taking the ``StepContext``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.outcomes: dict[Any, Any] = {}
        self._lock = threading.Lock()

    def __call__(self, ctx: StepContext) -> StepOutcome:
        assert ctx.step is not None
        key = (ctx.stage.stage_id, ctx.step.name)
        with self._lock:
            self.calls.append(key)
        outcome = self.outcomes.get(key, self.outcomes.get(ctx.stage.stage_id))
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None and not isinstance(outcome, StepOutcome):
            return outcome(ctx)
        return outcome or StepOutcome()

    def fail(self, stage_id: str, step: str | None = None, *, exit_code: int = 1) -> None:
        key: Any = (stage_id, step) if step else stage_id
        self.outcomes[key] = StepOutcome(exit_code=exit_code, log=f"{stage_id} broke")

    def on(self, stage_id: str, handler: Callable[[StepContext], StepOutcome], step: str | None = None) -> None:
        self.outcomes[(stage_id, step) if step else stage_id] = handler

    @property
    def stages_run(self) -> list[str]:
        with self._lock:
            seen: list[str] = []
            for stage_id, _ in self.calls:
                if stage_id not in seen:
                    seen.append(stage_id)
            return seen


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "pw-test-run-001"


@pytest.fixture
def artifact_store() -> RunArtifactStore:
    return RunArtifactStore()


@pytest.fixture
def secret_values() -> dict[str, str]:
    return {"analysis_token": ANALYSIS_TOKEN_VALUE, "scm_write_token": SCM_TOKEN_VALUE}


@pytest.fixture
def secret_scope(secret_values: dict[str, str]) -> SecretScope:
    """A scope holding the two standard credentials."""
    return SecretScope(secret_values)


@pytest.fixture
def action() -> RecordingAction:
    return RecordingAction()


@pytest.fixture
def registry(action: RecordingAction) -> StepRegistry:
    """Registry where both ``fake`` and ``shell`` resolve to the recording action."""
    return StepRegistry({"fake": action, "shell": action})


@pytest.fixture
def executor(registry: StepRegistry, tmp_path) -> StageExecutor:
    return StageExecutor(registry, workdir=tmp_path, retry_delay_seconds=0.0)


@pytest.fixture
def scheduler(
    executor: StageExecutor, artifact_store: RunArtifactStore, secret_scope: SecretScope
) -> Scheduler:
    return Scheduler(executor, artifact_store, secret_scope, max_parallelism=4)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_stage() -> Callable[..., StageDefinition]:
    """Factory fixture: a stage with one ``fake`` step unless steps are given."""

    def _factory(
        stage_id: str,
        depends_on: list[str] | None = None,
        *,
        steps: list[StepDefinition] | None = None,
        **overrides: Any,
    ) -> StageDefinition:
        return StageDefinition(
            stage_id=stage_id,
            depends_on=depends_on or [],
            steps=steps if steps is not None else [StepDefinition(name="main", uses="fake")],
            **overrides,
        )

    return _factory


@pytest.fixture
def make_event() -> Callable[..., Event]:
    """Factory fixture: a push to main touching application code."""

    def _factory(
        event_type: EventType = EventType.PUSH,
        branch: str = "main",
        paths: set[str] | None = None,
        **overrides: Any,
    ) -> Event:
        return Event(
            type=event_type,
            branch=branch,
            changed_paths=frozenset({"src/app.js"} if paths is None else paths),
            **overrides,
        )

    return _factory
