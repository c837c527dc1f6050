"""Step action protocol, per-step context and the action registry.

A step action is any callable taking a :class:`StepContext` and returning a
:class:`StepOutcome`.  Actions talk to the outside world (scanners,
registries, container runtimes, git); gating decisions are made by the
Stage Executor from the outcome, never inside the action.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pipewright.core.artifact_store import (
    ArtifactUnauthorizedError,
    DuplicateArtifactError,
)
from pipewright.models.findings import Finding
from pipewright.models.stages import StageDefinition, StepDefinition

if TYPE_CHECKING:
    from pipewright.core.artifact_store import RunArtifactStore


class TransientStepError(RuntimeError):
    """Transport-level failure (network, registry 5xx) — eligible for retry.

    Finding-based or exit-code failures must never raise this.
    """


class UnknownStepActionError(KeyError):
    """Raised when a step names an action that is not registered."""


@dataclass
class StepOutcome:
    """What a step action reports back to the executor.

    ``findings`` is ``None`` for steps that do not produce structured scan
    results; security steps return a (possibly empty) list.
    """

    exit_code: int = 0
    log: str = ""
    findings: list[Finding] | None = None
    scanner: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class StepContext:
    """Everything a step may touch while it runs.

    Publications are buffered in ``pending_artifacts`` / ``pending_outputs``
    and committed by the executor only after the stage's last step.
    ``state`` is a scratchpad shared by the steps of one stage.
    """

    run_id: str
    stage: StageDefinition
    store: RunArtifactStore
    step: StepDefinition | None = None
    secrets: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    workdir: Path = Path(".")
    state: dict[str, Any] = field(default_factory=dict)
    pending_artifacts: dict[str, bytes | Path] = field(default_factory=dict)
    pending_outputs: dict[str, str] = field(default_factory=dict)
    deadline: float | None = None  # time.monotonic() value
    _log: list[str] = field(default_factory=list)

    @property
    def params(self) -> dict[str, Any]:
        return self.step.with_ if self.step is not None else {}

    def log(self, message: str) -> None:
        self._log.append(message)

    def drain_log(self) -> str:
        text = "\n".join(self._log)
        self._log.clear()
        return text

    def remaining_seconds(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def read_artifact(self, key: str) -> bytes:
        return self.store.get(self.run_id, key, self.stage)

    def read_output(self, key: str) -> str:
        return self.store.get_output(self.run_id, key, self.stage)

    # ------------------------------------------------------------------
    # Publications (buffered)
    # ------------------------------------------------------------------

    def publish_artifact(self, key: str, content: bytes | Path) -> None:
        if key not in self.stage.produced_artifacts:
            raise ArtifactUnauthorizedError(
                f"Stage {self.stage.stage_id!r} did not declare artifact {key!r} "
                f"in produced_artifacts"
            )
        if key in self.pending_artifacts:
            raise DuplicateArtifactError(f"Artifact {key!r} was already published by this stage")
        self.pending_artifacts[key] = content

    def set_output(self, key: str, value: str) -> None:
        if key not in self.stage.produced_outputs:
            raise ArtifactUnauthorizedError(
                f"Stage {self.stage.stage_id!r} did not declare output {key!r} "
                f"in produced_outputs"
            )
        if key in self.pending_outputs:
            raise DuplicateArtifactError(f"Output {key!r} was already set by this stage")
        self.pending_outputs[key] = str(value)


@runtime_checkable
class StepAction(Protocol):
    """Protocol for step actions: ``action(ctx) -> StepOutcome``."""

    def __call__(self, ctx: StepContext) -> StepOutcome:
        ...


class StepRegistry:
    """Maps action names (``StepDefinition.uses``) to step actions."""

    def __init__(self, actions: dict[str, StepAction | Callable[[StepContext], StepOutcome]] | None = None) -> None:
        self._actions: dict[str, Callable[[StepContext], StepOutcome]] = dict(actions or {})

    def register(self, name: str, action: Callable[[StepContext], StepOutcome]) -> None:
        self._actions[name] = action

    def get(self, name: str) -> Callable[[StepContext], StepOutcome]:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownStepActionError(f"No step action registered as {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    @property
    def names(self) -> list[str]:
        return sorted(self._actions)
