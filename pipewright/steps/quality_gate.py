"""``quality-gate`` step action — submit to a static-analysis host and poll.

The service contract is ``submit(code) -> ticket`` followed by
``poll(ticket) -> pass | fail | pending``.  Polling stops at the first
terminal status or when the timeout elapses; a timeout is a failure.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from pipewright.steps.base import StepContext, StepOutcome

logger = logging.getLogger(__name__)


class GateStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"


@runtime_checkable
class QualityGate(Protocol):
    """Protocol for static-analysis services."""

    def submit(self, code: Path, *, token: str) -> str:
        """Upload *code* for analysis and return a ticket id."""
        ...

    def poll(self, ticket: str) -> GateStatus:
        ...


class StaticQualityGate:
    """Reports a fixed status after ``pending_polls`` pending answers."""

    def __init__(self, status: GateStatus = GateStatus.PASS, *, pending_polls: int = 0) -> None:
        self.status = status
        self.pending_polls = pending_polls
        self.submitted_tokens: list[str] = []
        self._polls = 0

    def submit(self, code: Path, *, token: str) -> str:
        self.submitted_tokens.append(token)
        return f"ticket-{len(self.submitted_tokens)}"

    def poll(self, ticket: str) -> GateStatus:
        self._polls += 1
        if self._polls <= self.pending_polls:
            return GateStatus.PENDING
        return self.status


class QualityGateStep:
    """Submit the workspace and wait for the gate verdict.

    Parameters
    ----------
    gate:
        The analysis service client.
    timeout_seconds:
        Upper bound on polling; also capped by the stage's remaining budget.
    poll_seconds:
        Pause between polls.
    token_secret:
        Name of the declared secret holding the service token.
    """

    def __init__(
        self,
        gate: QualityGate,
        *,
        timeout_seconds: float = 300.0,
        poll_seconds: float = 5.0,
        token_secret: str = "analysis_token",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gate = gate
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.token_secret = token_secret
        self._sleep = sleep
        self._clock = clock

    def __call__(self, ctx: StepContext) -> StepOutcome:
        token = ctx.secrets.get(self.token_secret, "")
        ticket = self.gate.submit(ctx.workdir, token=token)
        ctx.log(f"submitted analysis, ticket {ticket}")

        budget = self.timeout_seconds
        remaining = ctx.remaining_seconds()
        if remaining is not None:
            budget = min(budget, remaining)
        deadline = self._clock() + budget

        while True:
            status = self.gate.poll(ticket)
            if status == GateStatus.PASS:
                return StepOutcome(exit_code=0, log="quality gate passed")
            if status == GateStatus.FAIL:
                return StepOutcome(exit_code=1, log="quality gate failed")
            if self._clock() >= deadline:
                return StepOutcome(
                    exit_code=1,
                    log=f"quality gate still pending after {budget:.0f}s, treating as failure",
                )
            self._sleep(self.poll_seconds)
