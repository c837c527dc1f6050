"""``shell`` step action — runs ``StepDefinition.run`` in a subprocess."""

from __future__ import annotations

import logging
import os
import subprocess

from pipewright.steps.base import StepContext, StepOutcome

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


def secret_env(secrets: dict[str, str]) -> dict[str, str]:
    """Expose resolved secrets as upper-case environment variables."""
    return {name.upper(): value for name, value in secrets.items()}


class ShellStep:
    """Run a shell command; the step fails on a non-zero exit code.

    Combined stdout/stderr becomes the step log (the executor redacts it).
    The remaining stage budget, if any, is enforced as a subprocess timeout.
    """

    def __init__(self, *, shell: bool = True) -> None:
        self._shell = shell

    def __call__(self, ctx: StepContext) -> StepOutcome:
        command = ctx.step.run if ctx.step is not None and ctx.step.run else ctx.params.get("command", "")
        if not command:
            return StepOutcome(exit_code=2, log="no command given")

        env = os.environ.copy()
        env.update(ctx.env)
        env.update(secret_env(ctx.secrets))

        logger.debug("running %r in %s", command, ctx.workdir)
        try:
            completed = subprocess.run(
                command,
                shell=self._shell,
                cwd=ctx.workdir,
                env=env,
                text=True,
                capture_output=True,
                timeout=ctx.remaining_seconds(),
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout if isinstance(exc.stdout, str) else ""
            return StepOutcome(
                exit_code=TIMEOUT_EXIT_CODE,
                log=f"{partial}\ncommand timed out after {exc.timeout:.1f}s",
            )

        log = completed.stdout
        if completed.stderr:
            log = f"{log}\n{completed.stderr}" if log else completed.stderr
        return StepOutcome(exit_code=completed.returncode, log=log.rstrip())
