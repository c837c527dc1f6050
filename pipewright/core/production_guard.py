"""Production configuration guard — enforces hard constraints at startup.

The guard runs once when an Orchestrator is constructed and fails hard
(raises ``ProductionConfigError``) if the process is not safe to run in
production.  Other code should not scatter ``if is_production`` checks.
"""

from __future__ import annotations

import logging

from pipewright.config import PipewrightSettings
from pipewright.models.config import PipelineDefinition

logger = logging.getLogger(__name__)


class ProductionConfigError(RuntimeError):
    """Raised when production configuration constraints are violated.

    The process should exit; this must not be caught and ignored.
    """


def required_secret_names(definition: PipelineDefinition) -> list[str]:
    """Every secret name declared by any stage, sorted and de-duplicated."""
    names: set[str] = set()
    for sd in definition.stages:
        names.update(sd.secrets)
    return sorted(names)


def enforce_production_constraints(
    settings: PipewrightSettings, definition: PipelineDefinition
) -> None:
    """Validate production-critical configuration constraints.

    Constraints enforced
    --------------------
    1. Debug mode must be disabled.
    2. Every secret a stage declares must be configured (non-empty).

    All violations are collected and reported at once.  Secret values are
    never included in the message.
    """
    if not settings.is_production:
        return

    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed in production. Set PIPEWRIGHT_DEBUG=false."
        )

    configured = settings.secret_values()
    for name in required_secret_names(definition):
        if name not in configured:
            violations.append(
                f"Secret '{name}' is declared by the pipeline but not configured. "
                f"Set PIPEWRIGHT_{name.upper()}."
            )

    if violations:
        msg = "Production configuration guard failed.\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise ProductionConfigError(msg)

    logger.info("Production configuration guard passed.")
