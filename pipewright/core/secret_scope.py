"""Secret Scope — per-stage credential injection and log redaction.

Secrets are process-wide configuration.  A stage sees a secret only if it
declares the name in ``StageDefinition.secrets``, and only for the duration
of its execution window (:meth:`SecretScope.session`).  Resolved values are
never cached on the scope and never stored in a run report.

Every captured text that might contain a value passes through
:meth:`SecretScope.redact`, a literal substring replacement against all
configured values.  :class:`RedactionFilter` applies the same pass to log
records.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from pydantic import SecretStr

from pipewright.models.stages import StageDefinition

logger = logging.getLogger(__name__)

REDACTED = "***"


class SecretResolutionError(RuntimeError):
    """Raised when a stage asks for a secret it may not have.

    Messages carry secret *names* only, never values.
    """


class SecretScope:
    """Resolves declared secrets for a stage and scrubs captured text.

    Parameters
    ----------
    secrets:
        Mapping of secret name to value (``str`` or ``SecretStr``).
    """

    def __init__(self, secrets: Mapping[str, str | SecretStr] | None = None) -> None:
        self._values: dict[str, SecretStr] = {
            name: value if isinstance(value, SecretStr) else SecretStr(value)
            for name, value in (secrets or {}).items()
        }
        self._invocation_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @property
    def names(self) -> list[str]:
        return sorted(self._values)

    def _lock_for(self, stage_id: str) -> threading.Lock:
        with self._guard:
            return self._invocation_locks.setdefault(stage_id, threading.Lock())

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, stage: StageDefinition, secret_names: list[str] | None = None) -> dict[str, str]:
        """Return ``name -> value`` for *secret_names* (default: all declared).

        Raises ``SecretResolutionError`` if any name is undeclared by the
        stage or not configured.  No partial mapping is returned.
        """
        names = list(stage.secrets if secret_names is None else secret_names)
        undeclared = sorted(n for n in names if n not in stage.secrets)
        if undeclared:
            raise SecretResolutionError(
                f"Stage {stage.stage_id!r} did not declare secret(s): {', '.join(undeclared)}"
            )
        missing = sorted(
            n for n in names
            if n not in self._values or not self._values[n].get_secret_value()
        )
        if missing:
            raise SecretResolutionError(
                f"Secret(s) not configured for stage {stage.stage_id!r}: {', '.join(missing)}"
            )
        with self._lock_for(stage.stage_id):
            return {n: self._values[n].get_secret_value() for n in names}

    @contextmanager
    def session(self, stage: StageDefinition) -> Iterator[dict[str, str]]:
        """Resolve the stage's declared secrets for one execution window.

        The yielded mapping is emptied when the window closes.
        """
        resolved = self.resolve(stage)
        if resolved:
            logger.debug(
                "Injected %d secret(s) into %s: %s",
                len(resolved), stage.stage_id, ", ".join(sorted(resolved)),
            )
        try:
            yield resolved
        finally:
            resolved.clear()

    # ------------------------------------------------------------------
    # Redaction
    # ------------------------------------------------------------------

    def redact(self, text: str) -> str:
        """Replace every literal occurrence of a configured value with ``***``."""
        if not text:
            return text
        values = sorted(
            (v.get_secret_value() for v in self._values.values()),
            key=len,
            reverse=True,
        )
        for value in values:
            if value:
                text = text.replace(value, REDACTED)
        return text

    def contains_secret(self, text: str) -> bool:
        return any(
            v.get_secret_value() and v.get_secret_value() in text
            for v in self._values.values()
        )


class RedactionFilter(logging.Filter):
    """Logging filter that scrubs secret values from formatted messages.

    A traceback that mentions a secret is rendered to text, redacted and
    stored in ``exc_text``; ``exc_info`` is then cleared so handlers cannot
    render the raw exception again.
    """

    _formatter = logging.Formatter()

    def __init__(self, scope: SecretScope) -> None:
        super().__init__()
        self._scope = scope

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._scope.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and record.exc_info[0] is not None:
            text = record.exc_text or self._formatter.formatException(record.exc_info)
            if self._scope.contains_secret(text):
                record.exc_text = self._scope.redact(text)
                record.exc_info = None
        elif record.exc_text:
            record.exc_text = self._scope.redact(record.exc_text)
        if record.stack_info:
            record.stack_info = self._scope.redact(record.stack_info)
        return True
