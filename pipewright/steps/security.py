"""``security-scan`` step action and scanner backends.

Scanners report structured findings; the Stage Executor applies the step's
``severity_filter`` / ``ignore_unfixed`` to decide pass or fail.  A scanner
must never decide the gate itself.

Backends:
    - ``StaticScanner``      — fixed findings (tests, demo, offline runs).
    - ``SourceSecretScanner`` — pattern-based hardcoded-secret detection.
    - ``JsonCommandScanner`` — runs an external scanner and parses its
      JSON report.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from pipewright.models.findings import Finding, Severity
from pipewright.steps.base import StepContext, StepOutcome, TransientStepError

logger = logging.getLogger(__name__)

_FINDINGS = TypeAdapter(list[Finding])


@runtime_checkable
class Scanner(Protocol):
    """Protocol for scanner backends."""

    def scan(self, target: Path, *, ignore_unfixed: bool) -> list[Finding]:
        """Scan *target* and return every finding (the core does the gating)."""
        ...


class StaticScanner:
    """Returns a fixed list of findings."""

    def __init__(self, findings: list[Finding] | None = None) -> None:
        self.findings = list(findings or [])
        self.calls = 0

    def scan(self, target: Path, *, ignore_unfixed: bool) -> list[Finding]:
        self.calls += 1
        return list(self.findings)


# Patterns for hardcoded secrets in source files.
_SECRET_PATTERNS: list[dict[str, str]] = [
    {"name": "aws_key", "pattern": r"AKIA[0-9A-Z]{16}"},
    {"name": "generic_secret", "pattern": r"(?i)(api[_-]?key|secret|token|password)\s*[:=]\s*['\"][^'\"]{8,}"},
    {"name": "private_key", "pattern": r"-----BEGIN (?:RSA |EC |DSA )?PRIVATE KEY-----"},
    {"name": "github_token", "pattern": r"gh[ps]_[A-Za-z0-9_]{36,}"},
]

_SKIP_DIRS = {".git", ".pipewright", "node_modules", ".venv", "__pycache__", "dist"}


class SourceSecretScanner:
    """Scan text files below a directory for hardcoded credentials.

    Every match is a CRITICAL finding with no fixed version.
    """

    def __init__(self, *, max_file_bytes: int = 1_000_000) -> None:
        self._compiled = [(p["name"], re.compile(p["pattern"])) for p in _SECRET_PATTERNS]
        self._max_file_bytes = max_file_bytes

    def scan(self, target: Path, *, ignore_unfixed: bool) -> list[Finding]:
        findings: list[Finding] = []
        for path in sorted(Path(target).rglob("*")):
            if not path.is_file() or _SKIP_DIRS.intersection(path.parts):
                continue
            if path.stat().st_size > self._max_file_bytes:
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = path.relative_to(target).as_posix()
            for lineno, line in enumerate(content.splitlines(), start=1):
                for name, regex in self._compiled:
                    if regex.search(line):
                        findings.append(Finding(
                            severity=Severity.CRITICAL,
                            finding_id=f"secret:{name}",
                            package=f"{rel}:{lineno}",
                            description=f"Potential {name} detected.",
                        ))
        return findings


class JsonCommandScanner:
    """Run an external scanner that prints ``[{severity, finding_id, ...}]``.

    A non-zero exit with no parseable report is a transport-level problem
    (scanner crashed, database download failed) and raises
    ``TransientStepError`` so the executor may retry it.
    """

    def __init__(self, command: list[str], *, timeout: float = 600.0) -> None:
        self._command = list(command)
        self._timeout = timeout

    def scan(self, target: Path, *, ignore_unfixed: bool) -> list[Finding]:
        command = [*self._command, str(target)]
        completed = subprocess.run(
            command, capture_output=True, text=True, timeout=self._timeout, check=False
        )
        try:
            payload = json.loads(completed.stdout or "null")
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            payload = payload.get("findings")
        if payload is None:
            raise TransientStepError(
                f"scanner {self._command[0]} produced no report (exit {completed.returncode})"
            )
        try:
            return _FINDINGS.validate_python(payload)
        except ValidationError as exc:
            raise TransientStepError(f"scanner report is malformed: {exc.error_count()} error(s)") from exc


class SecurityScanStep:
    """Dispatch to the scanner named by ``with.scanner``.

    Parameters
    ----------
    scanners:
        Mapping of scanner name (``secrets``, ``dependencies``, ``iac``,
        ``image`` …) to backend.
    """

    def __init__(self, scanners: dict[str, Scanner]) -> None:
        self.scanners = dict(scanners)

    def __call__(self, ctx: StepContext) -> StepOutcome:
        name = str(ctx.params.get("scanner", ""))
        scanner = self.scanners.get(name)
        if scanner is None:
            return StepOutcome(exit_code=2, log=f"unknown scanner {name!r}", scanner=name)

        target = ctx.workdir / str(ctx.params.get("path", "."))
        ignore_unfixed = bool(ctx.step.ignore_unfixed) if ctx.step is not None else False
        findings = scanner.scan(target, ignore_unfixed=ignore_unfixed)

        lines = [f"{name}: {len(findings)} finding(s)"]
        lines.extend(
            f"  {f.severity.value:<8} {f.finding_id} {f.package}".rstrip() for f in findings
        )
        ctx.state.setdefault("scan_findings", {})[name] = len(findings)
        return StepOutcome(
            exit_code=1 if findings else 0,
            log="\n".join(lines),
            findings=findings,
            scanner=name,
        )
