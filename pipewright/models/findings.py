"""Structured scan results — security steps gate on these, not on exit codes."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """Finding severity, ordered from least to most severe."""

    UNKNOWN = "UNKNOWN"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, threshold: Severity) -> bool:
        """True when this severity meets or exceeds *threshold*."""
        return self.rank >= threshold.rank


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.UNKNOWN: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Finding(BaseModel):
    """A single scanner finding."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    finding_id: str = ""  # e.g. "CVE-2024-1234" or a rule id
    package: str = ""
    description: str = ""
    fixed_version: str | None = None  # None means no fix is available

    @property
    def is_unfixed(self) -> bool:
        return not self.fixed_version


class ScanReport(BaseModel):
    """Findings from one scan, together with the gate verdict."""

    model_config = ConfigDict(frozen=True)

    scanner: str
    findings: list[Finding] = Field(default_factory=list)
    severity_filter: Severity | None = None
    ignore_unfixed: bool = False
    blocking: list[Finding] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.blocking


def blocking_findings(
    findings: list[Finding],
    severity_filter: Severity,
    *,
    ignore_unfixed: bool = False,
) -> list[Finding]:
    """Return the findings that breach *severity_filter*.

    A finding blocks when its severity is at or above the filter, unless
    ``ignore_unfixed`` is set and no fixed version exists for it.
    """
    blocking: list[Finding] = []
    for finding in findings:
        if not finding.severity.at_least(severity_filter):
            continue
        if ignore_unfixed and finding.is_unfixed:
            continue
        blocking.append(finding)
    return blocking
