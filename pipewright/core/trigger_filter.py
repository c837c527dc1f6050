"""Trigger Filter — decides whether a repository event starts a run.

Pure decision function, no side effects.  Patterns are shell-style globs
matched with ``fnmatch.fnmatchcase``; ``*`` also matches ``/``, so
``k8s/*`` covers every file below ``k8s/``.

The ignore-path check is the anti-loop contract: a push whose changed paths
*all* match ``ignore_paths`` never starts a run, which is what keeps the
GitOps write-back commit from re-triggering the pipeline.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable

from pipewright.models.events import (
    Event,
    EventType,
    TriggerConfig,
    TriggerDecision,
    TriggerReason,
)


def matches_any(value: str, patterns: Iterable[str]) -> bool:
    """True if *value* matches at least one glob in *patterns*."""
    return any(fnmatch.fnmatchcase(value, pattern) for pattern in patterns)


def only_ignored_paths(changed_paths: Iterable[str], ignore_patterns: Iterable[str]) -> bool:
    """True when there is at least one path and every path is ignored."""
    patterns = list(ignore_patterns)
    paths = [p.lstrip("/") for p in changed_paths]
    if not paths or not patterns:
        return False
    return all(matches_any(path, patterns) for path in paths)


def evaluate(event: Event, triggers: TriggerConfig) -> TriggerDecision:
    """Decide whether *event* starts a run under *triggers*.

    Rules, in order:
        1. ``manual`` events always start.
        2. The event type must be enabled.
        3. The branch must match one of the branch patterns.
        4. ``push`` events whose changed paths are all ignored are rejected.
    """
    if event.type == EventType.MANUAL:
        return TriggerDecision(
            start=True,
            reason=TriggerReason.MANUAL,
            detail="manual dispatch bypasses branch and path filters",
        )

    if event.type not in triggers.event_types:
        return TriggerDecision(
            start=False,
            reason=TriggerReason.EVENT_TYPE_NOT_ENABLED,
            detail=f"event type {event.type.value!r} is not enabled",
        )

    if not matches_any(event.branch, triggers.branches):
        return TriggerDecision(
            start=False,
            reason=TriggerReason.BRANCH_NOT_MATCHED,
            detail=f"branch {event.branch!r} matches none of {triggers.branches}",
        )

    if event.type == EventType.PUSH and only_ignored_paths(
        event.changed_paths, triggers.ignore_paths
    ):
        return TriggerDecision(
            start=False,
            reason=TriggerReason.ONLY_IGNORED_PATHS,
            detail=f"all {len(event.changed_paths)} changed path(s) are ignored",
        )

    return TriggerDecision(start=True, reason=TriggerReason.ACCEPTED)


class TriggerFilter:
    """Holds a ``TriggerConfig`` and evaluates events against it."""

    def __init__(self, triggers: TriggerConfig) -> None:
        self.triggers = triggers

    def evaluate(self, event: Event) -> TriggerDecision:
        return evaluate(event, self.triggers)

    def is_ignored_path(self, path: str) -> bool:
        """True when a push touching only *path* would be suppressed."""
        return only_ignored_paths([path], self.triggers.ignore_paths)
