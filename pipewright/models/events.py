"""Source-control events and trigger decisions."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"


class Event(BaseModel):
    """An immutable repository event delivered by the source-control host."""

    model_config = ConfigDict(frozen=True)

    type: EventType
    branch: str
    changed_paths: frozenset[str] = frozenset()
    commit_sha: str = ""
    actor: str = ""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Event:
        """Build an Event from a webhook-style payload.

        Accepts ``refs/heads/<name>`` as well as bare branch names.
        """
        branch = str(payload.get("branch") or payload.get("ref") or "")
        branch = branch.removeprefix("refs/heads/")
        return cls(
            type=EventType(payload["type"]),
            branch=branch,
            changed_paths=frozenset(payload.get("changed_paths") or ()),
            commit_sha=str(payload.get("commit_sha", "")),
            actor=str(payload.get("actor", "")),
            **({"event_id": payload["event_id"]} if payload.get("event_id") else {}),
        )


class TriggerConfig(BaseModel):
    """Which events start a run.

    ``ignore_paths`` is the anti-loop contract: a push whose changed paths
    all match these patterns never starts a run.  The GitOps manifest path
    must be covered by it.
    """

    model_config = ConfigDict(frozen=True)

    event_types: list[EventType] = Field(
        default_factory=lambda: [EventType.PUSH, EventType.PULL_REQUEST, EventType.MANUAL]
    )
    branches: list[str] = Field(default_factory=lambda: ["main"])
    ignore_paths: list[str] = Field(default_factory=list)


class TriggerReason(str, Enum):
    ACCEPTED = "accepted"
    MANUAL = "manual"
    EVENT_TYPE_NOT_ENABLED = "event_type_not_enabled"
    BRANCH_NOT_MATCHED = "branch_not_matched"
    ONLY_IGNORED_PATHS = "only_ignored_paths"


class TriggerDecision(BaseModel):
    """Result of evaluating an event.  A rejection is a normal no-op."""

    model_config = ConfigDict(frozen=True)

    start: bool
    reason: TriggerReason
    detail: str = ""
