from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TargetRef(BaseModel):
    """A pull request as reported by the repository host. Replaced, never edited."""

    model_config = ConfigDict(frozen=True)

    number: int
    title: str
    author: str
    state: str
    merge_state: str = "unknown"
    url: str = ""

    @field_validator("merge_state", mode="before")
    @classmethod
    def _default_merge_state(cls, value: str | None) -> str:
        return value or "unknown"


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    login: str


class LifecycleState(str, Enum):
    OPEN = "OPEN"
    MERGED = "MERGED"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, raw: str) -> "LifecycleState":
        normalized = raw.strip().upper()
        if normalized in (cls.OPEN.value, cls.MERGED.value):
            return cls(normalized)
        return cls.OTHER


class Stage(str, Enum):
    SCHEDULED = "scheduled"
    COMMENT_ISSUING = "comment_issuing"
    MERGE_ISSUING = "merge_issuing"
    MERGE_FAILED = "merge_failed"
    MERGE_SET = "merge_set"
    CHECK_ISSUING = "check_issuing"
    CHECK_FAILED = "check_failed"
    MERGED = "merged"
    REMEDIATION_SHA = "remediation_sha"
    REMEDIATION_ISSUING = "remediation_issuing"
    DONE = "done"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]


TERMINAL_STAGES = frozenset({Stage.MERGE_FAILED, Stage.CHECK_FAILED, Stage.MERGED, Stage.DONE})

# Every stage appears as a key; terminal stages have no successors.
TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.SCHEDULED: frozenset({Stage.COMMENT_ISSUING}),
    Stage.COMMENT_ISSUING: frozenset({Stage.MERGE_ISSUING}),
    Stage.MERGE_ISSUING: frozenset({Stage.MERGE_FAILED, Stage.MERGE_SET}),
    Stage.MERGE_FAILED: frozenset(),
    Stage.MERGE_SET: frozenset({Stage.CHECK_ISSUING}),
    Stage.CHECK_ISSUING: frozenset({Stage.CHECK_FAILED, Stage.MERGED, Stage.REMEDIATION_SHA}),
    Stage.CHECK_FAILED: frozenset(),
    Stage.MERGED: frozenset(),
    Stage.REMEDIATION_SHA: frozenset({Stage.REMEDIATION_ISSUING}),
    Stage.REMEDIATION_ISSUING: frozenset({Stage.DONE}),
    Stage.DONE: frozenset(),
}

_STAGE_LABELS: dict[Stage, str] = {
    Stage.SCHEDULED: "pending",
    Stage.COMMENT_ISSUING: "commenting",
    Stage.MERGE_ISSUING: "enabling auto-merge",
    Stage.MERGE_FAILED: "auto-merge failed",
    Stage.MERGE_SET: "auto-merge set, waiting to check",
    Stage.CHECK_ISSUING: "checking...",
    Stage.CHECK_FAILED: "check failed",
    Stage.MERGED: "merged",
    Stage.REMEDIATION_SHA: "not merged, reading head",
    Stage.REMEDIATION_ISSUING: "not merged, remediating",
    Stage.DONE: "done (not merged)",
}


class ScheduledEntry(BaseModel):
    """One scheduled-merge workflow instance. Mutated only through the Registry."""

    model_config = ConfigDict(validate_assignment=True)

    target: TargetRef
    scheduled_at: datetime = Field(frozen=True)
    created_at: datetime = Field(frozen=True)
    stage: Stage = Stage.SCHEDULED
    check_at: datetime | None = None
    last_message: str = ""
    commit_sha: str | None = None
    disable_outcome: str | None = None

    @property
    def number(self) -> int:
        return self.target.number

    @property
    def terminal(self) -> bool:
        return self.stage.terminal

    def summary(self) -> dict:
        return {
            "number": self.target.number,
            "title": self.target.title,
            "scheduled_at": self.scheduled_at.isoformat(),
            "stage": self.stage.value,
            "check_at": self.check_at.isoformat() if self.check_at else None,
            "commit_sha": self.commit_sha,
            "last_message": self.last_message,
        }
