"""
Request/response messages exchanged between the engine and the runtime.

The engine never calls the collaborator. It returns ActionRequests; the
runtime performs them and feeds back ActionResults keyed by PR number and
action kind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ActionKind(str, Enum):
    PRE_MERGE_COMMENT = "pre_merge_comment"
    TRIGGER_MERGE = "trigger_merge"
    FETCH_STATE = "fetch_state"
    FETCH_HEAD = "fetch_head"
    DISABLE_AUTO_MERGE = "disable_auto_merge"
    FAILURE_COMMENT = "failure_comment"
    NOTIFY = "notify"


@dataclass(frozen=True)
class ActionRequest:
    number: int
    kind: ActionKind
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def expects_result(self) -> bool:
        return self.kind is not ActionKind.NOTIFY


@dataclass(frozen=True)
class ActionResult:
    number: int
    kind: ActionKind
    ok: bool
    value: Any = None
    error: str = ""

    @classmethod
    def success(cls, request: ActionRequest, value: Any = None) -> "ActionResult":
        return cls(number=request.number, kind=request.kind, ok=True, value=value)

    @classmethod
    def failure(cls, request: ActionRequest, error: str) -> "ActionResult":
        return cls(number=request.number, kind=request.kind, ok=False, error=error)


@dataclass(frozen=True)
class Tick:
    now: datetime
