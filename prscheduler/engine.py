"""
PRSCHEDULER Workflow Engine — the state machine

It is deterministic and it never performs I/O. Two inputs drive it:
  - on_tick(now): due-time checks for SCHEDULED and MERGE_SET entries
  - on_result(result): the outcome of an action it asked for earlier

Both return the ActionRequests to perform next. The runtime executes
them and routes the results back here by PR number and action kind.

Pipeline per entry:
  SCHEDULED → COMMENT_ISSUING → MERGE_ISSUING → MERGE_SET → CHECK_ISSUING
    → MERGED
    → REMEDIATION_SHA → REMEDIATION_ISSUING → DONE
  with MERGE_FAILED and CHECK_FAILED as early terminal exits.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from loguru import logger

from prscheduler.clock import local_now
from prscheduler.config_loader import MessagesConfig, SchedulerConfig
from prscheduler.event_bus import EventBus
from prscheduler.messages import ActionKind, ActionRequest, ActionResult
from prscheduler.models import LifecycleState, ScheduledEntry, Stage, TargetRef
from prscheduler.registry import Registry

# Stage an entry must be in for a result of this kind to be accepted.
_EXPECTED_STAGE: dict[ActionKind, Stage] = {
    ActionKind.PRE_MERGE_COMMENT: Stage.COMMENT_ISSUING,
    ActionKind.TRIGGER_MERGE: Stage.MERGE_ISSUING,
    ActionKind.FETCH_STATE: Stage.CHECK_ISSUING,
    ActionKind.FETCH_HEAD: Stage.REMEDIATION_SHA,
    ActionKind.DISABLE_AUTO_MERGE: Stage.REMEDIATION_ISSUING,
    ActionKind.FAILURE_COMMENT: Stage.REMEDIATION_ISSUING,
}


class WorkflowEngine:
    def __init__(
        self,
        config: SchedulerConfig | None = None,
        registry: Registry | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config or SchedulerConfig()
        self.registry = registry if registry is not None else Registry()
        self.bus = bus or EventBus()
        self.now: datetime = local_now()
        self._handlers: dict[ActionKind, Callable[[ScheduledEntry, ActionResult], list[ActionRequest]]] = {
            ActionKind.PRE_MERGE_COMMENT: self._after_pre_merge_comment,
            ActionKind.TRIGGER_MERGE: self._after_trigger_merge,
            ActionKind.FETCH_STATE: self._after_fetch_state,
            ActionKind.FETCH_HEAD: self._after_fetch_head,
            ActionKind.DISABLE_AUTO_MERGE: self._after_disable,
            ActionKind.FAILURE_COMMENT: self._after_failure_comment,
        }

    @property
    def check_delay(self) -> timedelta:
        return timedelta(seconds=self.config.workflow.check_delay_seconds)

    @property
    def messages(self) -> MessagesConfig:
        return self.config.messages

    # -----------------------------------------------------------------------
    # Inputs
    # -----------------------------------------------------------------------

    def schedule(self, target: TargetRef, when: datetime) -> ScheduledEntry:
        """Create a SCHEDULED entry. Raises DuplicateScheduleError if one is active."""
        entry = self.registry.create(target, scheduled_at=when, created_at=self.now)
        logger.info(f"[ENGINE] Scheduled auto-merge for #{target.number} at {when.isoformat()}")
        self.bus.emit("entry.created", target.number, entry.summary())
        return entry

    def on_tick(self, now: datetime) -> list[ActionRequest]:
        """Advance every entry whose due time is strictly before `now`."""
        self.now = now
        requests: list[ActionRequest] = []

        for entry in self.registry.pending():
            if entry.stage is Stage.SCHEDULED and now > entry.scheduled_at:
                self._advance(
                    entry,
                    Stage.COMMENT_ISSUING,
                    f"Posting pre-merge comment on PR #{entry.number}",
                )
                requests.append(self._request(entry, ActionKind.PRE_MERGE_COMMENT, body=self._pre_merge_body(entry)))

            elif entry.stage is Stage.MERGE_SET and entry.check_at is not None and now > entry.check_at:
                self._advance(
                    entry,
                    Stage.CHECK_ISSUING,
                    f"Checking merge status for PR #{entry.number}",
                )
                requests.append(self._request(entry, ActionKind.FETCH_STATE))

        return requests

    def on_result(self, result: ActionResult) -> list[ActionRequest]:
        """Route an action outcome to the entry that issued it."""
        self.bus.emit(
            "action.result",
            result.number,
            {"kind": result.kind.value, "ok": result.ok, "error": result.error},
        )

        handler = self._handlers.get(result.kind)
        if handler is None:
            return []

        entry = self.registry.active(result.number)
        if entry is None and result.kind is ActionKind.DISABLE_AUTO_MERGE:
            # The failure comment already finished the entry.
            if result.ok:
                logger.info(f"[ENGINE] Auto-merge disabled on #{result.number}")
            else:
                logger.error(f"[ENGINE] Disabling auto-merge on #{result.number} failed: {result.error}")
            return []
        if entry is None:
            logger.warning(f"[ENGINE] Dropping {result.kind.value} result for #{result.number}: no active entry")
            return []

        expected = _EXPECTED_STAGE[result.kind]
        if entry.stage is not expected:
            logger.warning(
                f"[ENGINE] Dropping {result.kind.value} result for #{result.number}: "
                f"entry is {entry.stage.value}, expected {expected.value}"
            )
            return []

        return handler(entry, result)

    # -----------------------------------------------------------------------
    # Result handlers
    # -----------------------------------------------------------------------

    def _after_pre_merge_comment(self, entry: ScheduledEntry, result: ActionResult) -> list[ActionRequest]:
        if result.ok:
            message = f"Triggering auto-merge for PR #{entry.number}"
        else:
            logger.warning(f"[ENGINE] Pre-merge comment on #{entry.number} failed: {result.error}")
            message = f"Triggering auto-merge for PR #{entry.number} (comment failed: {result.error})"

        self._advance(entry, Stage.MERGE_ISSUING, message)
        return [self._request(entry, ActionKind.TRIGGER_MERGE)]

    def _after_trigger_merge(self, entry: ScheduledEntry, result: ActionResult) -> list[ActionRequest]:
        if not result.ok:
            logger.error(f"[ENGINE] Auto-merge for #{entry.number} failed: {result.error}")
            self._advance(entry, Stage.MERGE_FAILED, f"Auto-merge failed: {result.error}")
            return []

        check_at = self.now + self.check_delay
        self._advance(
            entry,
            Stage.MERGE_SET,
            f"Auto-merge set, will check at {check_at:%H:%M:%S}",
            check_at=check_at,
        )
        return []

    def _after_fetch_state(self, entry: ScheduledEntry, result: ActionResult) -> list[ActionRequest]:
        if not result.ok:
            logger.error(f"[ENGINE] Merge check for #{entry.number} failed: {result.error}")
            self._advance(entry, Stage.CHECK_FAILED, f"Check failed: {result.error}")
            return []

        state = result.value if isinstance(result.value, LifecycleState) else LifecycleState.parse(str(result.value))
        if state is LifecycleState.MERGED:
            self._advance(entry, Stage.MERGED, "PR is merged")
            return []

        self._advance(
            entry,
            Stage.REMEDIATION_SHA,
            f"PR is still not merged ({state.value}); reading head commit",
        )
        return [self._request(entry, ActionKind.FETCH_HEAD)]

    def _after_fetch_head(self, entry: ScheduledEntry, result: ActionResult) -> list[ActionRequest]:
        if result.ok and result.value:
            sha = str(result.value)
        else:
            logger.warning(f"[ENGINE] Head commit for #{entry.number} unavailable: {result.error}")
            sha = self.config.workflow.unknown_sha

        fields = self._template_fields(entry, sha=sha)
        comment = self._render("failure_comment", fields)
        title = self._render("notify_title", fields)
        body = self._render("notify_body", fields)

        self._advance(
            entry,
            Stage.REMEDIATION_ISSUING,
            f"Disabling auto-merge and commenting on PR #{entry.number} (head {sha})",
            commit_sha=sha,
        )
        return [
            self._request(entry, ActionKind.DISABLE_AUTO_MERGE),
            self._request(entry, ActionKind.FAILURE_COMMENT, body=comment),
            self._request(entry, ActionKind.NOTIFY, title=title, body=body),
        ]

    def _after_disable(self, entry: ScheduledEntry, result: ActionResult) -> list[ActionRequest]:
        if result.ok:
            outcome = "auto-merge disabled"
        else:
            logger.error(f"[ENGINE] Disabling auto-merge on #{entry.number} failed: {result.error}")
            outcome = f"disable failed: {result.error}"

        self.registry.record_message(entry.number, entry.last_message, disable_outcome=outcome)
        return []

    def _after_failure_comment(self, entry: ScheduledEntry, result: ActionResult) -> list[ActionRequest]:
        sha = entry.commit_sha or self.config.workflow.unknown_sha
        if result.ok:
            message = f"PR still not merged at head {sha}; failure comment posted"
        else:
            logger.error(f"[ENGINE] Failure comment on #{entry.number} failed: {result.error}")
            message = f"PR still not merged at head {sha}; failure comment failed: {result.error}"

        self._advance(entry, Stage.DONE, message)
        return []

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _advance(self, entry: ScheduledEntry, stage: Stage, message: str, **fields) -> None:
        previous = entry.stage
        self.registry.advance(entry.number, stage, message, **fields)
        logger.info(f"[ENGINE] #{entry.number}: {previous.value} -> {stage.value} | {message}")
        self.bus.emit(
            "entry.transition",
            entry.number,
            {"from": previous.value, "to": stage.value, "message": message},
        )

    def _request(self, entry: ScheduledEntry, kind: ActionKind, **payload) -> ActionRequest:
        self.bus.emit("action.issued", entry.number, {"kind": kind.value})
        return ActionRequest(number=entry.number, kind=kind, payload=payload)

    def _pre_merge_body(self, entry: ScheduledEntry) -> str:
        return self._render("pre_merge_comment", self._template_fields(entry))

    def _render(self, name: str, fields: dict[str, object]) -> str:
        """Fill a message template; a broken one falls back to the built-in text."""
        template = getattr(self.messages, name)
        try:
            return template.format(**fields)
        except (KeyError, IndexError, ValueError) as e:
            logger.error(f"[ENGINE] Message template {name!r} is invalid ({e!r}); using the default")
            return MessagesConfig.model_fields[name].default.format(**fields)

    @staticmethod
    def _template_fields(entry: ScheduledEntry, sha: str = "") -> dict[str, object]:
        return {
            "number": entry.target.number,
            "title": entry.target.title,
            "author": entry.target.author,
            "url": entry.target.url,
            "scheduled_at": f"{entry.scheduled_at:%Y-%m-%d %H:%M}",
            "sha": sha,
        }
