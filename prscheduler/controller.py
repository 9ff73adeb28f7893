"""
PRSCHEDULER Controller — the runtime

It is NOT smart. The WorkflowEngine decides; the Controller only moves
events around.

Responsibilities:
  - Feed clock ticks into a single event queue
  - Hand each event to the engine, one at a time
  - Perform the engine's ActionRequests as asyncio tasks
  - Post each action's outcome back onto the queue as an ActionResult
  - Fire notifications without waiting for them
  - Keep the global status banner (listing / identity errors)

Entry state is only ever touched from the event-handling path, so no
locking is needed. Collaborator calls overlap freely.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from pathlib import Path
from typing import Any, Union

from loguru import logger

from prscheduler.audit_logger import AuditLogger
from prscheduler.clock import Clock, SystemClock
from prscheduler.collaborator import Collaborator, GhCollaborator
from prscheduler.config_loader import SchedulerConfig, load_config
from prscheduler.engine import WorkflowEngine
from prscheduler.errors import ActionError, DataShapeError, DuplicateScheduleError
from prscheduler.event_bus import EventBus
from prscheduler.messages import ActionKind, ActionRequest, ActionResult, Tick
from prscheduler.models import Identity, ScheduledEntry, TargetRef
from prscheduler.notifier import Notifier, build_notifier
from prscheduler.registry import Registry

Event = Union[Tick, ActionResult]


class Controller:
    def __init__(
        self,
        collaborator: Collaborator | None = None,
        notifier: Notifier | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
        bus: EventBus | None = None,
        repo_path: Path | None = None,
    ):
        self.config = config or load_config(repo_path)
        self.bus = bus or EventBus()
        self.collaborator = collaborator or GhCollaborator(self.config.github, repo_path=repo_path)
        self.notifier = notifier or build_notifier(self.config.notify)
        self.clock = clock or SystemClock(self.config.clock.tick_seconds)
        self.engine = WorkflowEngine(self.config, registry=Registry(), bus=self.bus)
        self.engine.now = self.clock.now()

        self._audit: AuditLogger | None = None
        if self.config.audit.log_file:
            log_file = Path(self.config.audit.log_file).expanduser()
            if not log_file.is_absolute() and repo_path is not None:
                log_file = repo_path / log_file
            self._audit = AuditLogger(str(log_file), self.bus)

        # Global (non-entry) state
        self.targets: list[TargetRef] = []
        self.identity: Identity | None = None
        self.status: str = "Loading..."
        self.last_error: str | None = None

        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._inflight: set[asyncio.Task] = set()
        self._outstanding = 0

    @property
    def registry(self) -> Registry:
        return self.engine.registry

    @property
    def idle(self) -> bool:
        """No entry left to drive and no action waiting for its result."""
        return not self.registry.pending() and self._outstanding == 0

    # -----------------------------------------------------------------------
    # Global operations
    # -----------------------------------------------------------------------

    async def refresh_targets(self) -> list[TargetRef]:
        """Replace the open-PR listing. Errors go to the status banner only."""
        try:
            self.targets = await self.collaborator.list_open_targets()
        except (ActionError, DataShapeError) as e:
            self._set_error(e)
            return self.targets

        self.last_error = None
        self.status = f"{len(self.targets)} open PRs"
        return self.targets

    async def load_identity(self) -> Identity | None:
        try:
            self.identity = await self.collaborator.current_identity()
        except (ActionError, DataShapeError) as e:
            self._set_error(e)
            return None

        self.last_error = None
        self.status = f"Loaded GitHub user: {self.identity.login}"
        return self.identity

    def filtered_targets(self, only_mine: bool = False) -> list[TargetRef]:
        if only_mine and self.identity:
            return [t for t in self.targets if t.author == self.identity.login]
        return list(self.targets)

    def find_target(self, number: int) -> TargetRef | None:
        for target in self.targets:
            if target.number == number:
                return target
        return None

    def schedule(self, target: TargetRef, when: datetime) -> ScheduledEntry:
        try:
            entry = self.engine.schedule(target, when)
        except DuplicateScheduleError as e:
            self.status = str(e)
            raise
        self.status = f"Scheduled auto-merge for PR #{target.number} at {when:%Y-%m-%d %H:%M}"
        return entry

    # -----------------------------------------------------------------------
    # Event loop
    # -----------------------------------------------------------------------

    async def run(self, stop_when_idle: bool = False) -> None:
        """
        Process ticks and action results until cancelled, or, with
        `stop_when_idle`, until every entry is terminal.
        """
        pump = asyncio.create_task(self._pump_clock())
        try:
            while not (stop_when_idle and self.idle):
                event = await self._events.get()
                self._handle(event)
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
            if self.idle and self._inflight:
                # Only notifications can be left; give them a bounded grace period.
                await asyncio.wait(set(self._inflight), timeout=self.config.notify.shutdown_grace_seconds)
            leftover = list(self._inflight)
            for task in leftover:
                logger.warning(f"[CONTROLLER] Cancelling unfinished task {task.get_name()}")
                task.cancel()
            await asyncio.gather(*leftover, return_exceptions=True)

    async def advance(self, now: datetime) -> None:
        """Handle one tick and everything it sets off. Not for use alongside run()."""
        self._handle(Tick(now))
        await self.settle()

    async def settle(self) -> None:
        """Drain queued results until no action is in flight."""
        while self._inflight or not self._events.empty():
            while not self._events.empty():
                self._handle(self._events.get_nowait())
            if self._inflight:
                await asyncio.wait(set(self._inflight), return_when=asyncio.FIRST_COMPLETED)

    async def _pump_clock(self) -> None:
        async for now in self.clock.ticks():
            await self._events.put(Tick(now))

    def _handle(self, event: Event) -> None:
        if isinstance(event, Tick):
            requests = self.engine.on_tick(event.now)
        else:
            self._outstanding -= 1
            requests = self.engine.on_result(event)
        self._dispatch(requests)

    def _dispatch(self, requests: list[ActionRequest]) -> None:
        for request in requests:
            if request.expects_result:
                self._outstanding += 1
                task = asyncio.create_task(self._perform(request))
            else:
                task = asyncio.create_task(self._notify(request))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    # -----------------------------------------------------------------------
    # Actions
    # -----------------------------------------------------------------------

    async def _perform(self, request: ActionRequest) -> None:
        try:
            value = await self._with_timeout(request)
            result = ActionResult.success(request, value)
        except (ActionError, DataShapeError) as e:
            result = ActionResult.failure(request, str(e))
        except Exception as e:
            # Every issued action must report back or its entry stalls.
            logger.exception(f"[CONTROLLER] Unexpected error in {request.kind.value} for #{request.number}")
            result = ActionResult.failure(request, f"{type(e).__name__}: {e}")
        await self._events.put(result)

    async def _with_timeout(self, request: ActionRequest) -> Any:
        timeout = self.config.workflow.action_timeout_seconds
        if timeout is None:
            return await self._call(request)
        try:
            return await asyncio.wait_for(self._call(request), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ActionError(f"{request.kind.value} timed out after {timeout:g}s") from e

    async def _call(self, request: ActionRequest) -> Any:
        number = request.number
        kind = request.kind
        collab = self.collaborator

        if kind in (ActionKind.PRE_MERGE_COMMENT, ActionKind.FAILURE_COMMENT):
            return await collab.post_comment(number, request.payload["body"])
        if kind is ActionKind.TRIGGER_MERGE:
            return await collab.trigger_merge_on_success(number)
        if kind is ActionKind.FETCH_STATE:
            return await collab.fetch_lifecycle_state(number)
        if kind is ActionKind.FETCH_HEAD:
            return await collab.fetch_head_commit(number)
        if kind is ActionKind.DISABLE_AUTO_MERGE:
            return await collab.disable_merge_on_success(number)
        raise ValueError(f"No collaborator call for {kind.value}")

    async def _notify(self, request: ActionRequest) -> None:
        self.bus.emit("notify", request.number, dict(request.payload))
        try:
            await self.notifier.notify_urgent(request.payload["title"], request.payload["body"])
        except Exception as e:
            logger.warning(f"[NOTIFY] Notification for #{request.number} failed: {e}")

    def _set_error(self, error: Exception) -> None:
        self.last_error = str(error)
        self.status = f"Error: {error}"
        logger.error(f"[CONTROLLER] {error}")
