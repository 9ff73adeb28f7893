import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import T0, FakeCollaborator, make_target
from prscheduler.clock import ManualClock, SystemClock
from prscheduler.config_loader import SchedulerConfig
from prscheduler.controller import Controller
from prscheduler.errors import DataShapeError, DuplicateScheduleError
from prscheduler.models import LifecycleState, Stage
from prscheduler.notifier import Notifier


def make_controller(collaborator, notifier, config=None, clock=None) -> Controller:
    clock = clock or ManualClock(start=T0)
    return Controller(
        collaborator=collaborator,
        notifier=notifier,
        config=config or SchedulerConfig(),
        clock=clock,
    )


async def run_ticks(controller: Controller, clock: ManualClock, count: int) -> None:
    for _ in range(count):
        await controller.advance(clock.advance())


class TestWorkflow:
    @pytest.mark.asyncio
    async def test_merged_pr(self, collaborator, notifier):
        clock = ManualClock(start=T0)
        controller = make_controller(collaborator, notifier, clock=clock)
        entry = controller.schedule(make_target(), T0)

        await run_ticks(controller, clock, 1)
        assert entry.stage is Stage.MERGE_SET
        assert [c[0] for c in collaborator.calls] == ["post_comment", "trigger_merge_on_success"]

        await run_ticks(controller, clock, 61)

        assert entry.stage is Stage.MERGED
        assert collaborator.called("fetch_lifecycle_state") == [("fetch_lifecycle_state", 7)]
        assert notifier.sent == []
        assert controller.idle

    @pytest.mark.asyncio
    async def test_open_pr_remediated_with_unknown_head(self, notifier):
        collaborator = FakeCollaborator(state=LifecycleState.OPEN)
        collaborator.failures["fetch_head_commit"] = "HTTP 404"
        clock = ManualClock(start=T0)
        controller = make_controller(collaborator, notifier, clock=clock)
        entry = controller.schedule(make_target(), T0)

        await run_ticks(controller, clock, 62)

        assert entry.stage is Stage.DONE
        assert entry.commit_sha == "unknown"
        assert "unknown" in entry.last_message
        assert collaborator.called("disable_merge_on_success") == [("disable_merge_on_success", 7)]
        failure_comment = collaborator.called("post_comment")[-1]
        assert "unknown" in failure_comment[2]
        assert notifier.sent == [
            ("PR not merged", "PR #7 (Bump deps) is still not merged after auto-merge."),
        ]

    @pytest.mark.asyncio
    async def test_disable_failure_does_not_block_done(self, notifier):
        collaborator = FakeCollaborator(state=LifecycleState.OPEN)
        collaborator.failures["disable_merge_on_success"] = "403"
        clock = ManualClock(start=T0)
        controller = make_controller(collaborator, notifier, clock=clock)
        entry = controller.schedule(make_target(), T0)

        await run_ticks(controller, clock, 62)

        assert entry.stage is Stage.DONE
        assert "failure comment posted" in entry.last_message

    @pytest.mark.asyncio
    async def test_merge_failure_stops_entry(self, notifier):
        collaborator = FakeCollaborator()
        collaborator.failures["trigger_merge_on_success"] = "auto-merge is not allowed"
        clock = ManualClock(start=T0)
        controller = make_controller(collaborator, notifier, clock=clock)
        entry = controller.schedule(make_target(), T0)

        await run_ticks(controller, clock, 120)

        assert entry.stage is Stage.MERGE_FAILED
        assert "auto-merge is not allowed" in entry.last_message
        assert collaborator.called("fetch_lifecycle_state") == []

    @pytest.mark.asyncio
    async def test_hung_action_stalls_only_its_entry(self, collaborator, notifier):
        collaborator.hang.add(("post_comment", 1))
        clock = ManualClock(start=T0)
        controller = make_controller(collaborator, notifier, clock=clock)
        stuck = controller.schedule(make_target(1), T0)
        healthy = controller.schedule(make_target(2), T0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(controller.advance(clock.advance()), timeout=0.2)

        assert stuck.stage is Stage.COMMENT_ISSUING
        assert healthy.stage is Stage.MERGE_SET
        assert not controller.idle
        for task in list(controller._inflight):
            task.cancel()

    @pytest.mark.asyncio
    async def test_action_timeout_becomes_failure(self, notifier):
        config = SchedulerConfig()
        config.workflow.action_timeout_seconds = 0.01
        collaborator = FakeCollaborator()
        collaborator.hang.add("trigger_merge_on_success")
        clock = ManualClock(start=T0)
        controller = make_controller(collaborator, notifier, config=config, clock=clock)
        entry = controller.schedule(make_target(), T0)

        await run_ticks(controller, clock, 1)

        assert entry.stage is Stage.MERGE_FAILED
        assert "timed out" in entry.last_message

    @pytest.mark.asyncio
    async def test_run_until_idle_with_system_clock(self, collaborator, notifier):
        config = SchedulerConfig()
        config.clock.tick_seconds = 0.01
        config.workflow.check_delay_seconds = 0.03
        clock = SystemClock(period=config.clock.tick_seconds)
        controller = make_controller(collaborator, notifier, config=config, clock=clock)
        entry = controller.schedule(make_target(), clock.now())

        await asyncio.wait_for(controller.run(stop_when_idle=True), timeout=5)

        assert entry.stage is Stage.MERGED
        assert entry.check_at is not None

    @pytest.mark.asyncio
    async def test_hung_notification_does_not_block_shutdown(self):
        class HangingNotifier(Notifier):
            async def notify_urgent(self, title: str, body: str) -> None:
                await asyncio.Event().wait()

        config = SchedulerConfig()
        config.clock.tick_seconds = 0.01
        config.workflow.check_delay_seconds = 0.03
        config.notify.shutdown_grace_seconds = 0.05
        clock = SystemClock(period=config.clock.tick_seconds)
        collaborator = FakeCollaborator(state=LifecycleState.OPEN)
        controller = make_controller(collaborator, HangingNotifier(), config=config, clock=clock)
        entry = controller.schedule(make_target(), clock.now())

        await asyncio.wait_for(controller.run(stop_when_idle=True), timeout=5)

        assert entry.stage is Stage.DONE
        assert not controller._inflight


class TestGlobalStatus:
    @pytest.mark.asyncio
    async def test_refresh_targets_replaces_listing(self, notifier):
        collaborator = FakeCollaborator(targets=[make_target(1), make_target(2, author="hubot")])
        controller = make_controller(collaborator, notifier)

        targets = await controller.refresh_targets()

        assert [t.number for t in targets] == [1, 2]
        assert controller.status == "2 open PRs"
        assert controller.find_target(2).author == "hubot"
        assert controller.find_target(3) is None

    @pytest.mark.asyncio
    async def test_listing_error_is_global_and_keeps_entries(self, notifier):
        collaborator = FakeCollaborator()
        controller = make_controller(collaborator, notifier)
        entry = controller.schedule(make_target(), T0 + timedelta(hours=1))

        async def broken_listing():
            raise DataShapeError("failed to parse gh pr list output")

        collaborator.list_open_targets = broken_listing
        await controller.refresh_targets()

        assert controller.last_error == "failed to parse gh pr list output"
        assert controller.status.startswith("Error:")
        assert entry.stage is Stage.SCHEDULED

    @pytest.mark.asyncio
    async def test_only_mine_filter(self, notifier):
        collaborator = FakeCollaborator(
            targets=[make_target(1, author="octocat"), make_target(2, author="hubot")],
            login="hubot",
        )
        controller = make_controller(collaborator, notifier)

        await controller.load_identity()
        await controller.refresh_targets()

        assert [t.number for t in controller.filtered_targets(only_mine=True)] == [2]
        assert len(controller.filtered_targets()) == 2

    @pytest.mark.asyncio
    async def test_identity_error_sets_banner(self, notifier):
        collaborator = FakeCollaborator()
        collaborator.failures["current_identity"] = "gh auth login required"
        controller = make_controller(collaborator, notifier)

        assert await controller.load_identity() is None
        assert controller.last_error == "gh auth login required"

    def test_duplicate_schedule_sets_status(self, collaborator, notifier):
        controller = make_controller(collaborator, notifier)
        controller.schedule(make_target(), T0)

        with pytest.raises(DuplicateScheduleError):
            controller.schedule(make_target(), T0)
        assert controller.status == "PR #7 already has a scheduled merge"

    @pytest.mark.asyncio
    async def test_identity_success_clears_error(self, notifier):
        collaborator = FakeCollaborator()
        collaborator.failures["current_identity"] = "gh auth login required"
        controller = make_controller(collaborator, notifier)
        await controller.load_identity()

        del collaborator.failures["current_identity"]
        identity = await controller.load_identity()

        assert identity.login == "octocat"
        assert controller.last_error is None
        assert controller.status == "Loaded GitHub user: octocat"


class TestAuditTrail:
    def test_no_audit_logger_by_default(self, collaborator, notifier):
        controller = make_controller(collaborator, notifier)

        assert controller._audit is None

    def test_relative_log_file_lands_in_repo(self, tmp_path: Path, monkeypatch, collaborator, notifier):
        repo = tmp_path / "widgets"
        repo.mkdir()
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)
        config = SchedulerConfig()
        config.audit.log_file = ".prscheduler/audit.jsonl"

        controller = Controller(
            collaborator=collaborator,
            notifier=notifier,
            config=config,
            clock=ManualClock(start=T0),
            repo_path=repo,
        )
        controller.schedule(make_target(), T0)

        lines = (repo / ".prscheduler" / "audit.jsonl").read_text().splitlines()
        assert json.loads(lines[0])["event_type"] == "entry.created"
        assert not (elsewhere / ".prscheduler").exists()
