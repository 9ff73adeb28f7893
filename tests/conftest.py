from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from prscheduler.collaborator import Collaborator
from prscheduler.config_loader import SchedulerConfig
from prscheduler.errors import ActionError
from prscheduler.models import Identity, LifecycleState, TargetRef
from prscheduler.notifier import Notifier

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def make_target(number: int = 7, author: str = "octocat", title: str = "Bump deps") -> TargetRef:
    return TargetRef(
        number=number,
        title=title,
        author=author,
        state="OPEN",
        merge_state="CLEAN",
        url=f"https://github.com/acme/widgets/pull/{number}",
    )


class FakeCollaborator(Collaborator):
    """
    In-memory repository host. Set `failures[method] = message` to make a
    call fail; add a method name, or a (method, number) pair, to `hang` to
    make it never return.
    """

    def __init__(
        self,
        targets: list[TargetRef] | None = None,
        state: LifecycleState = LifecycleState.MERGED,
        head: str = "abc1234",
        login: str = "octocat",
    ):
        self.targets = targets if targets is not None else [make_target()]
        self.state = state
        self.head = head
        self.login = login
        self.failures: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.hang: set = set()

    async def _record(self, method: str, *args):
        self.calls.append((method, *args))
        if method in self.hang or (method, *args[:1]) in self.hang:
            await asyncio.Event().wait()
        if method in self.failures:
            raise ActionError(self.failures[method])

    def called(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    async def list_open_targets(self) -> list[TargetRef]:
        await self._record("list_open_targets")
        return list(self.targets)

    async def current_identity(self) -> Identity:
        await self._record("current_identity")
        return Identity(login=self.login)

    async def trigger_merge_on_success(self, number: int) -> None:
        await self._record("trigger_merge_on_success", number)

    async def post_comment(self, number: int, body: str) -> None:
        await self._record("post_comment", number, body)

    async def disable_merge_on_success(self, number: int) -> None:
        await self._record("disable_merge_on_success", number)

    async def fetch_lifecycle_state(self, number: int) -> LifecycleState:
        await self._record("fetch_lifecycle_state", number)
        return self.state

    async def fetch_head_commit(self, number: int) -> str:
        await self._record("fetch_head_commit", number)
        return self.head


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def notify_urgent(self, title: str, body: str) -> None:
        self.sent.append((title, body))


@pytest.fixture
def config() -> SchedulerConfig:
    return SchedulerConfig()


@pytest.fixture
def collaborator() -> FakeCollaborator:
    return FakeCollaborator()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
