"""
PRSCHEDULER Collaborator — the repository host

Every remote operation the engine needs, behind one async interface.
GhCollaborator realizes it with the GitHub CLI; tests substitute fakes.

Each call either returns its value or raises:
  - ActionError     the command failed or could not be run
  - DataShapeError  the command ran but its output made no sense
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from prscheduler.config_loader import GitHubConfig
from prscheduler.errors import ActionError, DataShapeError
from prscheduler.models import Identity, LifecycleState, TargetRef

_LIST_FIELDS = "number,title,author,state,mergeStateStatus,url"


class Collaborator(ABC):
    @abstractmethod
    async def list_open_targets(self) -> list[TargetRef]: ...

    @abstractmethod
    async def current_identity(self) -> Identity: ...

    @abstractmethod
    async def trigger_merge_on_success(self, number: int) -> None: ...

    @abstractmethod
    async def post_comment(self, number: int, body: str) -> None: ...

    @abstractmethod
    async def disable_merge_on_success(self, number: int) -> None: ...

    @abstractmethod
    async def fetch_lifecycle_state(self, number: int) -> LifecycleState: ...

    @abstractmethod
    async def fetch_head_commit(self, number: int) -> str: ...


# ---------------------------------------------------------------------------
# gh listing schema
# ---------------------------------------------------------------------------

class _GhAuthor(BaseModel):
    login: str = ""


class _GhPullRequest(BaseModel):
    number: int
    title: str
    state: str
    url: str = ""
    author: _GhAuthor = Field(default_factory=_GhAuthor)
    merge_state_status: str | None = Field(default=None, alias="mergeStateStatus")

    def to_target(self) -> TargetRef:
        return TargetRef(
            number=self.number,
            title=self.title,
            author=self.author.login,
            state=self.state,
            merge_state=self.merge_state_status,
            url=self.url,
        )


# ---------------------------------------------------------------------------
# GitHub CLI implementation
# ---------------------------------------------------------------------------

class GhCollaborator(Collaborator):
    """
    Runs `gh` as an async subprocess per call. No retries: a failed call
    is reported once and the engine decides what it means.
    """

    def __init__(self, config: GitHubConfig | None = None, repo_path: Path | None = None):
        self.config = config or GitHubConfig()
        self.repo_path = repo_path

    async def list_open_targets(self) -> list[TargetRef]:
        out = await self._gh(
            "pr", "list",
            "--state", "open",
            "--limit", str(self.config.list_limit),
            "--json", _LIST_FIELDS,
            repo_flag=True,
            what="gh pr list",
        )
        try:
            raw = json.loads(out)
            if not isinstance(raw, list):
                raise DataShapeError(f"gh pr list returned {type(raw).__name__}, expected a list")
            return [_GhPullRequest.model_validate(item).to_target() for item in raw]
        except (json.JSONDecodeError, ValidationError) as e:
            raise DataShapeError(f"failed to parse gh pr list output: {e}") from e

    async def current_identity(self) -> Identity:
        out = await self._gh("api", "user", "--jq", ".login", what="gh api user")
        login = out.strip()
        if not login:
            raise DataShapeError("gh api user returned an empty login")
        return Identity(login=login)

    async def trigger_merge_on_success(self, number: int) -> None:
        await self._gh(
            "pr", "merge", str(number), "--auto", f"--{self.config.merge_method}",
            repo_flag=True,
            what="gh pr merge",
        )

    async def post_comment(self, number: int, body: str) -> None:
        await self._gh("pr", "comment", str(number), "--body", body, repo_flag=True, what="gh pr comment")

    async def disable_merge_on_success(self, number: int) -> None:
        await self._gh("pr", "merge", str(number), "--disable-auto", repo_flag=True, what="gh pr merge --disable-auto")

    async def fetch_lifecycle_state(self, number: int) -> LifecycleState:
        data = await self._view(number, "state")
        state = data.get("state")
        if not isinstance(state, str):
            raise DataShapeError(f"gh pr view #{number} returned no state")
        return LifecycleState.parse(state)

    async def fetch_head_commit(self, number: int) -> str:
        data = await self._view(number, "headRefOid")
        sha = data.get("headRefOid")
        if not isinstance(sha, str) or not sha:
            raise DataShapeError(f"gh pr view #{number} returned no head commit")
        return sha

    # -----------------------------------------------------------------------
    # Plumbing
    # -----------------------------------------------------------------------

    async def _view(self, number: int, fields: str) -> dict[str, Any]:
        out = await self._gh("pr", "view", str(number), "--json", fields, repo_flag=True, what="gh pr view")
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise DataShapeError(f"failed to parse gh pr view output: {e}") from e
        if not isinstance(data, dict):
            raise DataShapeError("gh pr view returned a non-object")
        return data

    def _add_repo_flag(self, args: list[str]) -> list[str]:
        if self.config.repo:
            return [*args, "--repo", self.config.repo]
        return args

    async def _gh(self, *args: str, repo_flag: bool = False, what: str = "gh") -> str:
        cmd = [self.config.gh_binary, *(self._add_repo_flag(list(args)) if repo_flag else args)]
        logger.debug(f"[GH] {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.repo_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ActionError(f"{what} failed: {self.config.gh_binary} not found") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # A timed-out gh must not finish its call behind our back.
            if proc.returncode is None:
                logger.warning(f"[GH] Killing {what} (pid {proc.pid})")
                proc.kill()
                await proc.wait()
            raise

        out = stdout.decode(errors="replace")
        if proc.returncode != 0:
            detail = (stderr.decode(errors="replace") or out).strip()
            raise ActionError(f"{what} failed: exit {proc.returncode} ({detail})")
        return out
