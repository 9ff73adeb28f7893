"""
Configuration loader for PRSCHEDULER.
Merges defaults with per-repo .prscheduler/config.yaml overrides.
"""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from string import Formatter
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ClockConfig(BaseModel):
    tick_seconds: float = Field(default=1.0, gt=0)


class WorkflowConfig(BaseModel):
    check_delay_seconds: float = Field(default=60.0, ge=0)
    # None means an in-flight action may run forever.
    action_timeout_seconds: float | None = Field(default=None, gt=0)
    unknown_sha: str = "unknown"


class GitHubConfig(BaseModel):
    repo: str | None = None  # owner/name, otherwise inferred by gh from the checkout
    merge_method: Literal["merge", "squash", "rebase"] = "merge"
    list_limit: int = Field(default=30, gt=0)
    gh_binary: str = "gh"


# Placeholders a message template may use.
TEMPLATE_FIELDS = frozenset({"number", "title", "author", "url", "scheduled_at", "sha"})


class MessagesConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    pre_merge_comment: str = (
        "Scheduled auto-merge: enabling auto-merge for #{number} "
        "(scheduled for {scheduled_at})."
    )
    failure_comment: str = (
        "Scheduled auto-merge did not complete for #{number}. "
        "Auto-merge has been disabled. Head commit: {sha}."
    )
    notify_title: str = "PR not merged"
    notify_body: str = "PR #{number} ({title}) is still not merged after auto-merge."

    @field_validator("pre_merge_comment", "failure_comment", "notify_title", "notify_body")
    @classmethod
    def _known_placeholders(cls, value: str) -> str:
        for _, field, _, _ in Formatter().parse(value):
            if field is None:
                continue
            name = re.split(r"[.\[]", field, maxsplit=1)[0]
            if name not in TEMPLATE_FIELDS:
                allowed = ", ".join(sorted(TEMPLATE_FIELDS))
                raise ValueError(f"unknown placeholder {{{field}}}; use one of: {allowed}")
        return value


class NotifyConfig(BaseModel):
    backend: Literal["notify-send", "log", "none"] = "notify-send"
    urgency: Literal["low", "normal", "critical"] = "critical"
    # How long pending notifications may delay shutdown.
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)


class AuditConfig(BaseModel):
    log_file: str | None = None


class SchedulerConfig(BaseModel):
    clock: ClockConfig = Field(default_factory=ClockConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "PRSCHEDULER_GITHUB_REPO": ("github", "repo"),
    "PRSCHEDULER_CHECK_DELAY": ("workflow", "check_delay_seconds"),
    "PRSCHEDULER_NOTIFY_BACKEND": ("notify", "backend"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(repo_path: Path | None = None) -> SchedulerConfig:
    """
    Load config by merging:
      1. Built-in defaults (prscheduler/config.yaml)
      2. Repo-level overrides (<repo>/.prscheduler/config.yaml)
      3. Environment variable overrides (PRSCHEDULER_*)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".prscheduler" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides (pydantic coerces the strings)
    base = _deep_merge(base, _env_overrides())

    return SchedulerConfig(**base)


def tool_availability(config: SchedulerConfig) -> dict[str, bool]:
    """Check which external binaries the collaborator and notifier need."""
    return {
        config.github.gh_binary: shutil.which(config.github.gh_binary) is not None,
        "notify-send": shutil.which("notify-send") is not None,
    }
