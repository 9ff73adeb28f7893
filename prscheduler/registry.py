"""
PRSCHEDULER Registry

Owns every ScheduledEntry for the life of the process. Entries are keyed
by PR number, kept in creation order, and never deleted. At most one
non-terminal entry exists per PR number.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator

from loguru import logger

from prscheduler.errors import DuplicateScheduleError, InvalidTransitionError
from prscheduler.models import TRANSITIONS, ScheduledEntry, Stage, TargetRef

_MUTABLE_FIELDS = frozenset({"check_at", "commit_sha", "disable_outcome"})


class Registry:
    def __init__(self) -> None:
        self._by_number: dict[int, list[ScheduledEntry]] = {}
        self._order: list[ScheduledEntry] = []

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[ScheduledEntry]:
        return iter(list(self._order))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active(self, number: int) -> ScheduledEntry | None:
        """Return the non-terminal entry for a PR, if any."""
        for entry in self._by_number.get(number, ()):
            if not entry.terminal:
                return entry
        return None

    def is_active(self, number: int) -> bool:
        return self.active(number) is not None

    def history(self, number: int) -> list[ScheduledEntry]:
        return list(self._by_number.get(number, ()))

    def entries(self) -> list[ScheduledEntry]:
        return list(self._order)

    def pending(self) -> list[ScheduledEntry]:
        return [e for e in self._order if not e.terminal]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def create(self, target: TargetRef, scheduled_at: datetime, created_at: datetime) -> ScheduledEntry:
        if self.is_active(target.number):
            raise DuplicateScheduleError(target.number)

        entry = ScheduledEntry(
            target=target,
            scheduled_at=scheduled_at,
            created_at=created_at,
            last_message=f"Scheduled for {scheduled_at:%Y-%m-%d %H:%M}",
        )
        self._by_number.setdefault(target.number, []).append(entry)
        self._order.append(entry)
        logger.debug(f"[REGISTRY] Created entry for #{target.number} at {scheduled_at.isoformat()}")
        return entry

    def advance(self, number: int, stage: Stage, message: str, **fields: Any) -> ScheduledEntry:
        """Move the active entry for a PR to its next stage."""
        entry = self._require_active(number)
        if stage not in TRANSITIONS[entry.stage]:
            raise InvalidTransitionError(
                f"#{number}: {entry.stage.value} -> {stage.value} is not a legal transition"
            )
        self._apply_fields(entry, fields)
        entry.stage = stage
        entry.last_message = message
        logger.debug(f"[REGISTRY] #{number} -> {stage.value}: {message}")
        return entry

    def record_message(self, number: int, message: str, **fields: Any) -> ScheduledEntry:
        """Update the trace (and side fields) of the active entry without changing stage."""
        entry = self._require_active(number)
        self._apply_fields(entry, fields)
        entry.last_message = message
        return entry

    def _require_active(self, number: int) -> ScheduledEntry:
        entry = self.active(number)
        if entry is None:
            raise InvalidTransitionError(f"#{number} has no active scheduled merge")
        return entry

    @staticmethod
    def _apply_fields(entry: ScheduledEntry, fields: dict[str, Any]) -> None:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise InvalidTransitionError(f"Fields not writable through the registry: {sorted(unknown)}")
        for name, value in fields.items():
            setattr(entry, name, value)
