from __future__ import annotations


class SchedulerError(Exception):
    """Base class for every error PRSCHEDULER raises on purpose."""


class ActionError(SchedulerError):
    """A collaborator action failed (non-zero exit, missing binary, timeout)."""


class DataShapeError(SchedulerError):
    """A collaborator response could not be read in the expected shape."""


class DuplicateScheduleError(SchedulerError):
    """A target already has an active scheduled merge."""

    def __init__(self, number: int):
        self.number = number
        super().__init__(f"PR #{number} already has a scheduled merge")


class InvalidTransitionError(SchedulerError):
    """A stage change that is not in the transition table."""
