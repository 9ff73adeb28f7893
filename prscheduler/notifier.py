"""
Urgent notifications. Fire-and-forget: a notifier never raises into the
runtime, failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod

from loguru import logger

from prscheduler.config_loader import NotifyConfig


class Notifier(ABC):
    @abstractmethod
    async def notify_urgent(self, title: str, body: str) -> None: ...


class NotifySendNotifier(Notifier):
    """Linux desktop notifications via `notify-send`."""

    def __init__(self, urgency: str = "critical", binary: str = "notify-send"):
        self.urgency = urgency
        self.binary = binary

    async def notify_urgent(self, title: str, body: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, title, body, "-u", self.urgency,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"[NOTIFY] {self.binary} unavailable: {e}")
            return
        try:
            code = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if code != 0:
            logger.warning(f"[NOTIFY] {self.binary} exited {code}")


class LogNotifier(Notifier):
    async def notify_urgent(self, title: str, body: str) -> None:
        logger.warning(f"[NOTIFY] {title}: {body}")


class NullNotifier(Notifier):
    async def notify_urgent(self, title: str, body: str) -> None:
        return None


def build_notifier(config: NotifyConfig) -> Notifier:
    if config.backend == "none":
        return NullNotifier()
    if config.backend == "log":
        return LogNotifier()
    if shutil.which("notify-send") is None:
        logger.warning("[NOTIFY] notify-send not found, falling back to log notifications")
        return LogNotifier()
    return NotifySendNotifier(urgency=config.urgency)
