import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class SchedulerEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    number: int | None = None
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for PRSCHEDULER observability."""

    def __init__(self):
        self._subscribers: List[Callable[[SchedulerEvent], None]] = []

    def subscribe(self, callback: Callable[[SchedulerEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, number: int | None, payload: Dict[str, Any]) -> None:
        """Construct and broadcast a SchedulerEvent to all subscribers."""
        event = SchedulerEvent(
            event_type=event_type,
            number=number,
            payload=payload,
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber must not stall the tick loop
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")
