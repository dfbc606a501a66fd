import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class GateEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    conversation_id: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for turn-level observability."""

    def __init__(self):
        self._subscribers: List[Callable[[GateEvent], None]] = []

    def subscribe(self, callback: Callable[[GateEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, conversation_id: str, payload: Dict[str, Any]) -> GateEvent:
        """Construct and broadcast a GateEvent to all subscribers."""
        event = GateEvent(
            event_type=event_type,
            conversation_id=conversation_id,
            payload=payload,
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber must never break a turn
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")

        return event


# Global singleton instance for easy imports across the project
bus = EventBus()
