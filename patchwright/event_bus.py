import threading
from datetime import datetime, timezone
from typing import Callable, List

from loguru import logger
from pydantic import BaseModel, Field


class TaskEvent(BaseModel):
    event_id: int | None = None  # store id, when the event was persisted first
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    task_id: str
    severity: str = "info"
    message: str


class EventBus:
    """A lightweight, synchronous event bus for live task observers.

    The store is the record; the bus only fans events out to whoever is
    listening in this process (audit log, CLI printer). Create one per
    application and pass it where it is needed.
    """

    def __init__(self):
        self._subscribers: List[Callable[[TaskEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[TaskEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[TaskEvent], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(
        self,
        task_id: str,
        message: str,
        severity: str = "info",
        event_id: int | None = None,
        timestamp: str | None = None,
    ) -> TaskEvent:
        """Construct and broadcast a TaskEvent to all subscribers."""
        event = TaskEvent(task_id=task_id, message=message, severity=severity, event_id=event_id)
        if timestamp:
            event.timestamp = timestamp

        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"[EVENTS] Subscriber {subscriber!r} failed: {e}")
        return event
