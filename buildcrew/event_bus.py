import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class TaskEventType(str, Enum):
    SUBMITTED = "task:submitted"
    STARTED = "task:started"
    PROGRESS = "task:progress"
    COMPLETED = "task:completed"
    FAILED = "task:failed"
    CANCELLED = "task:cancelled"


class TaskEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: TaskEventType
    task_id: str
    agent_name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


Listener = Callable[[TaskEvent], None]


class _Subscription:
    __slots__ = ("callback", "task_id", "event_types")

    def __init__(self, callback: Listener, task_id: Optional[str], event_types: Optional[set]):
        self.callback = callback
        self.task_id = task_id
        self.event_types = event_types

    def matches(self, event: TaskEvent) -> bool:
        if self.task_id is not None and event.task_id != self.task_id:
            return False
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        return True


class EventBus:
    """A lightweight, synchronous event bus for task lifecycle events."""

    def __init__(self):
        self._subscribers: List[_Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: Listener,
        task_id: Optional[str] = None,
        event_types: Optional[Iterable[TaskEventType]] = None,
    ) -> Callable[[], None]:
        """Register a callback, optionally scoped to one task or event types.

        Returns a callable that removes the subscription.
        """
        sub = _Subscription(callback, task_id, set(event_types) if event_types else None)
        with self._lock:
            self._subscribers.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if sub in self._subscribers:
                    self._subscribers.remove(sub)

        return unsubscribe

    def emit(
        self,
        event_type: TaskEventType,
        task_id: str,
        payload: Optional[Dict[str, Any]] = None,
        agent_name: Optional[str] = None,
    ) -> TaskEvent:
        """Construct a TaskEvent and deliver it to every matching subscriber in order."""
        event = TaskEvent(
            event_type=event_type,
            task_id=task_id,
            agent_name=agent_name,
            payload=payload or {},
        )

        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            if not subscriber.matches(event):
                continue
            try:
                subscriber.callback(event)
            except Exception as e:
                # A broken listener never reaches the task table
                logger.warning(f"[EVENTS] Listener failed on {event.event_type.value} for {task_id}: {e}")

        return event

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()
