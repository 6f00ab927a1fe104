import json
import os
import threading
from typing import Callable, Optional

from loguru import logger

from buildcrew.event_bus import EventBus, TaskEvent


class AuditLogger:
    """
    Audit Logger that subscribes to an Event Bus and writes task events
    to an append-only JSONL file.
    """
    def __init__(self, file_path: str, event_bus: EventBus):
        self.file_path = file_path
        self.event_bus = event_bus
        self.dropped = 0
        self._lock = threading.Lock()

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)

        self._unsubscribe: Optional[Callable[[], None]] = self.event_bus.subscribe(self.log_event)

    def log_event(self, event: TaskEvent) -> None:
        """Append one event as a JSON line. A failed write is logged and counted in `dropped`."""
        line = json.dumps(event.model_dump(mode="json"), default=str)
        with self._lock:
            try:
                with open(self.file_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                self.dropped += 1
                logger.error(
                    f"[AUDIT] Could not write {event.event_type.value} for {event.task_id} "
                    f"to {self.file_path}: {e}"
                )

    def close(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
