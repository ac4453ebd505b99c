"""
In-process publish/subscribe for change notifications.

Topics: ``grade.updated``, ``attendance.marked``, ``import.completed``,
``ledger.changed``. Delivery is synchronous, in subscription order; a
failing handler is logged and does not stop the others.
"""
from __future__ import annotations
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

GRADE_UPDATED = "grade.updated"
ATTENDANCE_MARKED = "attendance.marked"
IMPORT_COMPLETED = "import.completed"
LEDGER_CHANGED = "ledger.changed"

Handler = Callable[[str, Dict[str, Any]], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Returns a callable that removes the subscription."""
        with self._lock:
            self._handlers[topic].append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers.get(topic, []):
                    self._handlers[topic].remove(handler)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, [])) + list(self._handlers.get("*", []))
        for h in handlers:
            try:
                h(topic, payload)
            except Exception:
                logger.exception("Event handler %r failed on %s", h, topic)
