# events.py
# Synchronous fan-out of task events to registered observers.
# A failing observer is logged and skipped; it never reaches the task loop.

from typing import Any, Callable

import structlog

from taskpilot.models import EventType, TaskEvent

logger = structlog.get_logger(__name__)

EventCallback = Callable[[TaskEvent], None]


class EventEmitter:
    def __init__(self) -> None:
        self._callbacks: list[EventCallback] = []

    def add_listener(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def remove_listener(self, callback: EventCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def clear(self) -> None:
        self._callbacks.clear()

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> TaskEvent:
        event = TaskEvent(type=event_type, data=data or {})
        self.dispatch(event)
        return event

    def dispatch(self, event: TaskEvent) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("event_callback_failed", event_type=event.type)
