"""
TaskPilot Event Bus

A lightweight in-process event bus. Task status changes are published here
so review automation can react when a task enters review.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from taskpilot.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Event:
    """Base class for all events. Carries a timestamp and optional metadata."""
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__


# Task Events

@dataclass
class TaskEvent(Event):
    task_id: int = 0
    project_id: Optional[int] = None


@dataclass
class TaskStatusChanged(TaskEvent):
    """Fired after a task's status was written."""
    old_status: Optional[str] = None
    new_status: str = ""


@dataclass
class TaskBrokenDown(TaskEvent):
    """Fired after a task was split into subtasks."""
    subtask_ids: List[int] = field(default_factory=list)


@dataclass
class TaskTimedOut(TaskEvent):
    """Fired by the stalled-task watch for each task past its stage threshold."""
    status: str = ""
    stage_started_at: Optional[str] = None


# Requirements Events

@dataclass
class RequirementsEvent(Event):
    requirements_id: int = 0
    project_id: Optional[int] = None


@dataclass
class RequirementsCompleted(RequirementsEvent):
    task_ids: List[int] = field(default_factory=list)


@dataclass
class RequirementsFailed(RequirementsEvent):
    error: Optional[str] = None


EventHandler = Callable[[Event], None]


class EventBus:
    """
    In-process event bus for decoupled service communication.

    Handlers run synchronously in the publisher's thread. A failing handler
    is logged and does not stop the others.

    Example:
        bus = EventBus()
        bus.add_handler(TaskStatusChanged, on_status)
        bus.publish(TaskStatusChanged(task_id=1, new_status="inreview"))
    """

    def __init__(self) -> None:
        self._handlers: Dict[type, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._lock = threading.Lock()

    def add_handler(self, event_type: Optional[type], handler: EventHandler) -> None:
        with self._lock:
            if event_type is None:
                self._wildcard_handlers.append(handler)
            else:
                self._handlers.setdefault(event_type, []).append(handler)

    def remove_handler(self, event_type: Optional[type], handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        with self._lock:
            if event_type is None:
                if handler in self._wildcard_handlers:
                    self._wildcard_handlers.remove(handler)
            elif handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

    def publish(self, event: Event) -> None:
        """Publish an event to all registered handlers."""
        with self._lock:
            typed = [
                handler
                for base_type in type(event).__mro__
                for handler in self._handlers.get(base_type, [])
            ]
            wildcard = list(self._wildcard_handlers)

        handlers_called = 0
        for handler in typed + wildcard:
            try:
                handler(event)
                handlers_called += 1
            except Exception as e:
                logger.error(
                    f"Error in event handler: {e}",
                    extra={"event_type": event.event_type, "error": str(e)},
                )

        logger.debug(
            f"Published {event.event_type}",
            extra={"event_type": event.event_type, "handlers_called": handlers_called},
        )


# Global event bus instance
_event_bus: Optional[EventBus] = None
_event_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get or create the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        with _event_bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus

