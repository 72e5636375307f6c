"""
Flow events.

A fixed set of event names, each with one payload type. Subscribers are
plain callables; a failing subscriber is logged and skipped.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .errors import ErrorRecord

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    PROGRESS_UPDATED = "progress-updated"
    STEP_COMPLETED = "step-completed"
    FLOW_COMPLETED = "flow-completed"
    ERROR_OCCURRED = "error-occurred"
    MIGRATION_STARTED = "migration-started"
    MIGRATION_COMPLETED = "migration-completed"
    DATA_SYNCED = "data-synced"
    OFFLINE_MODE = "offline-mode"


@dataclass
class Progress:
    """Snapshot of where the user is in the flow."""
    current_step: str
    completed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    total_steps: int = 0
    percentage_complete: int = 0
    is_complete: bool = False
    next_step: str | None = None
    can_proceed: bool = False
    user_migrated: bool = False
    is_online: bool = True
    estimated_minutes_remaining: int = 0


@dataclass(frozen=True)
class StepCompleted:
    step_id: str
    payload: dict


EVENT_PAYLOAD_TYPES: dict[EventName, type] = {
    EventName.PROGRESS_UPDATED: Progress,
    EventName.STEP_COMPLETED: StepCompleted,
    EventName.FLOW_COMPLETED: type(None),
    EventName.ERROR_OCCURRED: ErrorRecord,
    EventName.MIGRATION_STARTED: type(None),
    EventName.MIGRATION_COMPLETED: bool,
    EventName.DATA_SYNCED: str,
    EventName.OFFLINE_MODE: bool,
}

Handler = Callable[[Any], None]


class EventBus:
    """Typed publish/subscribe."""

    def __init__(self):
        self._handlers: dict[EventName, list[Handler]] = defaultdict(list)

    def subscribe(self, name: EventName, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that removes it again."""
        name = EventName(name)
        self._handlers[name].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

        return unsubscribe

    def emit(self, name: EventName, payload: Any = None) -> int:
        """Deliver to every subscriber. Returns how many handlers succeeded."""
        name = EventName(name)
        expected = EVENT_PAYLOAD_TYPES[name]
        if not isinstance(payload, expected):
            raise TypeError(
                f"Event '{name.value}' expects {expected.__name__}, got {type(payload).__name__}"
            )

        delivered = 0
        for handler in list(self._handlers[name]):
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Handler for '{name.value}' failed: {e}")
        return delivered

    def subscriber_count(self, name: EventName) -> int:
        return len(self._handlers[EventName(name)])

    def clear(self) -> None:
        self._handlers.clear()
