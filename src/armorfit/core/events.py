"""EventBus for decoupled publish/subscribe fitting notifications."""

from enum import Enum, auto
from typing import Any, Callable
from collections import defaultdict


class EventType(Enum):
    # Fitting lifecycle
    FIT_STARTED = auto()          # data: mesh (str), iterations (int)
    FIT_ITERATION = auto()        # data: iteration (int), fraction (float), mean_displacement (float)
    FIT_COMPLETE = auto()         # data: result (FitResult)
    FIT_CANCELLED = auto()        # data: iterations (int)

    # Post-fit steps
    COLLISIONS_RESOLVED = auto()  # data: count (int)
    WEIGHTS_TRANSFERRED = auto()  # data: report (TransferReport)

    # Session
    SESSION_RESET = auto()
    INDEX_REBUILT = auto()        # data: key (str), triangles (int)


class EventBus:
    """Simple publish/subscribe event system."""

    def __init__(self):
        self._handlers: dict[EventType, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Callable) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Callable) -> None:
        handlers = self._handlers[event_type]
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: EventType, **data: Any) -> None:
        for handler in self._handlers[event_type]:
            handler(**data)

    def clear(self) -> None:
        self._handlers.clear()
