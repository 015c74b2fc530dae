"""
Event Publisher - Scan completion notifications.

Subscribers register a callback and receive a SyncEvent each time a scan
finishes with auto-publish enabled. Delivery is synchronous and
fire-and-forget: a failing subscriber is logged and skipped.

Design Pattern: Observer
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List

import structlog


class SyncType(Enum):
    """Kind of data a completed scan staged"""
    TEAM = "team"
    USER = "user"


@dataclass
class SyncEvent:
    """A published scan-completion notification"""
    message: str
    payload: Any  # The AccountSourceInstance that was scanned
    sync_type: SyncType
    published_at: datetime = field(default_factory=datetime.now)


class EventPublisher:
    """
    Broadcasts scan completion events to subscribers.

    Example:
        >>> publisher = EventPublisher()
        >>> publisher.subscribe(lambda event: print(event.sync_type))
        >>> publisher.publish("Team scan finished", instance, SyncType.TEAM)
    """

    def __init__(self):
        self.observers: List[Callable[[SyncEvent], None]] = []
        self.published_count = 0
        self._lock = threading.Lock()

        self.logger = structlog.get_logger(__name__)

    def subscribe(self, observer: Callable[[SyncEvent], None]):
        """
        Subscribe to completion events.

        Args:
            observer: Callback receiving each SyncEvent
        """
        with self._lock:
            self.observers.append(observer)
        self.logger.info("observer_subscribed", observer=_observer_name(observer))

    def publish(self, message: str, payload: Any, sync_type: SyncType) -> SyncEvent:
        """
        Publish a completion event to every subscriber.

        Args:
            message: Human-readable description of what completed
            payload: The scanned source instance
            sync_type: Whether teams or users were staged

        Returns:
            The event that was delivered
        """
        event = SyncEvent(message=message, payload=payload, sync_type=sync_type)

        with self._lock:
            observers = list(self.observers)
            self.published_count += 1

        self.logger.info(
            "sync_event_published",
            message=message,
            sync_type=sync_type.value,
            observers=len(observers),
        )

        for observer in observers:
            try:
                observer(event)
            except Exception as e:
                self.logger.error(
                    "observer_error",
                    observer=_observer_name(observer),
                    error=str(e),
                )

        return event


def _observer_name(observer: Callable) -> str:
    return getattr(observer, "__name__", repr(observer))
