"""Typed state-change events and an in-process broadcast channel."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime

from renewal_hub.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SystemRenewed:
    system_id: int
    external_id: int
    username: str
    expires_at: datetime
    task_id: str
    occurred_at: datetime = field(default_factory=utc_now)

    event_type = "system.renewed"


@dataclass(slots=True, frozen=True)
class RenewalFailed:
    system_id: int
    task_id: str
    reason: str
    malformed: bool = False
    occurred_at: datetime = field(default_factory=utc_now)

    event_type = "system.renewal_failed"


@dataclass(slots=True, frozen=True)
class PointsRedistributed:
    mode: str
    systems_created: int
    points_bound: int
    occurred_at: datetime = field(default_factory=utc_now)

    event_type = "points.redistributed"


Event = SystemRenewed | RenewalFailed | PointsRedistributed


class EventChannel:
    """Fan-out of events to per-subscriber queues.

    Consumers (bot, dashboard) call ``subscribe()`` once and drain their
    queue at their own pace; a full queue drops the event for that
    subscriber only.
    """

    def __init__(self, *, max_pending: int = 1000) -> None:
        self._max_pending = max_pending
        self._subscribers: list[queue.Queue[Event]] = []
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue[Event]:
        subscriber: queue.Queue[Event] = queue.Queue(maxsize=self._max_pending)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue[Event]) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def publish(self, event: Event) -> int:
        """Deliver to every subscriber; returns how many received it."""

        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.put_nowait(event)
            except queue.Full:
                logger.warning("Subscriber queue full; dropped %s event", event.event_type)
                continue
            delivered += 1
        logger.debug("Published %s to %d subscriber(s)", event.event_type, delivered)
        return delivered
