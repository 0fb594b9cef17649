"""
events.py - Notification Sink

The engine emits structured events after state has changed; the host game
(UI, telemetry, multiplayer broadcast) subscribes. Events are just data,
subscribers are just functions.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .logging import get_logger


logger = get_logger(__name__)

MAX_PUBLISHED_EVENTS = 1000


class FinanceEventType(Enum):
    LOAN_TAKEN = "LOAN_TAKEN"
    PAYMENT_MADE = "PAYMENT_MADE"
    PAYMENT_MISSED = "PAYMENT_MISSED"
    DEAL_DEFAULTED = "DEAL_DEFAULTED"
    DEAL_PAID_OFF = "DEAL_PAID_OFF"
    LEASE_ENDED = "LEASE_ENDED"
    OFFER_EXPIRED = "OFFER_EXPIRED"


@dataclass(frozen=True, slots=True)
class FinanceEvent:
    """
    Immutable notification.

    Attributes:
        event_type: What happened
        farm_id: Farm the event concerns
        timestamp: Game time of the change
        deal_id: Deal concerned, if any
        payload: Frozen tuple of (key, value) pairs
    """
    event_type: FinanceEventType
    farm_id: str
    timestamp: datetime
    deal_id: Optional[str] = None
    payload: tuple = ()

    @property
    def payload_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


Subscriber = Callable[[FinanceEvent], None]


class EventBus:
    """
    Synchronous publish/subscribe.

    Subscribers run in subscription order. A subscriber that raises does not
    stop delivery to the others; the failure is logged. published keeps the
    most recent max_history events, oldest dropped first.
    """

    def __init__(self, max_history: int = MAX_PUBLISHED_EVENTS):
        self._subscribers: Dict[Optional[FinanceEventType], List[Subscriber]] = {}
        self.published: Deque[FinanceEvent] = deque(maxlen=max_history)

    def subscribe(self, subscriber: Subscriber, event_type: Optional[FinanceEventType] = None) -> None:
        """Subscribe to one event type, or to every event when event_type is None."""
        self._subscribers.setdefault(event_type, []).append(subscriber)

    def unsubscribe(self, subscriber: Subscriber, event_type: Optional[FinanceEventType] = None) -> None:
        subscribers = self._subscribers.get(event_type, [])
        if subscriber in subscribers:
            subscribers.remove(subscriber)

    def publish(self, event: FinanceEvent) -> None:
        self.published.append(event)
        targets = self._subscribers.get(event.event_type, []) + self._subscribers.get(None, [])
        for subscriber in targets:
            try:
                subscriber(event)
            except Exception:
                logger.exception("subscriber failed on %s for %s", event.event_type.value, event.farm_id)

    def clear_history(self) -> None:
        self.published.clear()
