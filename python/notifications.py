"""
Real-time Notification Fan-out

Publishes `status_updated` events to the subscribers of a per-application
topic (`application_<id>`).

Delivery contract:
- best effort, at most once per currently registered subscriber
- no persistence or replay: a subscriber registered after a publish does
  not see that event
- publish never raises; a failing subscriber is logged and skipped

Subscribers are plain callables receiving the message dict. Transports (the
WebSocket endpoint in api.realtime) register a callback that forwards the
message onto their own connection. Publishing happens from request worker
threads, so the subscriber registry is guarded by a lock and callbacks are
invoked outside of it.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

STATUS_UPDATED = "status_updated"

Subscriber = Callable[[Dict[str, Any]], None]


def topic_for(application_id: int) -> str:
    """Name of the topic carrying events for one application."""
    return f"application_{application_id}"


@dataclass(frozen=True)
class StatusUpdatedEvent:
    """A committed status transition."""
    application_id: int
    new_status: str
    updated_by: Optional[str]
    timestamp: datetime

    @property
    def topic(self) -> str:
        return topic_for(self.application_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applicationId": self.application_id,
            "newStatus": self.new_status,
            "updatedBy": self.updated_by,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_message(self) -> Dict[str, Any]:
        """Wire message sent to subscribers."""
        return {"event": STATUS_UPDATED, "data": self.to_dict()}


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""
    topic: str
    callback: Subscriber = field(compare=False)
    subscription_id: str = field(default_factory=lambda: str(uuid4()))


class NotificationHub:
    """
    In-process registry of topic subscribers.

    One hub is created per process and shared by the HTTP routes (which
    publish) and the realtime transport (which subscribes).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Dict[str, Subscription]] = defaultdict(dict)

    def subscribe(self, application_id: int, callback: Subscriber) -> Subscription:
        """Register a callback for events of one application."""
        subscription = Subscription(topic=topic_for(application_id), callback=callback)
        with self._lock:
            self._subscriptions[subscription.topic][subscription.subscription_id] = subscription
        logger.debug("Subscribed %s to %s", subscription.subscription_id, subscription.topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription. Unknown subscriptions are ignored."""
        with self._lock:
            topic_subs = self._subscriptions.get(subscription.topic)
            if not topic_subs:
                return
            topic_subs.pop(subscription.subscription_id, None)
            if not topic_subs:
                del self._subscriptions[subscription.topic]
        logger.debug("Unsubscribed %s from %s", subscription.subscription_id, subscription.topic)

    def subscriber_count(self, application_id: int) -> int:
        """Number of subscribers currently registered for an application."""
        with self._lock:
            return len(self._subscriptions.get(topic_for(application_id), {}))

    def publish(self, event: StatusUpdatedEvent) -> int:
        """
        Deliver an event to every current subscriber of its topic.

        Must only be called after the transaction that produced the event
        has committed.

        Returns:
            Number of subscribers the message was handed to
        """
        with self._lock:
            targets: List[Subscription] = list(self._subscriptions.get(event.topic, {}).values())

        if not targets:
            logger.debug("No subscribers for %s", event.topic)
            return 0

        message = event.to_message()
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(message)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Notification delivery failed: topic=%s subscription=%s error=%s",
                    event.topic,
                    subscription.subscription_id,
                    e,
                )

        logger.debug("Published %s to %d/%d subscribers of %s",
                     STATUS_UPDATED, delivered, len(targets), event.topic)
        return delivered
