"""
In-process pub/sub for audit activity.

One ActivityBroadcaster is built by the application lifespan and handed to
routes through a dependency. Subscribers join an organization room and
read events from their own bounded queue; a slow subscriber loses its
oldest events instead of blocking publishers.
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from app.db.models import AuditRunActivity
from app.services.activity import load_value

logger = logging.getLogger(__name__)


def activity_event(organization_id: uuid.UUID, activity: AuditRunActivity) -> dict:
    """Wire form of an activity entry"""
    return {
        "type": "audit_activity",
        "organizationId": str(organization_id),
        "auditRunId": str(activity.audit_run_id),
        "activityType": activity.activity_type.value,
        "performedBy": str(activity.performed_by),
        "targetEntity": activity.target_entity,
        "oldValue": load_value(activity.old_value),
        "newValue": load_value(activity.new_value),
        "timestamp": (activity.timestamp or datetime.utcnow()).isoformat(),
    }


class Subscription:
    """A subscriber's handle: iterate with ``await subscription.get()``"""

    def __init__(self, organization_id: uuid.UUID, queue: asyncio.Queue):
        self.organization_id = organization_id
        self.queue = queue
        self.dropped = 0

    async def get(self) -> Optional[dict]:
        """Next event, or None once the broadcaster has shut down"""
        return await self.queue.get()


class ActivityBroadcaster:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._rooms: dict[uuid.UUID, set[Subscription]] = defaultdict(set)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("Activity broadcaster started")

    async def shutdown(self) -> None:
        """Wake every subscriber with a None sentinel and forget them"""
        self._running = False
        for subscriptions in self._rooms.values():
            for subscription in subscriptions:
                self._put(subscription, None)
        self._rooms.clear()
        logger.info("Activity broadcaster stopped")

    def subscribe(self, organization_id: uuid.UUID) -> Subscription:
        if not self._running:
            raise RuntimeError("Broadcaster is not running")
        subscription = Subscription(organization_id, asyncio.Queue(maxsize=self.queue_size))
        self._rooms[organization_id].add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.organization_id)
        if room is None:
            return
        room.discard(subscription)
        if not room:
            del self._rooms[subscription.organization_id]

    def subscriber_count(self, organization_id: uuid.UUID) -> int:
        return len(self._rooms.get(organization_id, ()))

    def publish(self, organization_id: uuid.UUID, event: dict[str, Any]) -> int:
        """Deliver to every subscriber of the room; returns how many got it"""
        if not self._running:
            return 0
        delivered = 0
        for subscription in list(self._rooms.get(organization_id, ())):
            self._put(subscription, event)
            delivered += 1
        return delivered

    def publish_activity(self, organization_id: uuid.UUID, *activities: Optional[AuditRunActivity]) -> int:
        delivered = 0
        for activity in activities:
            if activity is not None:
                delivered += self.publish(organization_id, activity_event(organization_id, activity))
        return delivered

    def _put(self, subscription: Subscription, event: Optional[dict]) -> None:
        queue = subscription.queue
        if queue.full():
            queue.get_nowait()
            subscription.dropped += 1
            logger.warning(
                f"Dropped oldest event for a slow subscriber of organization {subscription.organization_id}"
            )
        queue.put_nowait(event)
