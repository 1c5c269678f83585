"""
Realtime event contract and in-process event bus.

Events are cache-invalidation signals. Each carries a minimal delta
(workflow or comment id plus version and routing state); subscribers
re-fetch the authoritative workflow before acting on it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from clearance.config import settings
from clearance.models.workflow import EscalationTrigger, Workflow, WorkflowComment, utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_UPDATE = "workflow_update"
    NEW_WORKFLOW = "new_workflow"
    COMMENT_ADDED = "comment_added"
    ESCALATION = "escalation"


@dataclass(frozen=True)
class WorkflowEvent:
    """One message on the realtime channel."""

    type: EventType
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def workflow_id(self) -> Optional[str]:
        return self.data.get("workflow_id")

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "WorkflowEvent":
        """Parse an envelope; raises ValueError for unknown types or bad shape."""
        event_type = EventType(message["type"])
        data = message.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Event data must be an object")
        timestamp = message.get("timestamp")
        return cls(
            type=event_type,
            data=data,
            timestamp=datetime.fromisoformat(timestamp) if timestamp else utcnow(),
        )


def workflow_delta(workflow: Workflow) -> dict[str, Any]:
    return {
        "workflow_id": str(workflow.id),
        "workflow_number": workflow.workflow_number,
        "status": workflow.status.value,
        "stage": workflow.current_stage.value,
        "version": workflow.version,
    }


def workflow_update(workflow: Workflow, **extra: Any) -> WorkflowEvent:
    return WorkflowEvent(EventType.WORKFLOW_UPDATE, {**workflow_delta(workflow), **extra})


def new_workflow(workflow: Workflow) -> WorkflowEvent:
    data = workflow_delta(workflow)
    data["priority"] = workflow.priority.value
    return WorkflowEvent(EventType.NEW_WORKFLOW, data)


def comment_added(workflow: Workflow, comment: WorkflowComment) -> WorkflowEvent:
    return WorkflowEvent(EventType.COMMENT_ADDED, {
        "workflow_id": str(workflow.id),
        "comment_id": str(comment.id),
        "version": workflow.version,
    })


def escalation(
    workflow: Workflow,
    target_role: str,
    reason: str,
    trigger: Optional[EscalationTrigger] = None,
) -> WorkflowEvent:
    data = {
        **workflow_delta(workflow),
        "target_role": target_role,
        "reason": reason,
    }
    if trigger is not None:
        data["trigger_id"] = str(trigger.id)
        data["trigger_action"] = trigger.action.value
    return WorkflowEvent(EventType.ESCALATION, data)


class Subscription:
    """A subscriber's bounded inbox. Oldest events are dropped on overflow."""

    def __init__(self, maxsize: int, workflow_ids: Optional[set[str]] = None):
        self.id: UUID = uuid4()
        self.queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue(maxsize=maxsize)
        self.workflow_ids = workflow_ids
        self.dropped = 0

    def wants(self, event: WorkflowEvent) -> bool:
        if not self.workflow_ids:
            return True
        return event.workflow_id in self.workflow_ids

    def offer(self, event: WorkflowEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(
                f"Subscriber {self.id} queue full, dropped oldest event "
                f"({self.dropped} dropped so far)"
            )
        self.queue.put_nowait(event)

    async def get(self) -> WorkflowEvent:
        return await self.queue.get()


class EventBus:
    """
    In-process publish/subscribe for workflow events.

    Delivery is at-most-once per subscriber and ``publish`` never blocks,
    so it is safe to call while holding a workflow lock.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.event_queue_size
        self._subscriptions: dict[UUID, Subscription] = {}
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, workflow_ids: Optional[set[str]] = None) -> Subscription:
        subscription = Subscription(self.queue_size, workflow_ids)
        self._subscriptions[subscription.id] = subscription
        logger.info(f"Realtime subscriber {subscription.id} connected ({self.subscriber_count} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.info(
                f"Realtime subscriber {subscription.id} disconnected ({self.subscriber_count} total)"
            )

    def publish(self, event: WorkflowEvent) -> int:
        """Deliver to every interested subscriber; returns the delivery count."""
        self.published += 1
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.wants(event):
                subscription.offer(event)
                delivered += 1
        logger.debug(f"Published {event.type.value} for {event.workflow_id} to {delivered} subscribers")
        return delivered
