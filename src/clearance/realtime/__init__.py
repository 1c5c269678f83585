"""
Realtime synchronization: the event contract, the in-process bus and the
client-side subscriber.
"""

from clearance.realtime.events import EventBus, EventType, Subscription, WorkflowEvent
from clearance.realtime.subscriber import ConnectionState, RealtimeSubscriber

__all__ = [
    "ConnectionState",
    "EventBus",
    "EventType",
    "RealtimeSubscriber",
    "Subscription",
    "WorkflowEvent",
]
