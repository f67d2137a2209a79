"""Message bus carrying arbitration intents and broadcasts."""

from conductor.bus.message_bus import MessageBus, RequestTimeout, Subscription
from conductor.bus.topics import CoordinatorTopics, PeerTopics, SessionTopics, Topic

__all__ = [
    "CoordinatorTopics",
    "MessageBus",
    "PeerTopics",
    "RequestTimeout",
    "SessionTopics",
    "Subscription",
    "Topic",
]
