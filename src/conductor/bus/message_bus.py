"""
In-process message bus carrying arbitration traffic.

Peers and the coordinator never call each other directly: intents are
REQUEST messages answered on a per-correlation reply topic, and every
resulting state change goes out as EVENT messages on session- or
peer-scoped topics. Patterns use ``*`` for one segment and ``#`` for
the rest of the topic.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import anyio
import structlog
from ulid import ULID

from conductor.bus.topics import Topic
from conductor.core.signals import Message, MessageType

logger = structlog.get_logger()

MessageHandler = Callable[[Message], Coroutine[Any, Any, None]]


@dataclass
class Subscription:
    id: str
    pattern: str
    handler: MessageHandler


@dataclass
class MessageBusStats:
    """Counters exposed through the orchestrator health report."""

    total_messages_published: int = 0
    total_messages_delivered: int = 0
    total_subscriptions: int = 0
    total_errors: int = 0
    total_requests: int = 0
    total_request_timeouts: int = 0


class RequestTimeout(Exception):
    """Raised when no reply arrives for a request in time."""

    def __init__(self, message: Message, timeout: float) -> None:
        super().__init__(f"No reply on {message.reply_to} within {timeout}s")
        self.request = message
        self.timeout = timeout


class MessageBus:
    """Topic-routed pub/sub with request/reply for acknowledged intents."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._subscriptions_by_id: dict[str, Subscription] = {}
        self._stats = MessageBusStats()
        self._deliveries: set[asyncio.Task[int]] = set()
        self._log = logger.bind(component="message_bus")

    @property
    def stats(self) -> MessageBusStats:
        return self._stats

    async def subscribe(self, pattern: str | Topic, handler: MessageHandler) -> str:
        """Register ``handler`` for a topic pattern and return the subscription id."""
        sub = Subscription(id=str(ULID()), pattern=str(pattern), handler=handler)
        self._subscriptions[sub.pattern].append(sub)
        self._subscriptions_by_id[sub.id] = sub
        self._stats.total_subscriptions += 1
        self._log.debug("subscribed", pattern=sub.pattern, subscription_id=sub.id)
        return sub.id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Drop one subscription; returns False if the id is unknown."""
        sub = self._subscriptions_by_id.pop(subscription_id, None)
        if sub is None:
            return False
        remaining = [s for s in self._subscriptions[sub.pattern] if s.id != subscription_id]
        if remaining:
            self._subscriptions[sub.pattern] = remaining
        else:
            del self._subscriptions[sub.pattern]
        self._stats.total_subscriptions -= 1
        self._log.debug("unsubscribed", pattern=sub.pattern, subscription_id=subscription_id)
        return True

    def _matching(self, topic: str) -> list[Subscription]:
        parsed = Topic(topic)
        return [
            sub
            for pattern, subs in list(self._subscriptions.items())
            if parsed.matches(pattern)
            for sub in subs
        ]

    async def publish(self, message: Message) -> int:
        """
        Deliver a message to every subscription whose pattern matches its topic.

        Handlers of one message run concurrently; a failing handler is
        logged and counted without affecting the others. Successive
        publish() calls from one task are delivered in call order.

        Returns:
            Number of handlers that completed without raising
        """
        self._stats.total_messages_published += 1
        matching = self._matching(message.topic)
        if not matching:
            self._log.debug("no_subscribers", topic=message.topic, event_name=message.event_name)
            return 0

        delivered = 0

        async def deliver(sub: Subscription) -> None:
            nonlocal delivered
            try:
                await sub.handler(message)
            except Exception:
                self._stats.total_errors += 1
                self._log.exception(
                    "handler_failed",
                    topic=message.topic,
                    source=message.source,
                    subscription_id=sub.id,
                )
                return
            delivered += 1

        async with anyio.create_task_group() as tg:
            for sub in matching:
                tg.start_soon(deliver, sub)

        self._stats.total_messages_delivered += delivered
        self._log.debug(
            "published",
            topic=message.topic,
            message_id=message.id,
            delivered=delivered,
            handlers=len(matching),
        )
        return delivered

    async def request(self, message: Message, timeout: float) -> Message:
        """
        Publish a request and wait for the reply on its ``reply_to`` topic.

        Delivery runs as its own task, so ``timeout`` bounds the whole
        exchange even when a handler is slow to reply. A delivery still
        running after its caller gave up is finished by ``drain()``.

        Raises:
            ValueError: if the message is not a request with a reply topic
            RequestTimeout: if no reply arrives within ``timeout`` seconds
        """
        if message.type != MessageType.REQUEST or message.reply_to is None:
            raise ValueError("request() needs a REQUEST message with reply_to set")

        self._stats.total_requests += 1
        replies: list[Message] = []
        received = anyio.Event()

        async def on_reply(reply: Message) -> None:
            if reply.correlation_id == message.correlation_id:
                replies.append(reply)
                received.set()

        sub_id = await self.subscribe(message.reply_to, on_reply)
        delivery = asyncio.get_running_loop().create_task(self.publish(message))
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)
        try:
            with anyio.fail_after(timeout):
                await received.wait()
        except TimeoutError as exc:
            self._stats.total_request_timeouts += 1
            self._log.warning(
                "request_timed_out",
                topic=message.topic,
                correlation_id=message.correlation_id,
                timeout=timeout,
            )
            raise RequestTimeout(message, timeout) from exc
        finally:
            await self.unsubscribe(sub_id)

        return replies[0]

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def drain(self) -> None:
        """Wait for request deliveries that outlived their callers."""
        while self._deliveries:
            await asyncio.gather(*self._deliveries)

    def get_subscriptions(self, pattern: str | None = None) -> list[Subscription]:
        """Get current subscriptions, optionally only those for one pattern."""
        if pattern is None:
            return list(self._subscriptions_by_id.values())
        return list(self._subscriptions.get(pattern, []))

    def clear(self) -> None:
        """Remove all subscriptions."""
        count = len(self._subscriptions_by_id)
        self._subscriptions.clear()
        self._subscriptions_by_id.clear()
        self._stats.total_subscriptions = 0
        self._log.info("cleared", removed_subscriptions=count)
