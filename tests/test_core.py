"""Tests for core abstractions: topics, messages, bus, timers, config."""

import json

import anyio
import pytest
from pydantic import ValidationError

from conductor.arbitration.models import Acknowledgement
from conductor.bus.message_bus import MessageBus, RequestTimeout
from conductor.bus.topics import CoordinatorTopics, PeerTopics, SessionTopics, Topic
from conductor.core.clock import VirtualTimerScheduler
from conductor.core.component import Component, ComponentMetadata, ComponentState, ComponentType
from conductor.core.config import DEFAULT_CONFIG, ArbitrationConfig, load_config
from conductor.core.errors import AcknowledgementFailure, StaleOrdering
from conductor.core.signals import Message, MessageType


class TestTopic:
    def test_topic_matching(self) -> None:
        topic = Topic("session.room1.controller.controller_client_change")
        assert topic.matches("session.room1.controller.controller_client_change")
        assert topic.matches("session.room1.controller.*")
        assert topic.matches("session.#")
        assert topic.matches("#")
        assert not topic.matches("session.room2.controller.*")
        assert not topic.matches("session.room1.controller")

    def test_topic_segments(self) -> None:
        topic = Topic("a.b.c")
        assert topic.segments == ["a", "b", "c"]

    def test_arbitration_topics(self) -> None:
        assert str(CoordinatorTopics.intent("request_controller")) == "coordinator.intent.request_controller"
        assert CoordinatorTopics.intent("deny_controller_request").matches(str(CoordinatorTopics.ALL_INTENTS))
        assert SessionTopics.controller_event("r1", "x").matches(str(SessionTopics.all_controller_events("r1")))
        assert PeerTopics.controller_event("c1", "x").matches(str(PeerTopics.all_controller_events("c1")))

    def test_ack_topic_is_not_a_controller_event(self) -> None:
        ack = PeerTopics.ack("c1", "corr")
        assert not ack.matches(str(PeerTopics.all_controller_events("c1")))


class TestMessage:
    def test_event_name_is_last_segment(self) -> None:
        message = Message.event("session.r.controller.controller_requests_update", "coordinator", {})
        assert message.type == MessageType.EVENT
        assert message.event_name == "controller_requests_update"

    def test_reply_keeps_correlation(self) -> None:
        request = Message.request("coordinator.intent.x", "peer", {}, reply_to="peer.p.ack.1")
        reply = request.reply("coordinator", {"success": True})
        assert reply.type == MessageType.RESPONSE
        assert reply.topic == "peer.p.ack.1"
        assert reply.correlation_id == request.correlation_id

    def test_reply_requires_reply_to(self) -> None:
        message = Message.event("a.b", "src", None)
        with pytest.raises(ValueError, match="no reply_to"):
            message.reply("src", None)

    def test_messages_are_frozen(self) -> None:
        message = Message.event("a.b", "src", None)
        with pytest.raises(ValidationError):
            message.topic = "c.d"  # type: ignore[misc]


class TestMessageBus:
    @pytest.mark.asyncio
    async def test_publish_subscribe(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe("test.topic", handler)
        delivered = await bus.publish(Message.event("test.topic", "test", "test data"))

        assert delivered == 1
        assert len(received) == 1
        assert received[0].payload == "test data"

    @pytest.mark.asyncio
    async def test_wildcard_subscription(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe("test.#", handler)

        await bus.publish(Message.event("test.a", "src", "data1"))
        await bus.publish(Message.event("test.b.c", "src", "data2"))
        await bus.publish(Message.event("other.x", "src", "data3"))

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        sub_id = await bus.subscribe("test", handler)
        assert await bus.unsubscribe(sub_id)
        assert not await bus.unsubscribe(sub_id)

        await bus.publish(Message.event("test", "src", "data"))
        assert len(received) == 0
        assert bus.get_subscriptions() == []

    @pytest.mark.asyncio
    async def test_handler_failure_is_isolated(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def broken(msg: Message) -> None:
            raise RuntimeError("boom")

        async def handler(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe("test", broken)
        await bus.subscribe("test", handler)
        delivered = await bus.publish(Message.event("test", "src", "data"))

        assert delivered == 1
        assert len(received) == 1
        assert bus.stats.total_errors == 1

    @pytest.mark.asyncio
    async def test_request_reply(self) -> None:
        bus = MessageBus()

        async def responder(msg: Message) -> None:
            await bus.publish(msg.reply("responder", {"echo": msg.payload}))

        await bus.subscribe("svc.echo", responder)
        request = Message.request("svc.echo", "client", "hi", reply_to="client.reply.1")
        reply = await bus.request(request, timeout=1.0)

        assert reply.payload == {"echo": "hi"}
        assert reply.correlation_id == request.correlation_id
        assert bus.stats.total_requests == 1
        # The reply subscription is released afterwards
        assert bus.get_subscriptions("client.reply.1") == []

    @pytest.mark.asyncio
    async def test_request_timeout(self) -> None:
        bus = MessageBus()
        request = Message.request("svc.nobody", "client", None, reply_to="client.reply.2")

        with pytest.raises(RequestTimeout):
            await bus.request(request, timeout=0.05)
        assert bus.stats.total_request_timeouts == 1

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self) -> None:
        bus = MessageBus()
        delivered = await bus.publish(Message.event("system.startup", "orchestrator", {}))
        assert delivered == 0
        assert bus.stats.total_messages_published == 1

    @pytest.mark.asyncio
    async def test_timeout_bounds_slow_responder(self) -> None:
        bus = MessageBus()
        release = anyio.Event()

        async def slow(msg: Message) -> None:
            await release.wait()
            await bus.publish(msg.reply("slow", {"late": True}))

        await bus.subscribe("svc.slow", slow)
        request = Message.request("svc.slow", "client", None, reply_to="client.reply.3")

        with anyio.fail_after(1.0):
            with pytest.raises(RequestTimeout):
                await bus.request(request, timeout=0.05)
        assert bus.stats.total_request_timeouts == 1
        assert bus.pending_deliveries == 1

        release.set()
        await bus.drain()
        assert bus.pending_deliveries == 0
        # Nobody is listening for the late reply any more
        assert bus.get_subscriptions("client.reply.3") == []

    @pytest.mark.asyncio
    async def test_request_needs_reply_topic(self) -> None:
        bus = MessageBus()
        with pytest.raises(ValueError):
            await bus.request(Message.event("a.b", "src", None), timeout=0.1)


class Flaky(Component):
    def __init__(self, bus: MessageBus) -> None:
        super().__init__(
            ComponentMetadata(
                name="flaky",
                display_name="Flaky",
                type=ComponentType.PEER,
                subscribed_topics=frozenset(["flaky.*"]),
            ),
            bus,
        )
        self.seen: list[str] = []

    async def handle_event(self, message: Message) -> None:
        self.seen.append(message.event_name)
        if message.event_name == "boom":
            raise RuntimeError("boom")


class TestComponent:
    @pytest.mark.asyncio
    async def test_lifecycle_manages_subscriptions(self) -> None:
        bus = MessageBus()
        component = Flaky(bus)

        await component.start()
        assert component.component_state == ComponentState.RUNNING
        assert len(bus.get_subscriptions()) == 1
        with pytest.raises(RuntimeError, match="Cannot start"):
            await component.start()

        await component.stop()
        assert component.component_state == ComponentState.STOPPED
        assert bus.get_subscriptions() == []

    @pytest.mark.asyncio
    async def test_handler_errors_are_counted(self) -> None:
        bus = MessageBus()
        component = Flaky(bus)
        await component.start()

        await bus.publish(Message.event("flaky.boom", "src", None))
        await bus.publish(Message.event("flaky.fine", "src", None))

        assert component.seen == ["boom", "fine"]
        assert component.stats.messages_received == 2
        assert component.stats.handler_errors == 1
        # Errors stop at the component, so the bus saw none
        assert bus.stats.total_errors == 0


class TestVirtualTimerScheduler:
    def test_fires_in_due_order(self) -> None:
        timers = VirtualTimerScheduler()
        fired: list[str] = []
        timers.call_later(200, lambda: fired.append("late"))
        timers.call_later(100, lambda: fired.append("early"))

        assert timers.advance(150) == 1
        assert fired == ["early"]
        assert timers.now() == 150

        timers.advance(50)
        assert fired == ["early", "late"]

    def test_cancelled_timer_does_not_fire(self) -> None:
        timers = VirtualTimerScheduler()
        fired: list[int] = []
        handle = timers.call_later(10, lambda: fired.append(1))
        handle.cancel()

        assert timers.pending == 0
        assert timers.advance(100) == 0
        assert fired == []

    def test_nested_timers_fire_within_window(self) -> None:
        timers = VirtualTimerScheduler()
        fired: list[float] = []

        def first() -> None:
            fired.append(timers.now())
            timers.call_later(10, lambda: fired.append(timers.now()))

        timers.call_later(10, first)
        timers.advance(25)
        assert fired == [10, 20]


class TestArbitrationConfig:
    def test_defaults(self) -> None:
        config = ArbitrationConfig()
        assert config.request_received_ms == 5000
        assert config.offer_sent_ms == 4000
        assert config.offer_accepted_ms == 4000
        assert config.offer_declined_ms == 4000
        assert config.error_ms == 3000
        assert config.cancelled_ms == 2000
        assert config.result_ms == 4000
        assert config.offer_received_ms is None
        assert DEFAULT_CONFIG == config

    def test_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValidationError):
            ArbitrationConfig.from_mapping({"result_ms": 100, "colour": "blue"})

    def test_rejects_negative_durations(self) -> None:
        with pytest.raises(ValidationError):
            ArbitrationConfig(error_ms=-1)

    def test_load_config(self, tmp_path) -> None:
        path = tmp_path / "arbitration.json"
        path.write_text(json.dumps({"result_ms": 1500, "offer_received_ms": 10000}))
        config = load_config(path)
        assert config.result_ms == 1500
        assert config.offer_received_ms == 10000
        assert config.error_ms == 3000


class TestErrors:
    def test_acknowledgement_failure_carries_ack(self) -> None:
        ack = Acknowledgement.failed("timeout")
        exc = AcknowledgementFailure("request_controller", ack)
        assert exc.ack is ack
        assert exc.timed_out
        assert "timeout" in str(exc)

    def test_stale_ordering_carries_epochs(self) -> None:
        exc = StaleOrdering("controller_requests_update", 3, 5)
        assert exc.received_epoch == 3
        assert exc.current_epoch == 5
