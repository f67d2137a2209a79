"""Tests for the arbitration session handle and the command dispatcher."""

import anyio
import pytest

from conductor.arbitration.coordinator import ArbitrationCoordinator
from conductor.arbitration.models import Acknowledgement, Intent, SessionArbitrationState
from conductor.bus.message_bus import MessageBus
from conductor.bus.topics import CoordinatorTopics
from conductor.core.clock import VirtualTimerScheduler
from conductor.core.errors import (
    AcknowledgementFailure,
    ConnectionUnavailable,
    SessionNotInitialized,
)
from conductor.core.signals import Message
from conductor.peer.dispatcher import CommandDispatcher
from conductor.peer.notifications import NotificationCategory, NotificationScheduler
from conductor.peer.session import ArbitrationSession
from conductor.peer.state import Error, Idle, Sent
from conductor.peer.state_machine import LocalArbitrationStateMachine

ROOM = "room1"


def build(
    client_id: str, bus: MessageBus, timers: VirtualTimerScheduler, ack_timeout: float = 1.0
) -> tuple[ArbitrationSession, LocalArbitrationStateMachine, NotificationScheduler, CommandDispatcher]:
    session = ArbitrationSession(client_id, bus, ack_timeout=ack_timeout)
    machine = LocalArbitrationStateMachine(client_id, timers)
    notifications = NotificationScheduler(timers, is_controller=machine.is_controller)
    return session, machine, notifications, CommandDispatcher(session, machine, notifications)


async def start_coordinator(bus: MessageBus, timers: VirtualTimerScheduler) -> ArbitrationCoordinator:
    coordinator = ArbitrationCoordinator(timers=timers)
    coordinator.set_message_bus(bus)
    await coordinator.start()
    return coordinator


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_not_connected(self) -> None:
        bus = MessageBus()
        session, machine, _, dispatcher = build("d1", bus, VirtualTimerScheduler())

        with pytest.raises(ConnectionUnavailable):
            await dispatcher.request_controller()
        with pytest.raises(ConnectionUnavailable):
            await dispatcher.approve_request("r1")

        assert isinstance(machine.current_state(), Idle)
        assert bus.stats.total_messages_published == 0

    @pytest.mark.asyncio
    async def test_no_session(self) -> None:
        bus = MessageBus()
        session, machine, _, dispatcher = build("d1", bus, VirtualTimerScheduler())
        session.connect()

        with pytest.raises(SessionNotInitialized):
            await dispatcher.request_controller()
        with pytest.raises(SessionNotInitialized):
            await dispatcher.cancel_request()
        with pytest.raises(SessionNotInitialized):
            await dispatcher.offer_controller("x1")

        assert isinstance(machine.current_state(), Idle)
        assert bus.stats.total_messages_published == 0

    @pytest.mark.asyncio
    async def test_disconnect_forgets_session(self) -> None:
        bus = MessageBus()
        timers = VirtualTimerScheduler()
        await start_coordinator(bus, timers)
        session, *_ = build("d1", bus, timers)
        session.connect()
        await session.join(ROOM)
        assert session.session_id == ROOM

        session.disconnect()
        assert session.session_id is None
        with pytest.raises(ConnectionUnavailable):
            session.ensure_ready("request_controller")


class TestAcknowledgements:
    @pytest.mark.asyncio
    async def test_timeout_is_a_failed_ack(self) -> None:
        bus = MessageBus()
        timers = VirtualTimerScheduler()
        coordinator = await start_coordinator(bus, timers)
        session, machine, _, dispatcher = build("d1", bus, timers, ack_timeout=0.05)
        session.connect()
        ack = await session.join(ROOM)
        machine.seed(SessionArbitrationState.model_validate(ack.data["state"]))

        # Nobody answers intents any more
        await coordinator.stop()

        with pytest.raises(AcknowledgementFailure) as exc_info:
            await dispatcher.offer_controller("x1")
        assert exc_info.value.timed_out

    @pytest.mark.asyncio
    async def test_failed_request_moves_to_error(self) -> None:
        bus = MessageBus()
        timers = VirtualTimerScheduler()
        await start_coordinator(bus, timers)
        session, machine, _, dispatcher = build("c1", bus, timers)
        session.connect()
        ack = await session.join(ROOM)
        machine.seed(SessionArbitrationState.model_validate(ack.data["state"]))

        # Pretend the mirror has not seen the role yet
        machine.reset()
        machine.seed(SessionArbitrationState(session_id=ROOM, epoch=ack.epoch or 0))

        with pytest.raises(AcknowledgementFailure) as exc_info:
            await dispatcher.request_controller()
        assert exc_info.value.ack.error == "You are already the controller"
        assert isinstance(machine.current_state(), Error)

        timers.advance(3000)
        assert isinstance(machine.current_state(), Idle)

    @pytest.mark.asyncio
    async def test_controller_intents_fail_for_listener(self) -> None:
        bus = MessageBus()
        timers = VirtualTimerScheduler()
        await start_coordinator(bus, timers)
        leader, *_ = build("c1", bus, timers)
        leader.connect()
        await leader.join(ROOM)
        session, _, _, dispatcher = build("d1", bus, timers)
        session.connect()
        await session.join(ROOM)

        with pytest.raises(AcknowledgementFailure, match="Only the current controller"):
            await dispatcher.deny_request("c1")

    @pytest.mark.asyncio
    async def test_slow_coordinator_times_out(self) -> None:
        bus = MessageBus()
        release = anyio.Event()

        async def stuck_coordinator(message: Message) -> None:
            await release.wait()
            await bus.publish(message.reply("coordinator", Acknowledgement.ok().model_dump()))

        await bus.subscribe(str(CoordinatorTopics.ALL_INTENTS), stuck_coordinator)
        session = ArbitrationSession("d1", bus, ack_timeout=0.05)
        session.connect()

        with anyio.fail_after(1.0):
            ack = await session.send(Intent.JOIN_SESSION, session_id=ROOM)
        assert not ack.success
        assert ack.error == "timeout"

        release.set()
        await bus.drain()


class TestRequestDispatch:
    @pytest.mark.asyncio
    async def test_request_then_cancel(self) -> None:
        bus = MessageBus()
        timers = VirtualTimerScheduler()
        coordinator = await start_coordinator(bus, timers)
        leader, *_ = build("c1", bus, timers)
        leader.connect()
        await leader.join(ROOM)

        session, machine, _, dispatcher = build("d1", bus, timers)
        session.connect()
        ack = await session.join(ROOM)
        machine.seed(SessionArbitrationState.model_validate(ack.data["state"]))

        ack = await dispatcher.request_controller()
        assert ack is not None and ack.success
        assert isinstance(machine.current_state(), Sent)
        assert await dispatcher.request_controller() is None
        assert len(coordinator.pending_of(ROOM)) == 1

        await dispatcher.cancel_request()
        assert machine.current_state().status == "cancelled"
        assert coordinator.pending_of(ROOM) == ()

    @pytest.mark.asyncio
    async def test_decline_dismisses_offer(self) -> None:
        bus = MessageBus()
        timers = VirtualTimerScheduler()
        await start_coordinator(bus, timers)
        session, machine, notifications, dispatcher = build("d1", bus, timers)
        session.connect()
        await session.join(ROOM)
        notifications.on_event(NotificationCategory.OFFER_RECEIVED, None)

        await dispatcher.decline_offer("c1")
        assert not notifications.is_visible(NotificationCategory.OFFER_RECEIVED)
