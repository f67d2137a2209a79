"""
PeerClient: one session member on the message bus.

Wires the per-peer pieces together:
- ArbitrationSession: connection and acknowledged intents
- LocalArbitrationStateMachine: mirror and own request state
- NotificationScheduler: alert visibility
- CommandDispatcher: user intents

Session-wide broadcasts feed the state machine; peer-directed ones feed
the notification scheduler. A controller change resets every alert and
re-projects the current request state.
"""

from typing import Any

import structlog
from pydantic import ValidationError

from conductor.arbitration.models import (
    Acknowledgement,
    BroadcastEvent,
    ControllerOfferReceived,
    Intent,
    SessionArbitrationState,
    parse_broadcast,
)
from conductor.bus.message_bus import MessageBus
from conductor.bus.topics import PeerTopics, SessionTopics
from conductor.core.clock import LoopTimerScheduler, TimerScheduler
from conductor.core.component import Component, ComponentMetadata, ComponentType
from conductor.core.config import DEFAULT_CONFIG, ArbitrationConfig
from conductor.core.errors import AcknowledgementFailure, ConnectionUnavailable, StaleOrdering
from conductor.core.signals import Message
from conductor.peer.clock_sync import ClockSync, StaticClockSync, format_time_ago, to_local_time
from conductor.peer.dispatcher import CommandDispatcher
from conductor.peer.notifications import NotificationCategory, NotificationScheduler
from conductor.peer.session import ArbitrationSession
from conductor.peer.state import AnyRequestState
from conductor.peer.state_machine import LocalArbitrationStateMachine

logger = structlog.get_logger()

SESSION_EVENTS = frozenset({
    BroadcastEvent.CONTROLLER_CLIENT_CHANGE,
    BroadcastEvent.CONTROLLER_REQUESTS_UPDATE,
    BroadcastEvent.CONTROLLER_REQUEST_DENIED,
})

PEER_NOTIFICATIONS = {
    BroadcastEvent.CONTROLLER_REQUEST_RECEIVED: NotificationCategory.REQUEST_RECEIVED,
    BroadcastEvent.CONTROLLER_OFFER_RECEIVED: NotificationCategory.OFFER_RECEIVED,
    BroadcastEvent.CONTROLLER_OFFER_SENT: NotificationCategory.OFFER_SENT,
    BroadcastEvent.CONTROLLER_OFFER_ACCEPTED: NotificationCategory.OFFER_ACCEPTED,
    BroadcastEvent.CONTROLLER_OFFER_DECLINED: NotificationCategory.OFFER_DECLINED,
}


class PeerClient(Component):
    """A session member with its own mirror, request state and alerts."""

    def __init__(
        self,
        client_id: str,
        display_name: str | None = None,
        config: ArbitrationConfig = DEFAULT_CONFIG,
        timers: TimerScheduler | None = None,
        clock_sync: ClockSync | None = None,
        message_bus: MessageBus | None = None,
    ) -> None:
        metadata = ComponentMetadata(
            name=client_id,
            display_name=display_name or client_id,
            type=ComponentType.PEER,
            subscribed_topics=frozenset([str(PeerTopics.all_controller_events(client_id))]),
        )
        super().__init__(metadata, message_bus)
        self._log = logger.bind(component="peer", client_id=client_id)
        self._client_id = client_id
        self._display_name = display_name
        self._config = config
        self._timers = timers or LoopTimerScheduler()
        self._clock_sync = clock_sync or StaticClockSync()

        self._state_machine = LocalArbitrationStateMachine(client_id, self._timers, config)
        self._notifications = NotificationScheduler(
            self._timers, config, is_controller=self._state_machine.is_controller
        )
        self._session: ArbitrationSession | None = None
        self._dispatcher: CommandDispatcher | None = None
        self._session_subscription: str | None = None
        # Session broadcasts that arrive between subscribing and seeding
        self._early: list[Message] | None = None

        self._state_machine.add_controller_listener(self._on_controller_changed)
        self._state_machine.add_state_listener(self._on_state_changed)

    # --- Properties ---

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def state_machine(self) -> LocalArbitrationStateMachine:
        return self._state_machine

    @property
    def notifications(self) -> NotificationScheduler:
        return self._notifications

    @property
    def clock_sync(self) -> ClockSync:
        return self._clock_sync

    @property
    def session(self) -> ArbitrationSession:
        if self._session is None:
            self._session = ArbitrationSession(
                self._client_id, self._require_bus(), self._config.ack_timeout_seconds
            )
        return self._session

    @property
    def dispatcher(self) -> CommandDispatcher:
        if self._dispatcher is None:
            self._dispatcher = CommandDispatcher(
                self.session, self._state_machine, self._notifications
            )
        return self._dispatcher

    @property
    def session_id(self) -> str | None:
        return self._session.session_id if self._session else None

    @property
    def is_controller(self) -> bool:
        return self._state_machine.is_controller()

    @property
    def request_state(self) -> AnyRequestState:
        return self._state_machine.current_state()

    @property
    def current_offer(self) -> ControllerOfferReceived | None:
        """The offer waiting for an answer, while its alert is visible."""
        notification = self._notifications.get(NotificationCategory.OFFER_RECEIVED)
        return notification.payload if notification.visible else None

    # --- Connection and membership ---

    def connect(self) -> None:
        self.session.connect()

    async def disconnect(self) -> None:
        await self._drop_session_subscription()
        self.session.disconnect()
        self._state_machine.reset()
        self._notifications.reset()

    async def join(self, session_id: str) -> Acknowledgement:
        """
        Join a session and seed the mirror from the returned snapshot.

        Raises:
            ConnectionUnavailable: not connected
            AcknowledgementFailure: the coordinator refused the join
        """
        session = self.session
        if not session.connected:
            raise ConnectionUnavailable(Intent.JOIN_SESSION)

        await self._drop_session_subscription()
        self._early = []
        self._session_subscription = await self.subscribe(
            str(SessionTopics.all_controller_events(session_id))
        )

        ack = await session.join(session_id, self._display_name)
        if not ack.success:
            await self._drop_session_subscription()
            raise AcknowledgementFailure(Intent.JOIN_SESSION, ack)

        self._state_machine.seed(SessionArbitrationState.model_validate(ack.data["state"]))
        early, self._early = self._early or [], None
        for message in early:
            self._apply_session_broadcast(message)
        return ack

    async def leave(self) -> Acknowledgement:
        ack = await self.session.leave()
        if not ack.success:
            raise AcknowledgementFailure(Intent.LEAVE_SESSION, ack)
        await self._drop_session_subscription()
        self._state_machine.reset()
        self._notifications.reset()
        return ack

    async def _drop_session_subscription(self) -> None:
        if self._session_subscription is not None:
            await self.unsubscribe(self._session_subscription)
            self._session_subscription = None
        self._early = None

    # --- Broadcast handling ---

    async def handle_event(self, message: Message) -> None:
        event = message.event_name
        if event in SESSION_EVENTS:
            if self._early is not None:
                self._early.append(message)
                return
            self._apply_session_broadcast(message)
            return

        category = PEER_NOTIFICATIONS.get(event)
        if category is None:
            self._log.debug("event_ignored", event_name=event)
            return
        try:
            payload = parse_broadcast(event, message.payload)
        except ValidationError:
            self._log.warning("malformed_broadcast", event_name=event)
            return
        self._notifications.on_event(category, payload)

    def _apply_session_broadcast(self, message: Message) -> None:
        try:
            self._state_machine.apply_broadcast(message.event_name, message.payload)
        except StaleOrdering as exc:
            self._log.info(
                "stale_broadcast_dropped",
                event_name=exc.event,
                received_epoch=exc.received_epoch,
                current_epoch=exc.current_epoch,
            )

    def _on_controller_changed(self, previous: str | None, current: str | None) -> None:
        self._notifications.reset()
        self._notifications.project_request_state(self._state_machine.current_state())

    def _on_state_changed(self, old: AnyRequestState, new: AnyRequestState) -> None:
        self._notifications.project_request_state(new)

    # --- Views ---

    def pending_request_views(self) -> list[dict[str, Any]]:
        """Pending requests with their display age, in arrival order."""
        now = self._timers.now()
        return [
            {
                "client_id": request.client_id,
                "requester_name": request.requester_name,
                "age": format_time_ago(to_local_time(request.request_time, self._clock_sync), now),
            }
            for request in self._state_machine.pending_requests
        ]

    def describe(self) -> dict[str, Any]:
        """Current view of this peer, for logging and diagnostics."""
        return {
            "client_id": self._client_id,
            "session_id": self.session_id,
            "controller_client_id": self._state_machine.controller_client_id,
            "is_controller": self.is_controller,
            "request_state": self.request_state.status.value,
            "epoch": self._state_machine.epoch,
            "pending": [r.client_id for r in self._state_machine.pending_requests],
            "notifications": sorted(c.value for c in self._notifications.active_categories()),
        }
