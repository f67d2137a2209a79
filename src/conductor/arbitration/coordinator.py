"""
ArbitrationCoordinator: authoritative owner of controller identity.

Serializes every arbitration intent for every session, validates it
against the session record, mutates the record, and broadcasts the
result. Each transition advances the session epoch once; all broadcasts
produced by one transition carry that epoch, and the controller change
is always published before the queue update that goes with it.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import anyio
import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from conductor.arbitration.models import (
    Acknowledgement,
    BroadcastEvent,
    ClientId,
    ControllerClientChange,
    ControllerOffer,
    ControllerOfferAccepted,
    ControllerOfferDeclined,
    ControllerOfferReceived,
    ControllerOfferSent,
    ControllerRequest,
    ControllerRequestDenied,
    ControllerRequestReceived,
    ControllerRequestsUpdate,
    Intent,
    IntentPayload,
    SessionId,
)
from conductor.arbitration.sessions import Member, SessionRecord, SessionRegistry
from conductor.bus.topics import CoordinatorTopics, PeerTopics, SessionTopics
from conductor.core.clock import LoopTimerScheduler, TimerScheduler
from conductor.core.component import Component, ComponentMetadata, ComponentType
from conductor.core.config import DEFAULT_CONFIG, ArbitrationConfig
from conductor.core.errors import IntentRejected
from conductor.core.signals import Message

logger = structlog.get_logger()

COORDINATOR_NAME = "coordinator"

_SESSION_ID = TypeAdapter(SessionId)
_CLIENT_ID = TypeAdapter(ClientId)

IntentHandler = Callable[[str, IntentPayload], Awaitable[Acknowledgement]]


@dataclass
class CoordinatorStats:
    """Counters for intents processed by the coordinator."""

    intents_received: int = 0
    intents_accepted: int = 0
    intents_rejected: int = 0
    controller_changes: int = 0
    requests_expired: int = 0


class ArbitrationCoordinator(Component):
    """
    Owns the controller identity and pending-request queue per session.

    Intent flow:
    1. Receive: intents arrive as REQUEST messages on coordinator.intent.*
    2. Validate: the sender (message source) is checked against the session
    3. Apply: the session record is mutated and the epoch advanced
    4. Broadcast: resulting state goes to the session and affected peers
    5. Acknowledge: the sender gets an Acknowledgement on its reply topic
    """

    def __init__(
        self,
        config: ArbitrationConfig = DEFAULT_CONFIG,
        timers: TimerScheduler | None = None,
    ) -> None:
        metadata = ComponentMetadata(
            name=COORDINATOR_NAME,
            display_name="Arbitration Coordinator",
            type=ComponentType.COORDINATOR,
            subscribed_topics=frozenset([str(CoordinatorTopics.ALL_INTENTS)]),
        )
        super().__init__(metadata)
        self._config = config
        self._timers = timers or LoopTimerScheduler()
        self._sessions = SessionRegistry()
        self._lock = anyio.Lock()
        self._coordinator_stats = CoordinatorStats()
        self._handlers: dict[Intent, IntentHandler] = {
            Intent.JOIN_SESSION: self.join_session,
            Intent.LEAVE_SESSION: self.leave_session,
            Intent.REQUEST_CONTROLLER: self.request_controller,
            Intent.CANCEL_CONTROLLER_REQUEST: self.cancel_controller_request,
            Intent.APPROVE_CONTROLLER_REQUEST: self.approve_controller_request,
            Intent.DENY_CONTROLLER_REQUEST: self.deny_controller_request,
            Intent.OFFER_CONTROLLER: self.offer_controller,
            Intent.ACCEPT_CONTROLLER_OFFER: self.accept_controller_offer,
            Intent.DECLINE_CONTROLLER_OFFER: self.decline_controller_offer,
        }

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def coordinator_stats(self) -> CoordinatorStats:
        return self._coordinator_stats

    def controller_of(self, session_id: str) -> str | None:
        record = self._sessions.get(session_id)
        return record.controller_client_id if record else None

    def pending_of(self, session_id: str) -> tuple[ControllerRequest, ...]:
        record = self._sessions.get(session_id)
        return record.pending_list() if record else ()

    # --- Bus entry point ---

    async def handle_request(self, message: Message) -> None:
        """Apply an intent and reply with its acknowledgement."""
        ack = await self.apply_intent(message.event_name, message.source, message.payload)
        if message.reply_to:
            await self.publish(message.reply(self.name, ack))

    async def apply_intent(self, intent: str, client_id: str, payload: Any) -> Acknowledgement:
        """
        Validate and apply one intent on behalf of ``client_id``.

        Never raises for bad input: rejections become failed acknowledgements.
        """
        self._coordinator_stats.intents_received += 1
        try:
            handler = self._handlers[Intent(intent)]
        except ValueError:
            return self._reject(intent, client_id, f"Unknown intent: {intent}")

        try:
            if isinstance(payload, BaseModel):
                payload = payload.model_dump()
            args = IntentPayload.model_validate(payload or {})
        except ValidationError:
            return self._reject(intent, client_id, "Invalid intent payload")

        async with self._lock:
            try:
                ack = await handler(client_id, args)
            except IntentRejected as exc:
                return self._reject(intent, client_id, str(exc))

        self._coordinator_stats.intents_accepted += 1
        self._log.info("intent_applied", intent=intent, client_id=client_id, epoch=ack.epoch)
        return ack

    def _reject(self, intent: str, client_id: str, error: str) -> Acknowledgement:
        self._coordinator_stats.intents_rejected += 1
        self._log.info("intent_rejected", intent=intent, client_id=client_id, error=error)
        return Acknowledgement.failed(error)

    # --- Validation helpers ---

    def _require_session(self, args: IntentPayload) -> SessionRecord:
        if not args.session_id:
            raise IntentRejected("No sessionId provided")
        record = self._sessions.get(args.session_id)
        if record is None:
            raise IntentRejected("Session not found")
        return record

    @staticmethod
    def _require_member(record: SessionRecord, client_id: str) -> None:
        if not record.is_member(client_id):
            raise IntentRejected("Client not found in session")

    @staticmethod
    def _require_controller(record: SessionRecord, client_id: str, action: str) -> None:
        if record.controller_client_id != client_id:
            raise IntentRejected(f"Only the current controller can {action}")

    @staticmethod
    def _require_arg(value: str | None, name: str) -> str:
        if not value:
            raise IntentRejected(f"No {name} provided")
        return value

    # --- Broadcast helpers ---

    async def _broadcast(self, record: SessionRecord, event: BroadcastEvent, payload: BaseModel) -> None:
        topic = SessionTopics.controller_event(record.session_id, event)
        await self.emit_event(str(topic), payload)

    async def _notify_peer(self, client_id: str, event: BroadcastEvent, payload: BaseModel) -> None:
        topic = PeerTopics.controller_event(client_id, event)
        await self.emit_event(str(topic), payload)

    async def _broadcast_controller(self, record: SessionRecord) -> None:
        await self._broadcast(
            record,
            BroadcastEvent.CONTROLLER_CLIENT_CHANGE,
            ControllerClientChange(
                controller_client_id=record.controller_client_id,
                epoch=record.epoch,
            ),
        )

    async def _broadcast_queue(self, record: SessionRecord) -> None:
        await self._broadcast(
            record,
            BroadcastEvent.CONTROLLER_REQUESTS_UPDATE,
            ControllerRequestsUpdate(
                pending_requests=record.pending_list(),
                controller_client_id=record.controller_client_id,
                epoch=record.epoch,
            ),
        )

    def _set_controller(self, record: SessionRecord, client_id: str | None) -> int:
        """Transfer the role; pending offers die with the old controller."""
        previous = record.controller_client_id
        record.controller_client_id = client_id
        record.offers.clear()
        if client_id is not None:
            record.pending_requests.pop(client_id, None)
        self._coordinator_stats.controller_changes += 1
        epoch = record.advance_epoch()
        self._log.info(
            "controller_changed",
            session_id=record.session_id,
            previous=previous,
            controller_client_id=client_id,
            epoch=epoch,
        )
        return epoch

    async def _sweep(self, record: SessionRecord) -> None:
        """Drop expired requests and offers before applying an intent."""
        now = self._timers.now()
        expired = record.expire_requests(now, self._config.request_timeout_seconds * 1000)
        if self._config.offer_timeout_seconds is not None:
            record.expire_offers(now, self._config.offer_timeout_seconds * 1000)
        if expired:
            self._coordinator_stats.requests_expired += len(expired)
            record.advance_epoch()
            self._log.info("requests_expired", session_id=record.session_id, client_ids=expired)
            await self._broadcast_queue(record)

    # --- Membership ---

    async def join_session(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        """Add a member; the first member of a controller-less session takes the role."""
        session_id = self._require_arg(args.session_id, "sessionId")
        try:
            _SESSION_ID.validate_python(session_id)
            _CLIENT_ID.validate_python(client_id)
        except ValidationError:
            raise IntentRejected("Invalid sessionId or clientId") from None

        record = self._sessions.get_or_create(session_id)
        await self._sweep(record)
        name = args.display_name or record.name_of(client_id)
        if client_id in record.members:
            record.members[client_id].display_name = name
        else:
            record.members[client_id] = Member(client_id=client_id, display_name=name)
        self._log.info("member_joined", session_id=session_id, client_id=client_id)

        if record.controller_client_id is None:
            self._set_controller(record, client_id)
            await self._broadcast_controller(record)

        return Acknowledgement.ok(epoch=record.epoch, state=record.snapshot())

    async def leave_session(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        """Remove a member, its pending request and any offers it is part of."""
        record = self._require_session(args)
        self._require_member(record, client_id)

        del record.members[client_id]
        record.drop_offers_involving(client_id)
        self._log.info("member_left", session_id=record.session_id, client_id=client_id)

        if not record.members:
            self._sessions.delete(record.session_id)
            return Acknowledgement.ok("Session closed")

        if record.controller_client_id == client_id:
            self._set_controller(record, None)
            await self._broadcast_controller(record)
            await self._broadcast_queue(record)
        elif record.pending_requests.pop(client_id, None) is not None:
            record.advance_epoch()
            await self._broadcast_queue(record)

        return Acknowledgement.ok(epoch=record.epoch)

    # --- Requests ---

    async def request_controller(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        record = self._require_session(args)
        await self._sweep(record)
        self._require_member(record, client_id)

        if record.controller_client_id == client_id:
            raise IntentRejected("You are already the controller")
        if client_id in record.pending_requests:
            raise IntentRejected("You already have a pending request")

        if record.controller_client_id is None:
            self._set_controller(record, client_id)
            await self._broadcast_controller(record)
            await self._broadcast_queue(record)
            return Acknowledgement.ok("No controller present; role granted", epoch=record.epoch)

        request = ControllerRequest(
            client_id=client_id,
            requester_name=record.name_of(client_id),
            request_time=self._timers.now(),
        )
        record.pending_requests[client_id] = request
        record.advance_epoch()

        await self._notify_peer(
            record.controller_client_id,
            BroadcastEvent.CONTROLLER_REQUEST_RECEIVED,
            ControllerRequestReceived(
                requester_client_id=client_id,
                requester_name=request.requester_name,
                request_time=request.request_time,
            ),
        )
        await self._broadcast_queue(record)
        return Acknowledgement.ok("Request sent to current controller", epoch=record.epoch)

    async def cancel_controller_request(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        record = self._require_session(args)
        await self._sweep(record)
        self._require_member(record, client_id)

        if record.pending_requests.pop(client_id, None) is not None:
            record.advance_epoch()
            await self._broadcast_queue(record)
        return Acknowledgement.ok(epoch=record.epoch)

    async def approve_controller_request(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        requester = self._require_arg(args.requester_client_id, "requesterClientId")
        record = self._require_session(args)
        await self._sweep(record)
        self._require_controller(record, client_id, "approve requests")

        if requester not in record.pending_requests:
            raise IntentRejected("Request not found or expired")

        self._set_controller(record, requester)
        await self._broadcast_controller(record)
        await self._broadcast_queue(record)
        return Acknowledgement.ok(epoch=record.epoch)

    async def deny_controller_request(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        requester = self._require_arg(args.requester_client_id, "requesterClientId")
        record = self._require_session(args)
        await self._sweep(record)
        self._require_controller(record, client_id, "deny requests")

        if record.pending_requests.pop(requester, None) is None:
            raise IntentRejected("Request not found or expired")

        record.advance_epoch()
        await self._broadcast(
            record,
            BroadcastEvent.CONTROLLER_REQUEST_DENIED,
            ControllerRequestDenied(requester_client_id=requester, epoch=record.epoch),
        )
        await self._broadcast_queue(record)
        return Acknowledgement.ok(epoch=record.epoch)

    # --- Offers ---

    async def offer_controller(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        target = self._require_arg(args.target_client_id, "targetClientId")
        record = self._require_session(args)
        await self._sweep(record)
        self._require_controller(record, client_id, "offer controller role")

        if target == record.controller_client_id:
            raise IntentRejected("Target is already the controller")
        if not record.is_member(target):
            raise IntentRejected("Target is not in this session")

        offer = ControllerOffer(
            offerer_client_id=client_id,
            offerer_name=record.name_of(client_id),
            target_client_id=target,
            target_name=record.name_of(target),
            offered_at=self._timers.now(),
        )
        record.offers[(client_id, target)] = offer

        await self._notify_peer(
            target,
            BroadcastEvent.CONTROLLER_OFFER_RECEIVED,
            ControllerOfferReceived(
                offerer_client_id=offer.offerer_client_id,
                offerer_name=offer.offerer_name,
                target_client_id=offer.target_client_id,
                target_name=offer.target_name,
            ),
        )
        await self._notify_peer(
            client_id,
            BroadcastEvent.CONTROLLER_OFFER_SENT,
            ControllerOfferSent(target_client_id=target, target_name=offer.target_name),
        )
        return Acknowledgement.ok(f"Controller offer sent to {offer.target_name}", epoch=record.epoch)

    async def accept_controller_offer(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        offerer = self._require_arg(args.offerer_client_id, "offererClientId")
        record = self._require_session(args)
        await self._sweep(record)
        self._require_member(record, client_id)

        if record.controller_client_id != offerer or (offerer, client_id) not in record.offers:
            raise IntentRejected("Offer is no longer valid")

        accepter_name = record.name_of(client_id)
        self._set_controller(record, client_id)

        await self._notify_peer(
            offerer,
            BroadcastEvent.CONTROLLER_OFFER_ACCEPTED,
            ControllerOfferAccepted(accepter_client_id=client_id, accepter_name=accepter_name),
        )
        await self._broadcast_controller(record)
        await self._broadcast_queue(record)
        return Acknowledgement.ok(epoch=record.epoch)

    async def decline_controller_offer(self, client_id: str, args: IntentPayload) -> Acknowledgement:
        offerer = self._require_arg(args.offerer_client_id, "offererClientId")
        record = self._require_session(args)
        await self._sweep(record)
        self._require_member(record, client_id)

        if record.offers.pop((offerer, client_id), None) is not None:
            await self._notify_peer(
                offerer,
                BroadcastEvent.CONTROLLER_OFFER_DECLINED,
                ControllerOfferDeclined(
                    decliner_client_id=client_id,
                    decliner_name=record.name_of(client_id),
                ),
            )
            self._log.info(
                "offer_declined",
                session_id=record.session_id,
                offerer=offerer,
                decliner=client_id,
            )
        return Acknowledgement.ok(epoch=record.epoch)

    # --- Health ---

    def get_health(self) -> dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "intents_received": self._coordinator_stats.intents_received,
            "intents_rejected": self._coordinator_stats.intents_rejected,
            "controller_changes": self._coordinator_stats.controller_changes,
            "handler_errors": self.stats.handler_errors,
        }
