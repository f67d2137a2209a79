"""
Command dispatcher: user intents to acknowledged coordinator intents.

Every operation checks the local preconditions first (connected, session
assigned) and raises before anything is sent or mutated. A failed
acknowledgement raises ``AcknowledgementFailure``; nothing is retried.
"""

from typing import Any

import structlog

from conductor.arbitration.models import Acknowledgement, Intent
from conductor.core.errors import AcknowledgementFailure
from conductor.peer.notifications import NotificationCategory, NotificationScheduler
from conductor.peer.session import ArbitrationSession
from conductor.peer.state_machine import LocalArbitrationStateMachine

logger = structlog.get_logger()


class CommandDispatcher:
    """Translates user intents for one peer into coordinator intents."""

    def __init__(
        self,
        session: ArbitrationSession,
        state_machine: LocalArbitrationStateMachine,
        notifications: NotificationScheduler | None = None,
    ) -> None:
        self._session = session
        self._state_machine = state_machine
        self._notifications = notifications
        self._log = logger.bind(component="dispatcher", client_id=session.client_id)

    async def _dispatch(self, intent: Intent, **fields: Any) -> Acknowledgement:
        session_id = self._session.ensure_ready(intent)
        ack = await self._session.send(intent, session_id=session_id, **fields)
        if not ack.success:
            self._log.warning("intent_failed", intent=str(intent), error=ack.error)
            raise AcknowledgementFailure(intent, ack)
        return ack

    # --- Listener intents ---

    async def request_controller(self) -> Acknowledgement | None:
        """
        Ask the current controller for the role.

        Returns None without sending anything when a request is already in
        flight or queued, or this peer already holds the role.
        """
        session_id = self._session.ensure_ready(Intent.REQUEST_CONTROLLER)
        if not self._state_machine.begin_request():
            return None

        ack = await self._session.send(Intent.REQUEST_CONTROLLER, session_id=session_id)
        self._state_machine.ack_request(ack)
        if not ack.success:
            self._log.warning("intent_failed", intent=str(Intent.REQUEST_CONTROLLER), error=ack.error)
            raise AcknowledgementFailure(Intent.REQUEST_CONTROLLER, ack)
        return ack

    async def cancel_request(self) -> Acknowledgement:
        self._session.ensure_ready(Intent.CANCEL_CONTROLLER_REQUEST)
        marked = self._state_machine.begin_cancel()
        try:
            ack = await self._dispatch(Intent.CANCEL_CONTROLLER_REQUEST)
        except AcknowledgementFailure as exc:
            if marked:
                self._state_machine.ack_cancel(exc.ack)
            raise
        if marked:
            self._state_machine.ack_cancel(ack)
        return ack

    async def accept_offer(self, offerer_client_id: str) -> Acknowledgement:
        ack = await self._dispatch(
            Intent.ACCEPT_CONTROLLER_OFFER, offerer_client_id=offerer_client_id
        )
        self._dismiss_offer()
        return ack

    async def decline_offer(self, offerer_client_id: str) -> Acknowledgement:
        ack = await self._dispatch(
            Intent.DECLINE_CONTROLLER_OFFER, offerer_client_id=offerer_client_id
        )
        self._dismiss_offer()
        return ack

    # --- Controller intents ---

    async def approve_request(self, requester_client_id: str) -> Acknowledgement:
        return await self._dispatch(
            Intent.APPROVE_CONTROLLER_REQUEST, requester_client_id=requester_client_id
        )

    async def deny_request(self, requester_client_id: str) -> Acknowledgement:
        return await self._dispatch(
            Intent.DENY_CONTROLLER_REQUEST, requester_client_id=requester_client_id
        )

    async def offer_controller(self, target_client_id: str) -> Acknowledgement:
        return await self._dispatch(Intent.OFFER_CONTROLLER, target_client_id=target_client_id)

    def _dismiss_offer(self) -> None:
        if self._notifications is not None:
            self._notifications.dismiss(NotificationCategory.OFFER_RECEIVED)
