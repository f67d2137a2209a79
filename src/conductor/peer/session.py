"""
Arbitration session handle.

Wraps the peer's connection to the coordinator: whether it is connected,
which session it belongs to, and the acknowledged request/reply exchange
used for every intent. Passed explicitly to the dispatcher instead of
living in ambient module state.
"""

from typing import Any

import structlog
from ulid import ULID

from conductor.arbitration.models import Acknowledgement, Intent, IntentPayload
from conductor.bus.message_bus import MessageBus, RequestTimeout
from conductor.bus.topics import CoordinatorTopics, PeerTopics
from conductor.core.errors import ConnectionUnavailable, SessionNotInitialized
from conductor.core.signals import Message

logger = structlog.get_logger()


class ArbitrationSession:
    """One peer's connection to the coordinator."""

    def __init__(self, client_id: str, bus: MessageBus, ack_timeout: float = 5.0) -> None:
        self._client_id = client_id
        self._bus = bus
        self._ack_timeout = ack_timeout
        self._connected = False
        self._session_id: str | None = None
        self._log = logger.bind(component="arbitration_session", client_id=client_id)

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def connect(self) -> None:
        self._connected = True
        self._log.info("connected")

    def disconnect(self) -> None:
        """Drop the connection; the session id is forgotten with it."""
        self._connected = False
        self._session_id = None
        self._log.info("disconnected")

    def ensure_ready(self, intent: str) -> str:
        """
        Check the local preconditions for sending ``intent``.

        Returns:
            The current session id

        Raises:
            ConnectionUnavailable: not connected
            SessionNotInitialized: connected but no session assigned
        """
        if not self._connected:
            raise ConnectionUnavailable(intent)
        if not self._session_id:
            raise SessionNotInitialized(intent)
        return self._session_id

    async def send(self, intent: Intent | str, **fields: Any) -> Acknowledgement:
        """
        Send an intent and wait for its acknowledgement.

        A missing reply within the ack timeout yields a failed
        acknowledgement with ``error="timeout"`` rather than an exception.
        """
        if not self._connected:
            raise ConnectionUnavailable(str(intent))

        correlation_id = str(ULID())
        request = Message.request(
            str(CoordinatorTopics.intent(str(intent))),
            self._client_id,
            IntentPayload(**fields).model_dump(exclude_none=True),
            reply_to=str(PeerTopics.ack(self._client_id, correlation_id)),
            correlation_id=correlation_id,
        )

        self._log.debug("intent_sent", intent=str(intent), correlation_id=request.correlation_id)
        try:
            reply = await self._bus.request(request, timeout=self._ack_timeout)
        except RequestTimeout:
            self._log.warning("intent_timed_out", intent=str(intent))
            return Acknowledgement.failed("timeout")

        ack = Acknowledgement.model_validate(reply.payload)
        self._log.debug("intent_acknowledged", intent=str(intent), success=ack.success)
        return ack

    async def join(self, session_id: str, display_name: str | None = None) -> Acknowledgement:
        """Join a session; the session id is only kept when the coordinator accepts."""
        ack = await self.send(Intent.JOIN_SESSION, session_id=session_id, display_name=display_name)
        if ack.success:
            self._session_id = session_id
            self._log.info("session_joined", session_id=session_id)
        return ack

    async def leave(self) -> Acknowledgement:
        session_id = self.ensure_ready(Intent.LEAVE_SESSION)
        ack = await self.send(Intent.LEAVE_SESSION, session_id=session_id)
        if ack.success:
            self._session_id = None
            self._log.info("session_left", session_id=session_id)
        return ack
