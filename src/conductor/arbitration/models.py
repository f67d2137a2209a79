"""
Wire and domain models for controller arbitration.

Intents flow from a peer to the coordinator and are answered with an
``Acknowledgement``. Broadcasts flow from the coordinator to peers and
are never acknowledged. State-bearing broadcasts carry the session
epoch they were produced at.
"""

from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

# Ids become topic segments, so they may not contain separators or wildcards.
ClientId = Annotated[str, StringConstraints(min_length=1, pattern=r"^[^.*#\s]+$")]
SessionId = Annotated[str, StringConstraints(min_length=1, pattern=r"^[^.*#\s]+$")]


class Intent(StrEnum):
    """Acknowledged intents a peer can send to the coordinator."""

    JOIN_SESSION = "join_session"
    LEAVE_SESSION = "leave_session"
    REQUEST_CONTROLLER = "request_controller"
    CANCEL_CONTROLLER_REQUEST = "cancel_controller_request"
    APPROVE_CONTROLLER_REQUEST = "approve_controller_request"
    DENY_CONTROLLER_REQUEST = "deny_controller_request"
    OFFER_CONTROLLER = "offer_controller"
    ACCEPT_CONTROLLER_OFFER = "accept_controller_offer"
    DECLINE_CONTROLLER_OFFER = "decline_controller_offer"


class BroadcastEvent(StrEnum):
    """Events the coordinator publishes."""

    # Session-wide, state-bearing
    CONTROLLER_CLIENT_CHANGE = "controller_client_change"
    CONTROLLER_REQUESTS_UPDATE = "controller_requests_update"
    CONTROLLER_REQUEST_DENIED = "controller_request_denied"

    # Peer-directed
    CONTROLLER_REQUEST_RECEIVED = "controller_request_received"
    CONTROLLER_OFFER_RECEIVED = "controller_offer_received"
    CONTROLLER_OFFER_SENT = "controller_offer_sent"
    CONTROLLER_OFFER_ACCEPTED = "controller_offer_accepted"
    CONTROLLER_OFFER_DECLINED = "controller_offer_declined"


class ControllerRequest(BaseModel):
    """A pending request to become controller."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    client_id: ClientId
    requester_name: str
    request_time: float  # coordinator wall clock, ms


class ControllerOffer(BaseModel):
    """An in-flight offer of the controller role to one peer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    offerer_client_id: ClientId
    offerer_name: str
    target_client_id: ClientId
    target_name: str
    offered_at: float = 0.0  # coordinator wall clock, ms


class SessionArbitrationState(BaseModel):
    """
    Snapshot of a session's arbitration truth at one epoch.

    The coordinator hands one out on join; each peer keeps one as its
    read-only mirror and replaces it as broadcasts arrive.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: SessionId
    controller_client_id: ClientId | None = None
    pending_requests: tuple[ControllerRequest, ...] = Field(default_factory=tuple)
    epoch: int = Field(default=0, ge=0)

    def has_pending(self, client_id: str) -> bool:
        return any(r.client_id == client_id for r in self.pending_requests)

    def is_controller(self, client_id: str) -> bool:
        return self.controller_client_id is not None and self.controller_client_id == client_id


class IntentPayload(BaseModel):
    """Arguments of an intent; which fields are required depends on the intent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str | None = None
    requester_client_id: str | None = None
    target_client_id: str | None = None
    offerer_client_id: str | None = None
    display_name: str | None = None


class Acknowledgement(BaseModel):
    """The coordinator's answer to an intent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    message: str | None = None
    error: str | None = None
    epoch: int | None = None  # session epoch after the intent was applied
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str | None = None, *, epoch: int | None = None, **data: Any) -> "Acknowledgement":
        return cls(success=True, message=message, epoch=epoch, data=data)

    @classmethod
    def failed(cls, error: str) -> "Acknowledgement":
        return cls(success=False, error=error)


# --- Broadcast payloads ---


class ControllerClientChange(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    controller_client_id: ClientId | None
    epoch: int = Field(ge=0)


class ControllerRequestsUpdate(BaseModel):
    """Full pending queue plus the controller it was computed against."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pending_requests: tuple[ControllerRequest, ...] = Field(default_factory=tuple)
    controller_client_id: ClientId | None = None
    epoch: int = Field(ge=0)


class ControllerRequestDenied(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    requester_client_id: ClientId
    epoch: int = Field(ge=0)


class ControllerRequestReceived(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    requester_client_id: ClientId
    requester_name: str
    request_time: float


class ControllerOfferReceived(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    offerer_client_id: ClientId
    offerer_name: str
    target_client_id: ClientId | None = None
    target_name: str | None = None


class ControllerOfferSent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    target_client_id: ClientId
    target_name: str


class ControllerOfferAccepted(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    accepter_client_id: ClientId | None = None
    accepter_name: str


class ControllerOfferDeclined(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    decliner_client_id: ClientId | None = None
    decliner_name: str


BroadcastPayload = (
    ControllerClientChange
    | ControllerRequestsUpdate
    | ControllerRequestDenied
    | ControllerRequestReceived
    | ControllerOfferReceived
    | ControllerOfferSent
    | ControllerOfferAccepted
    | ControllerOfferDeclined
)

BROADCAST_MODELS: dict[BroadcastEvent, type[BaseModel]] = {
    BroadcastEvent.CONTROLLER_CLIENT_CHANGE: ControllerClientChange,
    BroadcastEvent.CONTROLLER_REQUESTS_UPDATE: ControllerRequestsUpdate,
    BroadcastEvent.CONTROLLER_REQUEST_DENIED: ControllerRequestDenied,
    BroadcastEvent.CONTROLLER_REQUEST_RECEIVED: ControllerRequestReceived,
    BroadcastEvent.CONTROLLER_OFFER_RECEIVED: ControllerOfferReceived,
    BroadcastEvent.CONTROLLER_OFFER_SENT: ControllerOfferSent,
    BroadcastEvent.CONTROLLER_OFFER_ACCEPTED: ControllerOfferAccepted,
    BroadcastEvent.CONTROLLER_OFFER_DECLINED: ControllerOfferDeclined,
}


def parse_broadcast(event: str, payload: Any) -> BroadcastPayload:
    """
    Validate a broadcast payload for its event name.

    Accepts either the model instance itself or a plain mapping.

    Raises:
        ValueError: for an unknown event name
        pydantic.ValidationError: for a malformed payload
    """
    try:
        model = BROADCAST_MODELS[BroadcastEvent(event)]
    except ValueError:
        raise ValueError(f"Unknown broadcast event: {event}") from None
    if isinstance(payload, model):
        return payload  # type: ignore[return-value]
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return model.model_validate(payload)  # type: ignore[return-value]
