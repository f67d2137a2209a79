"""
LocalRequestState: the single tagged variant describing a peer's own
controller request.

Exactly one variant is active at a time. Expiring variants carry the
timestamp (ms) at which they fall back to ``Idle``.
"""

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class RequestStatus(StrEnum):
    """Discriminator for ``LocalRequestState``."""

    IDLE = "idle"
    PENDING = "pending"
    SENT = "sent"
    RESULT = "result"
    ERROR = "error"
    CANCELLED = "cancelled"


class ResultKind(StrEnum):
    """Outcome carried by a ``Result`` state."""

    APPROVED = "approved"
    DENIED = "denied"


class _State(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Idle(_State):
    """No request in flight."""

    status: Literal[RequestStatus.IDLE] = RequestStatus.IDLE


class Pending(_State):
    """Request sent, acknowledgement not yet received."""

    status: Literal[RequestStatus.PENDING] = RequestStatus.PENDING
    since: float
    cancelling: bool = False  # a cancel was issued before the request was acknowledged


class Sent(_State):
    """Request accepted by the coordinator and waiting in its queue."""

    status: Literal[RequestStatus.SENT] = RequestStatus.SENT
    since: float
    epoch: int | None = None  # session epoch the request was queued at
    cancelling: bool = False  # a cancel intent is awaiting its ack


class Result(_State):
    status: Literal[RequestStatus.RESULT] = RequestStatus.RESULT
    kind: ResultKind
    until: float


class Error(_State):
    status: Literal[RequestStatus.ERROR] = RequestStatus.ERROR
    until: float
    reason: str | None = None


class Cancelled(_State):
    status: Literal[RequestStatus.CANCELLED] = RequestStatus.CANCELLED
    until: float


AnyRequestState = Idle | Pending | Sent | Result | Error | Cancelled

# For validating a serialized state, e.g. TypeAdapter(LocalRequestState)
LocalRequestState = Annotated[AnyRequestState, Field(discriminator="status")]

IDLE = Idle()


def is_expiring(state: BaseModel) -> bool:
    """True for states that fall back to ``Idle`` on their own."""
    return isinstance(state, Result | Error | Cancelled)
