"""Authoritative controller arbitration: models, sessions, coordinator."""

from conductor.arbitration.coordinator import ArbitrationCoordinator
from conductor.arbitration.models import (
    Acknowledgement,
    BroadcastEvent,
    ControllerOffer,
    ControllerRequest,
    Intent,
    SessionArbitrationState,
)
from conductor.arbitration.sessions import SessionRecord, SessionRegistry

__all__ = [
    "Acknowledgement",
    "ArbitrationCoordinator",
    "BroadcastEvent",
    "ControllerOffer",
    "ControllerRequest",
    "Intent",
    "SessionArbitrationState",
    "SessionRecord",
    "SessionRegistry",
]
