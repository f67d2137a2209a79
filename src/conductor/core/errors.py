"""
Error taxonomy for controller arbitration.

Every error here is local to the peer (or coordinator handler) that hit
it and recoverable: none of them is fatal to the session, and none of
them changes another peer's view. Nothing is retried automatically.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conductor.arbitration.models import Acknowledgement


class ArbitrationError(Exception):
    """Base class for arbitration errors."""


class ConnectionUnavailable(ArbitrationError):
    """The peer has no established connection; nothing was sent."""

    def __init__(self, intent: str) -> None:
        super().__init__(f"Cannot send {intent}: connection not established")
        self.intent = intent


class SessionNotInitialized(ArbitrationError):
    """The peer has not been assigned a session id yet; nothing was sent."""

    def __init__(self, intent: str) -> None:
        super().__init__(f"Cannot send {intent}: session not initialized")
        self.intent = intent


class AcknowledgementFailure(ArbitrationError):
    """The coordinator rejected the intent or did not answer in time."""

    def __init__(self, intent: str, ack: "Acknowledgement") -> None:
        super().__init__(f"{intent} failed: {ack.error or 'unknown error'}")
        self.intent = intent
        self.ack = ack

    @property
    def timed_out(self) -> bool:
        return self.ack.error == "timeout"


class StaleOrdering(ArbitrationError):
    """A broadcast arrived with an epoch older than one already applied."""

    def __init__(self, event: str, received_epoch: int, current_epoch: int) -> None:
        super().__init__(
            f"Stale {event}: epoch {received_epoch} < applied epoch {current_epoch}"
        )
        self.event = event
        self.received_epoch = received_epoch
        self.current_epoch = current_epoch


class IntentRejected(ArbitrationError):
    """Coordinator-side validation failure; becomes a failed acknowledgement."""
