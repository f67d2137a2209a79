"""
conductor

Controller-role arbitration for shared playback sessions.

One peer at a time holds the controller role. An authoritative
coordinator owns that identity and the pending-request queue; every
peer keeps a read-only mirror and converges on it from broadcasts.

- Coordinator → ArbitrationCoordinator on the MessageBus
- Peer → PeerClient (state machine, dispatcher, notifications)
"""

__version__ = "0.1.0"

from conductor.arbitration.coordinator import ArbitrationCoordinator
from conductor.arbitration.models import Acknowledgement, SessionArbitrationState
from conductor.core.config import ArbitrationConfig
from conductor.peer.client import PeerClient
from conductor.peer.state import LocalRequestState, RequestStatus, ResultKind

__all__ = [
    "__version__",
    "Acknowledgement",
    "ArbitrationConfig",
    "ArbitrationCoordinator",
    "LocalRequestState",
    "PeerClient",
    "RequestStatus",
    "ResultKind",
    "SessionArbitrationState",
]
