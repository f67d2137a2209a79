"""Per-peer arbitration: mirror state machine, dispatcher, notifications."""

from conductor.peer.client import PeerClient
from conductor.peer.clock_sync import ClockSync, StaticClockSync, format_time_ago
from conductor.peer.dispatcher import CommandDispatcher
from conductor.peer.notifications import NotificationCategory, NotificationScheduler
from conductor.peer.session import ArbitrationSession
from conductor.peer.state import (
    Cancelled,
    Error,
    Idle,
    LocalRequestState,
    Pending,
    RequestStatus,
    Result,
    ResultKind,
    Sent,
)
from conductor.peer.state_machine import LocalArbitrationStateMachine

__all__ = [
    "ArbitrationSession",
    "Cancelled",
    "ClockSync",
    "CommandDispatcher",
    "Error",
    "Idle",
    "LocalArbitrationStateMachine",
    "LocalRequestState",
    "NotificationCategory",
    "NotificationScheduler",
    "PeerClient",
    "Pending",
    "RequestStatus",
    "Result",
    "ResultKind",
    "Sent",
    "StaticClockSync",
    "format_time_ago",
]
