"""Core abstractions shared by the coordinator and peers."""

from conductor.core.clock import LoopTimerScheduler, TimerScheduler, VirtualTimerScheduler
from conductor.core.component import Component, ComponentMetadata, ComponentState, ComponentType
from conductor.core.config import ArbitrationConfig, load_config
from conductor.core.errors import (
    AcknowledgementFailure,
    ArbitrationError,
    ConnectionUnavailable,
    IntentRejected,
    SessionNotInitialized,
    StaleOrdering,
)
from conductor.core.signals import Message, MessageType

__all__ = [
    "AcknowledgementFailure",
    "ArbitrationConfig",
    "ArbitrationError",
    "Component",
    "ComponentMetadata",
    "ComponentState",
    "ComponentType",
    "ConnectionUnavailable",
    "IntentRejected",
    "LoopTimerScheduler",
    "Message",
    "MessageType",
    "SessionNotInitialized",
    "StaleOrdering",
    "TimerScheduler",
    "VirtualTimerScheduler",
    "load_config",
]
