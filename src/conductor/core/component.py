"""
Base class for participants on the message bus.

Both the arbitration coordinator and every peer client are components:
they share one lifecycle, hold their own topic subscriptions, and keep
a failing handler from taking down the bus.
"""

from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from conductor.core.signals import Message, MessageType

if TYPE_CHECKING:
    from conductor.bus.message_bus import MessageBus

logger = structlog.get_logger()

MessageHandler = Callable[[Message], Coroutine[Any, Any, None]]


class ComponentType(Enum):
    COORDINATOR = auto()  # Authoritative arbitration owner
    PEER = auto()  # Session member with a local mirror


class ComponentState(Enum):
    """Lifecycle states for a component."""

    CREATED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


class ComponentMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    display_name: str
    type: ComponentType
    # Patterns subscribed with the default handler on start
    subscribed_topics: frozenset[str] = Field(default_factory=frozenset)


@dataclass
class ComponentStats:
    messages_received: int = 0
    messages_sent: int = 0
    handler_errors: int = 0


class Component:
    """
    A named participant on the bus with a start/stop lifecycle.

    Subclasses override ``handle_event`` and/or ``handle_request``; the
    default subscription handler routes each delivered message by type and
    logs (rather than propagates) anything those hooks raise. Lifecycle
    failures are different: they move the component to FAILED and re-raise.
    """

    def __init__(
        self,
        metadata: ComponentMetadata,
        message_bus: "MessageBus | None" = None,
    ) -> None:
        self.name = metadata.name
        self._metadata = metadata
        self._message_bus = message_bus
        self._component_state = ComponentState.CREATED
        self._stats = ComponentStats()
        self._subscriptions: dict[str, str] = {}
        self._log = logger.bind(component=metadata.name)

    @property
    def metadata(self) -> ComponentMetadata:
        return self._metadata

    @property
    def component_state(self) -> ComponentState:
        return self._component_state

    @property
    def stats(self) -> ComponentStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._component_state == ComponentState.RUNNING

    @property
    def message_bus(self) -> "MessageBus | None":
        return self._message_bus

    def set_message_bus(self, bus: "MessageBus") -> None:
        self._message_bus = bus

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._component_state not in (ComponentState.CREATED, ComponentState.STOPPED):
            raise RuntimeError(f"Cannot start component in state {self._component_state}")

        self._component_state = ComponentState.STARTING
        try:
            if self._message_bus:
                for topic in sorted(self._metadata.subscribed_topics):
                    await self.subscribe(topic)
            await self.on_start()
        except Exception:
            self._component_state = ComponentState.FAILED
            self._log.exception("component_start_failed")
            raise

        self._component_state = ComponentState.RUNNING
        self._log.info("component_started", type=self._metadata.type.name)

    async def stop(self) -> None:
        if self._component_state != ComponentState.RUNNING:
            return

        self._component_state = ComponentState.STOPPING
        try:
            await self.on_stop()
            for subscription_id in list(self._subscriptions):
                await self.unsubscribe(subscription_id)
        except Exception:
            self._component_state = ComponentState.FAILED
            self._log.exception("component_stop_failed")
            raise

        self._component_state = ComponentState.STOPPED
        self._log.info("component_stopped", **vars(self._stats))

    async def on_start(self) -> None:
        """Hook run after the default subscriptions are in place."""

    async def on_stop(self) -> None:
        """Hook run before subscriptions are dropped."""

    # --- Bus access ---

    def _require_bus(self) -> "MessageBus":
        if not self._message_bus:
            raise RuntimeError("No message bus configured")
        return self._message_bus

    async def subscribe(self, topic: str, handler: MessageHandler | None = None) -> str:
        """Subscribe to a pattern; defaults to the type-routing handler."""
        subscription_id = await self._require_bus().subscribe(topic, handler or self._handle_message)
        self._subscriptions[subscription_id] = str(topic)
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        if self._subscriptions.pop(subscription_id, None) is None:
            return
        if self._message_bus:
            await self._message_bus.unsubscribe(subscription_id)

    async def publish(self, message: Message) -> int:
        delivered = await self._require_bus().publish(message)
        self._stats.messages_sent += 1
        return delivered

    async def emit_event(self, topic: str, payload: Any) -> int:
        """Publish an EVENT from this component."""
        return await self.publish(Message.event(str(topic), self.name, payload))

    # --- Inbound ---

    async def _handle_message(self, message: Message) -> None:
        self._stats.messages_received += 1
        try:
            match message.type:
                case MessageType.EVENT:
                    await self.handle_event(message)
                case MessageType.REQUEST:
                    await self.handle_request(message)
                case _:
                    self._log.warning("unhandled_message_type", type=message.type.name, topic=message.topic)
        except Exception:
            self._stats.handler_errors += 1
            self._log.exception("message_handling_failed", topic=message.topic, message_id=message.id)

    async def handle_event(self, message: Message) -> None:
        """Handle an EVENT message. Override in subclasses."""

    async def handle_request(self, message: Message) -> None:
        """Handle a REQUEST message. Override in subclasses."""
