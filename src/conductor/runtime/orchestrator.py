"""
Orchestrator: startup, shutdown, and lifecycle management.

Owns the message bus, the arbitration coordinator and the peers
attached to it.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from enum import Enum, auto
from typing import Any, AsyncIterator

import anyio
import structlog

from conductor.arbitration.coordinator import ArbitrationCoordinator
from conductor.bus.message_bus import MessageBus
from conductor.bus.topics import SystemTopics
from conductor.core.clock import TimerScheduler
from conductor.core.component import Component, ComponentState
from conductor.core.config import DEFAULT_CONFIG, ArbitrationConfig
from conductor.core.signals import Message
from conductor.peer.client import PeerClient

logger = structlog.get_logger()


class OrchestratorState(Enum):
    """Lifecycle states for the orchestrator."""

    CREATED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


class Orchestrator:
    """
    Manages startup, shutdown, and overall lifecycle.

    Responsibilities:
    - Own the shared message bus and the coordinator
    - Create and register peers
    - Start the coordinator before any peer, stop peers first
    - Provide health monitoring
    """

    def __init__(
        self,
        config: ArbitrationConfig = DEFAULT_CONFIG,
        timers: TimerScheduler | None = None,
    ) -> None:
        self._state = OrchestratorState.CREATED
        self._config = config
        self._timers = timers
        self._message_bus = MessageBus()
        self._coordinator = ArbitrationCoordinator(config, timers)
        self._coordinator.set_message_bus(self._message_bus)
        self._peers: dict[str, PeerClient] = {}
        self._started_at: datetime | None = None
        self._stopped_at: datetime | None = None
        self._log = logger.bind(component="orchestrator")

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def message_bus(self) -> MessageBus:
        return self._message_bus

    @property
    def coordinator(self) -> ArbitrationCoordinator:
        return self._coordinator

    @property
    def peers(self) -> dict[str, PeerClient]:
        return dict(self._peers)

    @property
    def is_running(self) -> bool:
        return self._state == OrchestratorState.RUNNING

    @property
    def uptime_seconds(self) -> float | None:
        """Get uptime in seconds."""
        if not self._started_at:
            return None
        end_time = self._stopped_at or datetime.now(UTC)
        return (end_time - self._started_at).total_seconds()

    def add_peer(self, client_id: str, display_name: str | None = None) -> PeerClient:
        """Create a peer sharing this orchestrator's bus, config and timers."""
        peer = PeerClient(
            client_id,
            display_name,
            config=self._config,
            timers=self._timers,
            message_bus=self._message_bus,
        )
        self.register_peer(peer)
        return peer

    def register_peer(self, peer: PeerClient) -> None:
        """Register an existing peer instance."""
        if peer.client_id in self._peers:
            raise ValueError(f"Peer '{peer.client_id}' is already registered")
        peer.set_message_bus(self._message_bus)
        self._peers[peer.client_id] = peer

    def get_peer(self, client_id: str) -> PeerClient | None:
        return self._peers.get(client_id)

    async def start(self) -> None:
        """Start the coordinator, then all registered peers."""
        if self._state != OrchestratorState.CREATED:
            raise RuntimeError(f"Cannot start orchestrator in state {self._state}")

        self._state = OrchestratorState.STARTING
        self._started_at = datetime.now(UTC)
        self._log.info("orchestrator_starting")

        try:
            await self._coordinator.start()

            async with anyio.create_task_group() as tg:
                for peer in self._peers.values():
                    tg.start_soon(peer.start)

            await self._message_bus.publish(
                Message.event(
                    str(SystemTopics.STARTUP),
                    "orchestrator",
                    {"started_at": self._started_at.isoformat()},
                )
            )

            self._state = OrchestratorState.RUNNING
            self._log.info("orchestrator_started", peer_count=len(self._peers))

        except Exception:
            self._state = OrchestratorState.FAILED
            self._log.exception("orchestrator_start_failed")
            raise

    async def stop(self) -> None:
        """Stop all peers, then the coordinator."""
        if self._state != OrchestratorState.RUNNING:
            return

        self._state = OrchestratorState.STOPPING
        self._log.info("orchestrator_stopping")

        try:
            await self._message_bus.publish(
                Message.event(
                    str(SystemTopics.SHUTDOWN),
                    "orchestrator",
                    {"stopping_at": datetime.now(UTC).isoformat()},
                )
            )

            # Intents already handed to the coordinator run to completion
            await self._message_bus.drain()
            async with anyio.create_task_group() as tg:
                for peer in self._peers.values():
                    tg.start_soon(self._stop_component, peer)
            await self._stop_component(self._coordinator)

            self._message_bus.clear()

            self._stopped_at = datetime.now(UTC)
            self._state = OrchestratorState.STOPPED
            self._log.info("orchestrator_stopped", uptime_seconds=self.uptime_seconds)

        except Exception:
            self._state = OrchestratorState.FAILED
            self._log.exception("orchestrator_stop_failed")
            raise

    async def _stop_component(self, component: Component) -> None:
        """Stop one component; a failure is logged so the rest still stop."""
        try:
            await component.stop()
        except Exception:
            self._log.exception("component_stop_failed", name=component.name)

    @asynccontextmanager
    async def run_context(self) -> AsyncIterator["Orchestrator"]:
        """Async context manager for running the orchestrator."""
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    def get_health(self) -> dict[str, Any]:
        """Get health status."""
        components: list[Component] = [self._coordinator, *self._peers.values()]
        running = [c.name for c in components if c.component_state == ComponentState.RUNNING]
        failed = [c.name for c in components if c.component_state == ComponentState.FAILED]

        return {
            "state": self._state.name,
            "uptime_seconds": self.uptime_seconds,
            "components": {
                "total": len(components),
                "running": len(running),
                "failed": len(failed),
            },
            "coordinator": self._coordinator.get_health(),
            "message_bus": {
                "subscriptions": self._message_bus.stats.total_subscriptions,
                "messages_published": self._message_bus.stats.total_messages_published,
                "messages_delivered": self._message_bus.stats.total_messages_delivered,
                "requests": self._message_bus.stats.total_requests,
                "request_timeouts": self._message_bus.stats.total_request_timeouts,
                "requests_in_flight": self._message_bus.pending_deliveries,
            },
        }
