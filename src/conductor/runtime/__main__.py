"""
Entry point for running a scripted arbitration session.

Usage:
    python -m conductor.runtime
"""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

import structlog

from conductor.core.errors import ArbitrationError
from conductor.peer.client import PeerClient
from conductor.runtime.orchestrator import Orchestrator

# Configure structured logging
logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stdout)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

SESSION_ID = "demo-room"


def log_views(step: str, *peers: PeerClient) -> None:
    for peer in peers:
        logger.info("peer_view", step=step, **peer.describe())


async def run_demo(orchestrator: Orchestrator, stop: asyncio.Event) -> None:
    """Join, request, approve, offer, decline and deny, logging each view."""
    alice = orchestrator.add_peer("alice-0001", "Alice")
    bob = orchestrator.add_peer("bob-0002", "Bob")
    carol = orchestrator.add_peer("carol-0003", "Carol")

    async with orchestrator.run_context():
        for peer in (alice, bob, carol):
            peer.connect()
            await peer.join(SESSION_ID)
        log_views("joined", alice, bob, carol)

        await bob.dispatcher.request_controller()
        log_views("bob_requested", alice, bob)

        await alice.dispatcher.approve_request(bob.client_id)
        log_views("alice_approved", alice, bob)

        await bob.dispatcher.offer_controller(carol.client_id)
        log_views("bob_offered", bob, carol)

        await carol.dispatcher.decline_offer(bob.client_id)
        log_views("carol_declined", bob, carol)

        await carol.dispatcher.request_controller()
        await bob.dispatcher.deny_request(carol.client_id)
        log_views("bob_denied", bob, carol)

        try:
            await alice.dispatcher.approve_request(carol.client_id)
        except ArbitrationError as exc:
            logger.info("expected_rejection", error=str(exc))

        logger.info("system_health", **orchestrator.get_health())

        # Let the result banners expire unless interrupted
        try:
            await asyncio.wait_for(stop.wait(), timeout=4.5)
        except TimeoutError:
            pass
        log_views("settled", alice, bob, carol)


async def run_system() -> None:
    """Run the demo session."""
    logger.info("conductor_initializing")

    orchestrator = Orchestrator()

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        await run_demo(orchestrator, shutdown_event)
    except Exception:
        logger.exception("conductor_error")
        raise

    logger.info("conductor_stopped")


def main() -> NoReturn:
    """Main entry point."""
    try:
        asyncio.run(run_system())
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("interrupted")
        sys.exit(130)
    except Exception:
        logger.exception("fatal_error")
        sys.exit(1)


if __name__ == "__main__":
    main()
