"""
In-memory session records owned by the coordinator.

A session record holds the authoritative controller identity, the
pending-request queue, in-flight offers and the member list. Nothing
here is persisted; a session lives until its last member leaves.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from conductor.arbitration.models import (
    ControllerOffer,
    ControllerRequest,
    SessionArbitrationState,
)

logger = structlog.get_logger()


def default_display_name(client_id: str) -> str:
    """Fallback name for a member that joined without one."""
    return f"User-{client_id[-4:]}"


@dataclass
class Member:
    """A client that joined a session."""

    client_id: str
    display_name: str
    joined_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SessionRecord:
    """Authoritative arbitration state for one session."""

    session_id: str
    controller_client_id: str | None = None
    members: dict[str, Member] = field(default_factory=dict)
    # Insertion order is arrival order; display only, not approval order.
    pending_requests: dict[str, ControllerRequest] = field(default_factory=dict)
    offers: dict[tuple[str, str], ControllerOffer] = field(default_factory=dict)
    epoch: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def name_of(self, client_id: str) -> str:
        member = self.members.get(client_id)
        return member.display_name if member else default_display_name(client_id)

    def is_member(self, client_id: str) -> bool:
        return client_id in self.members

    def advance_epoch(self) -> int:
        """Mark a new arbitration transition; broadcasts for it share this epoch."""
        self.epoch += 1
        return self.epoch

    def pending_list(self) -> tuple[ControllerRequest, ...]:
        return tuple(self.pending_requests.values())

    def snapshot(self) -> SessionArbitrationState:
        return SessionArbitrationState(
            session_id=self.session_id,
            controller_client_id=self.controller_client_id,
            pending_requests=self.pending_list(),
            epoch=self.epoch,
        )

    def drop_offers_involving(self, client_id: str) -> int:
        stale = [key for key in self.offers if client_id in key]
        for key in stale:
            del self.offers[key]
        return len(stale)

    def expire_requests(self, now_ms: float, timeout_ms: float) -> list[str]:
        """Remove requests older than ``timeout_ms``; returns the expired client ids."""
        expired = [
            client_id
            for client_id, request in self.pending_requests.items()
            if now_ms - request.request_time > timeout_ms
        ]
        for client_id in expired:
            del self.pending_requests[client_id]
        return expired

    def expire_offers(self, now_ms: float, timeout_ms: float) -> int:
        stale = [key for key, offer in self.offers.items() if now_ms - offer.offered_at > timeout_ms]
        for key in stale:
            del self.offers[key]
        return len(stale)


class SessionRegistry:
    """
    Registry of live sessions.

    Provides lookup and lifecycle management for session records.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._log = logger.bind(component="session_registry")

    def create(self, session_id: str) -> SessionRecord:
        """Create a session; raises ValueError if it already exists."""
        if session_id in self._sessions:
            raise ValueError(f"Session '{session_id}' already exists")
        record = SessionRecord(session_id=session_id)
        self._sessions[session_id] = record
        self._log.debug("session_created", session_id=session_id)
        return record

    def get_or_create(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        return record if record is not None else self.create(session_id)

    def get(self, session_id: str) -> SessionRecord | None:
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        record = self._sessions.pop(session_id, None)
        if record is None:
            return False
        record.members.clear()
        record.pending_requests.clear()
        record.offers.clear()
        self._log.debug("session_deleted", session_id=session_id)
        return True

    def list_ids(self) -> list[str]:
        return list(self._sessions.keys())

    def clear(self) -> int:
        count = len(self._sessions)
        self._sessions.clear()
        return count

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(self._sessions.values())

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
