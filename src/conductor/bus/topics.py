"""
Topic names for arbitration traffic.

  session.<session_id>.controller.<event>   broadcasts to every member
  peer.<client_id>.controller.<event>       events for a single peer
  coordinator.intent.<intent>               acknowledged intents
  peer.<client_id>.ack.<correlation_id>     intent replies
  system.startup / system.shutdown          orchestrator lifecycle

In patterns ``*`` matches exactly one segment and ``#`` matches zero or
more segments.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Topic:
    """A dot-separated topic path."""

    path: str

    @property
    def segments(self) -> list[str]:
        return self.path.split(".")

    def matches(self, pattern: str) -> bool:
        """True if this topic is covered by ``pattern``."""
        return _match(self.segments, pattern.split("."))

    def __str__(self) -> str:
        return self.path


def _match(topic: list[str], pattern: list[str]) -> bool:
    for i, part in enumerate(pattern):
        if part == "#":
            rest = pattern[i + 1 :]
            if not rest:
                return True
            return any(_match(topic[j:], rest) for j in range(i, len(topic) + 1))
        if i >= len(topic) or part not in ("*", topic[i]):
            return False
    return len(topic) == len(pattern)


class SystemTopics:
    STARTUP = Topic("system.startup")
    SHUTDOWN = Topic("system.shutdown")


class CoordinatorTopics:
    """Topics the arbitration coordinator listens on."""

    ALL_INTENTS = Topic("coordinator.intent.*")

    @staticmethod
    def intent(name: str) -> Topic:
        """Topic for a named intent, e.g. ``request_controller``."""
        return Topic(f"coordinator.intent.{name}")


class SessionTopics:
    """Broadcast topics scoped to one session."""

    @staticmethod
    def controller_event(session_id: str, event: str) -> Topic:
        return Topic(f"session.{session_id}.controller.{event}")

    @staticmethod
    def all_controller_events(session_id: str) -> Topic:
        return Topic(f"session.{session_id}.controller.*")


class PeerTopics:
    """Topics addressed to a single peer."""

    @staticmethod
    def controller_event(client_id: str, event: str) -> Topic:
        return Topic(f"peer.{client_id}.controller.{event}")

    @staticmethod
    def all_controller_events(client_id: str) -> Topic:
        return Topic(f"peer.{client_id}.controller.*")

    @staticmethod
    def ack(client_id: str, correlation_id: str) -> Topic:
        """Reply topic for one acknowledged intent."""
        return Topic(f"peer.{client_id}.ack.{correlation_id}")
