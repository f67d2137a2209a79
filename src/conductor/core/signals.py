"""
Messages carried by the bus.

Every piece of arbitration traffic is a Message: intents sent by peers
(REQUEST), their acknowledgements (RESPONSE), and the broadcasts the
coordinator emits (EVENT).
"""

from datetime import UTC, datetime
from enum import Enum, auto
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


class MessageType(Enum):
    EVENT = auto()  # Broadcast or peer-directed event
    REQUEST = auto()  # Intent awaiting an acknowledgement
    RESPONSE = auto()  # Acknowledgement of an intent


class Message(BaseModel):
    """
    Envelope for one message on the bus.

    ``source`` identifies the publisher: the client id for intents sent by
    a peer, ``"coordinator"`` for broadcasts. The coordinator trusts it as
    the sender identity.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    type: MessageType
    topic: str
    payload: Any
    source: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Request/response pairing
    correlation_id: str | None = None
    reply_to: str | None = None

    @property
    def event_name(self) -> str:
        """Last topic segment, which names the event or intent."""
        return self.topic.rsplit(".", 1)[-1]

    @classmethod
    def event(cls, topic: str, source: str, payload: Any) -> "Message":
        return cls(type=MessageType.EVENT, topic=topic, payload=payload, source=source)

    @classmethod
    def request(
        cls,
        topic: str,
        source: str,
        payload: Any,
        *,
        reply_to: str,
        correlation_id: str | None = None,
    ) -> "Message":
        """Create a request message expecting a reply on ``reply_to``."""
        return cls(
            type=MessageType.REQUEST,
            topic=topic,
            payload=payload,
            source=source,
            correlation_id=correlation_id or str(ULID()),
            reply_to=reply_to,
        )

    def reply(self, source: str, payload: Any) -> "Message":
        """Build the RESPONSE to this request, addressed to its ``reply_to``."""
        if self.reply_to is None:
            raise ValueError(f"Message {self.id} has no reply_to topic")
        return Message(
            type=MessageType.RESPONSE,
            topic=self.reply_to,
            payload=payload,
            source=source,
            correlation_id=self.correlation_id,
        )
