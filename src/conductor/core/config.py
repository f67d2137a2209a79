"""
Configuration for arbitration timing.

All durations the state machine, notification scheduler and coordinator
use live in one frozen model so a session can be tuned from a single
JSON document.
"""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ArbitrationConfig(BaseModel):
    """Timing configuration for controller arbitration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Notification display durations (milliseconds, None = until dismissed)
    request_received_ms: int = Field(default=5000, ge=0)
    offer_received_ms: int | None = Field(default=None, ge=0)
    offer_sent_ms: int = Field(default=4000, ge=0)
    offer_accepted_ms: int = Field(default=4000, ge=0)
    offer_declined_ms: int = Field(default=4000, ge=0)

    # Local request state expiry (milliseconds)
    error_ms: int = Field(default=3000, ge=0)
    cancelled_ms: int = Field(default=2000, ge=0)
    result_ms: int = Field(default=4000, ge=0)

    # Transport and coordinator
    ack_timeout_seconds: float = Field(default=5.0, gt=0)
    request_timeout_seconds: float = Field(default=300.0, gt=0)
    offer_timeout_seconds: float | None = Field(default=60.0, gt=0)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ArbitrationConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        return cls.model_validate(dict(data))


DEFAULT_CONFIG = ArbitrationConfig()


def load_config(path: str | Path) -> ArbitrationConfig:
    """Load a config from a JSON file."""
    return ArbitrationConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))
