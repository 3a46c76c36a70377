"""Data models shared across the bridge."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConnectionState(StrEnum):
    """Lifecycle of the MQTT transport connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    ERRORED = "errored"


class StateMessage(BaseModel):
    """A decoded remote state message received on the outbound topic."""

    model_config = ConfigDict(frozen=True)

    topic: str
    state: dict[str, Any] = Field(default_factory=dict, description="Full remote state mapping")
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("topic")
    @classmethod
    def _require_topic(cls, value: str) -> str:
        if not value:
            raise ValueError("topic must be non-empty")
        return value


class FlushResult(BaseModel):
    """Record of one completed flush.

    ``error`` is ``None`` when the broker acknowledged the snapshot.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    sequence: int = Field(..., ge=1)
    snapshot: dict[str, Any]
    batch_size: int = Field(..., ge=0)
    error: BaseException | None = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def success(self) -> bool:
        return self.error is None
