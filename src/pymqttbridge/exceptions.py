"""Custom exception hierarchy for pymqttbridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all pymqttbridge errors."""


class BridgeConfigError(BridgeError):
    """Invalid or missing configuration."""


class BridgeConnectionError(BridgeError):
    """Transport-level failure (not started, stopped, connect refused)."""


class BridgeSubscribeError(BridgeError):
    """The broker rejected the subscription to the outbound topic."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class BridgePublishError(BridgeError):
    """A coalesced state snapshot could not be delivered.

    This is the only error category delivered to completion callbacks.
    Every callback batched into the failed flush receives the same instance.
    """

    def __init__(
        self,
        message: str,
        *,
        topic: str = "",
        reason_code: int | None = None,
    ) -> None:
        self.topic = topic
        self.reason_code = reason_code
        super().__init__(message)


class BridgePayloadError(BridgeError):
    """Inbound payload is not a UTF-8 JSON object."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)
