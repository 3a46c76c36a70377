"""Publish gateway: wire codec and topic routing for state messages.

Outbound, the full merged snapshot is encoded as UTF-8 JSON and published to
the inbound topic. Inbound, messages on the outbound topic are decoded and
handed to the host reconciliation hook.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from pymqttbridge._logfmt import summarize_for_log
from pymqttbridge.config import BridgeConfig
from pymqttbridge.exceptions import BridgeConnectionError, BridgePayloadError, BridgePublishError
from pymqttbridge.models import StateMessage

_logger = logging.getLogger(__name__)

RemoteStateHook = Callable[[dict[str, Any]], None]


class StateTransport(Protocol):
    """The part of the MQTT runtime the gateway publishes through."""

    def publish(self, topic: str, payload: bytes, *, qos: int) -> asyncio.Future[None]: ...


def encode_state(state: Mapping[str, Any]) -> bytes:
    """Serialize a full state mapping into the wire format."""
    try:
        return json.dumps(dict(state), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise BridgePublishError(f"State is not JSON serializable: {exc}") from exc


def decode_state(payload: bytes | str, *, topic: str = "") -> dict[str, Any]:
    """Parse a wire payload into a state mapping."""
    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        parsed = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise BridgePayloadError(f"Malformed state payload: {exc}", topic=topic) from exc
    if not isinstance(parsed, dict):
        raise BridgePayloadError("State payload decoded to non-object JSON", topic=topic)
    return parsed


class PublishGateway:
    def __init__(
        self,
        config: BridgeConfig,
        transport: StateTransport,
        *,
        on_remote_state: RemoteStateHook,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._on_remote_state = on_remote_state
        self._logger = logger or _logger

    @property
    def inbound_topic(self) -> str:
        return self._config.inbound_topic

    @property
    def outbound_topic(self) -> str:
        return self._config.outbound_topic

    async def publish(self, snapshot: Mapping[str, Any]) -> None:
        """Publish *snapshot* and wait for the broker acknowledgement.

        Raises :class:`BridgePublishError` when the send is rejected or not
        acknowledged within ``publish_timeout``.
        """
        topic = self._config.inbound_topic
        message = encode_state(snapshot)
        self._logger.debug("Publishing %s to %s", summarize_for_log(message), topic)

        try:
            ack = self._transport.publish(topic, message, qos=self._config.qos)
        except ValueError as exc:
            raise BridgePublishError(f"Publish to {topic} rejected: {exc}", topic=topic) from exc

        try:
            await asyncio.wait_for(ack, self._config.publish_timeout)
        except TimeoutError as exc:
            raise BridgePublishError(
                f"No acknowledgement for {topic} within {self._config.publish_timeout}s",
                topic=topic,
            ) from exc
        except BridgeConnectionError as exc:
            raise BridgePublishError(f"Publish to {topic} failed: {exc}", topic=topic) from exc

    def on_remote_message(self, topic: str, payload: bytes | str) -> StateMessage | None:
        """Route an inbound message to the reconciliation hook.

        Returns ``None`` for topics other than the outbound topic. Raises
        :class:`BridgePayloadError` for payloads that are not a JSON object.
        """
        if topic != self._config.outbound_topic:
            return None

        self._logger.debug("Received %s from %s", summarize_for_log(payload), topic)
        message = StateMessage(topic=topic, state=decode_state(payload, topic=topic))
        self._on_remote_state(message.state)
        return message
