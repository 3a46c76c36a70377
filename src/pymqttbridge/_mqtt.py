"""Internal MQTT runtime: paho client lifecycle, connection state and acks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from pymqttbridge.config import BridgeConfig
from pymqttbridge.exceptions import BridgeConnectionError, BridgePublishError, BridgeSubscribeError
from pymqttbridge.models import ConnectionState

_logger = logging.getLogger(__name__)

ClientFactory = Callable[[BridgeConfig], mqtt.Client]
MessageHandler = Callable[[str, bytes], None]


def default_client_factory(config: BridgeConfig) -> mqtt.Client:
    """Build a paho client using the v2 callback API."""
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
        transport=config.transport,
        protocol=mqtt.MQTTv311,
    )


def _is_failure(reason_code: Any) -> bool:
    return bool(getattr(reason_code, "is_failure", False))


class MqttRuntime:
    """Threaded paho-mqtt runtime that reports back onto an asyncio loop.

    paho invokes its callbacks on its own network thread. Each callback only
    posts the event to the loop with ``call_soon_threadsafe``; connection
    state, pending publishes and the message handler are touched from the
    loop thread alone.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: MessageHandler | None = None,
        client_factory: ClientFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._on_message = on_message
        self._client_factory = client_factory or default_client_factory
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._running = False
        self._state = ConnectionState.DISCONNECTED
        self._subscribe_mid: int | None = None
        self._pending_publishes: dict[int, tuple[str, asyncio.Future[None]]] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop has been started."""
        return self._running

    @property
    def client(self) -> mqtt.Client | None:
        return self._client

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        """Route inbound messages to *handler*; ``None`` drops them."""
        self._on_message = handler

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            self._logger.debug("MQTT connection state %s -> %s", self._state, state)
            self._state = state

    def start(self) -> None:
        """Begin connecting in the background; subscribe once connected."""
        self.stop()
        self._logger.info("Attempting to connect to MQTT broker at %s...", self._config.address)

        client = self._client_factory(self._config)
        client.enable_logger(self._logger)

        def on_connect(_c: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            self._post(self._handle_connect, reason_code)

        def on_connect_fail(_c: mqtt.Client, _userdata: Any) -> None:
            self._post(self._handle_connect_fail)

        def on_subscribe(_c: mqtt.Client, _userdata: Any, mid: int, reason_codes: Any, _properties: Any) -> None:
            self._post(self._handle_subscribe, mid, list(reason_codes))

        def on_publish(_c: mqtt.Client, _userdata: Any, mid: int, reason_code: Any, _properties: Any) -> None:
            self._post(self._handle_publish, mid, reason_code)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._post(self._handle_message, msg.topic, bytes(msg.payload))

        def on_disconnect(_c: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            self._post(self._handle_disconnect, reason_code)

        client.on_connect = on_connect
        client.on_connect_fail = on_connect_fail
        client.on_subscribe = on_subscribe
        client.on_publish = on_publish
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        self._set_state(ConnectionState.CONNECTING)
        client.connect_async(self._config.host, self._config.port, keepalive=self._config.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Disconnect and fail every publish still waiting for an ack."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._subscribe_mid = None
        self._set_state(ConnectionState.DISCONNECTED)

        pending, self._pending_publishes = self._pending_publishes, {}
        for topic, future in pending.values():
            if not future.done():
                future.set_exception(
                    BridgeConnectionError(f"MQTT runtime stopped before {topic} was acknowledged")
                )

        if client is not None:
            self._release_client(client, send_disconnect=was_running)

    def _release_client(self, client: mqtt.Client, *, send_disconnect: bool) -> None:
        # The network thread must be joined even when DISCONNECT cannot be sent.
        with contextlib.ExitStack() as cleanup:
            cleanup.callback(client.loop_stop)
            if send_disconnect:
                result = client.disconnect()
                self._logger.debug("Sent DISCONNECT to %s (result=%s)", self._config.address, result)
        self._logger.debug("Released MQTT client for %s", self._config.address)

    def publish(self, topic: str, payload: bytes, *, qos: int) -> asyncio.Future[None]:
        """Send *payload*; the returned future resolves on broker acknowledgement."""
        future: asyncio.Future[None] = self._loop.create_future()
        client = self._client
        if client is None or not self._running:
            future.set_exception(BridgeConnectionError("MQTT runtime is not running"))
            return future

        info = client.publish(topic, payload, qos=qos)
        if info.rc == mqtt.MQTT_ERR_NO_CONN and qos > 0:
            # paho keeps QoS>0 messages queued and sends them after reconnecting.
            self._logger.debug("MQTT publish mid=%s queued until reconnect", info.mid)
        elif info.rc != mqtt.MQTT_ERR_SUCCESS:
            future.set_exception(
                BridgePublishError(
                    f"Publish to {topic} rejected: {mqtt.error_string(info.rc)}",
                    topic=topic,
                    reason_code=info.rc,
                )
            )
            return future

        self._pending_publishes[info.mid] = (topic, future)
        future.add_done_callback(lambda _f, mid=info.mid: self._forget_publish(mid, _f))
        return future

    def _forget_publish(self, mid: int, future: asyncio.Future[None]) -> None:
        current = self._pending_publishes.get(mid)
        if current is not None and current[1] is future:
            self._pending_publishes.pop(mid, None)

    def _post(self, handler: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(handler, *args)
        except RuntimeError:
            self._logger.debug("Dropping MQTT callback %r, event loop closed", handler)

    def _handle_message(self, topic: str, payload: bytes) -> None:
        if self._on_message is not None:
            self._on_message(topic, payload)

    def _handle_connect(self, reason_code: Any) -> None:
        if not self._running:
            return
        if _is_failure(reason_code):
            self._set_state(ConnectionState.ERRORED)
            self._logger.warning("Error establishing connection to MQTT broker! reason=%s", reason_code)
            return

        self._set_state(ConnectionState.CONNECTED)
        self._logger.info("Connection to MQTT broker successfully established!")

        client = self._client
        if client is None:
            return
        topic = self._config.outbound_topic
        self._logger.debug("MQTT subscribing topic=%s", topic)
        result, mid = client.subscribe(topic, qos=self._config.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._report_subscribe_error(
                BridgeSubscribeError(f"Subscribe request failed: {mqtt.error_string(result)}", topic=topic)
            )
            return
        self._subscribe_mid = mid

    def _handle_subscribe(self, mid: int, reason_codes: list[Any]) -> None:
        if not self._running or mid != self._subscribe_mid:
            return
        self._subscribe_mid = None
        topic = self._config.outbound_topic
        failed = [code for code in reason_codes if _is_failure(code)]
        if failed:
            self._report_subscribe_error(
                BridgeSubscribeError(f"Broker rejected subscription: {failed[0]}", topic=topic)
            )
            return
        self._set_state(ConnectionState.SUBSCRIBED)
        self._logger.info("Successfully subscribed to %s", topic)

    def _report_subscribe_error(self, error: BridgeSubscribeError) -> None:
        # Publishing keeps working; remote state simply never arrives.
        self._logger.error("An error occurred subscribing to %s: %s", error.topic, error)

    def _handle_publish(self, mid: int, reason_code: Any) -> None:
        entry = self._pending_publishes.pop(mid, None)
        if entry is None:
            return
        topic, future = entry
        if future.done():
            return
        if _is_failure(reason_code):
            future.set_exception(
                BridgePublishError(
                    f"Broker rejected publish to {topic}: {reason_code}",
                    topic=topic,
                    reason_code=getattr(reason_code, "value", None),
                )
            )
            return
        future.set_result(None)

    def _handle_connect_fail(self) -> None:
        if not self._running:
            return
        self._set_state(ConnectionState.ERRORED)
        self._logger.warning("Error establishing connection to MQTT broker at %s!", self._config.address)

    def _handle_disconnect(self, reason_code: Any) -> None:
        if not self._running:
            return
        self._set_state(ConnectionState.ERRORED)
        self._logger.warning("MQTT disconnected unexpectedly: %s", reason_code)
