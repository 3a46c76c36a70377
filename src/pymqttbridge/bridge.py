"""High-level async bridge between a local state object and an MQTT peer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from types import TracebackType
from typing import Any

from pymqttbridge._mqtt import ClientFactory, MqttRuntime
from pymqttbridge.config import BridgeConfig
from pymqttbridge.exceptions import BridgeConnectionError, BridgePayloadError, BridgePublishError
from pymqttbridge.gateway import PublishGateway, RemoteStateHook
from pymqttbridge.models import ConnectionState, FlushResult
from pymqttbridge.state.coalescer import CompletionCallback, StateCoalescer

_logger = logging.getLogger(__name__)


class MqttStateBridge:
    """Keep a local state mapping in sync with a remote peer over MQTT.

    Usage::

        async with MqttStateBridge(config, on_remote_state_change=apply) as bridge:
            await bridge.set_state({"power": True})

    Hosts either pass ``on_remote_state_change`` or subclass and override
    :meth:`on_remote_state_change`. A prepared :class:`MqttRuntime` can be
    passed as *runtime*; otherwise one is built from *client_factory*.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        on_remote_state_change: RemoteStateHook | None = None,
        initial_state: Mapping[str, Any] | None = None,
        client_factory: ClientFactory | None = None,
        runtime: MqttRuntime | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._logger = logger or _logger
        self._remote_hook = on_remote_state_change
        self._client_factory = client_factory
        self._injected_runtime = runtime
        self._stopped = False
        self._runtime: MqttRuntime | None = None
        self._gateway: PublishGateway | None = None
        self._coalescer = StateCoalescer(
            self._publish_snapshot,
            quiet_period=config.quiet_period,
            initial_state=initial_state,
            logger=self._logger,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> MqttStateBridge:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def start(self) -> None:
        """Connect to the broker and subscribe to the outbound topic."""
        if self._stopped:
            raise BridgeConnectionError("Bridge was stopped and cannot be restarted")
        if self._runtime is not None and self._runtime.is_running:
            return
        runtime = self._injected_runtime
        if runtime is None:
            runtime = MqttRuntime(
                self._config,
                loop=asyncio.get_running_loop(),
                client_factory=self._client_factory,
                logger=self._logger,
            )
        runtime.set_message_handler(self._on_message)
        self._gateway = PublishGateway(
            self._config,
            runtime,
            on_remote_state=self._dispatch_remote_state,
            logger=self._logger,
        )
        self._runtime = runtime
        runtime.start()

    async def stop(self) -> None:
        """Settle outstanding state callbacks, then disconnect."""
        self._stopped = True
        await self._coalescer.aclose()
        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            runtime.stop()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def state(self) -> dict[str, Any]:
        """Copy of the local merged state."""
        return self._coalescer.snapshot

    @property
    def connection_state(self) -> ConnectionState:
        if self._runtime is None:
            return ConnectionState.DISCONNECTED
        return self._runtime.state

    @property
    def last_flush(self) -> FlushResult | None:
        return self._coalescer.last_flush

    def set_state_and_emit(self, partial: Mapping[str, Any], callback: CompletionCallback) -> None:
        """Merge *partial* into the local state and publish it after the quiet period.

        *callback* receives ``None`` once the broker acknowledged the merged
        state, or the publish error.
        """
        self._coalescer.mutate(partial, callback)

    async def set_state(self, partial: Mapping[str, Any]) -> None:
        await self._coalescer.set_state(partial)

    def replace_state(self, state: Mapping[str, Any]) -> None:
        """Overwrite the local state without publishing it."""
        self._coalescer.reset(state)

    def on_remote_state_change(self, state: dict[str, Any]) -> None:
        """Called with every remote state received on the outbound topic."""

    # ------------------------------------------------------------------
    # Host helpers
    # ------------------------------------------------------------------

    def log(self, msg: str, *args: Any) -> None:
        """Log through the bridge logger so host lines sit next to bridge lines."""
        self._logger.info(msg, *args)

    def identify(self, callback: Callable[[], None]) -> None:
        self._logger.info("Identify requested!")
        callback()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _publish_snapshot(self, snapshot: dict[str, Any]) -> None:
        gateway = self._gateway
        if gateway is None:
            raise BridgePublishError("Bridge is not started", topic=self._config.inbound_topic)
        await gateway.publish(snapshot)

    def _dispatch_remote_state(self, state: dict[str, Any]) -> None:
        if self._remote_hook is not None:
            self._remote_hook(state)
        else:
            self.on_remote_state_change(state)

    def _on_message(self, topic: str, payload: bytes) -> None:
        gateway = self._gateway
        if gateway is None:
            return
        try:
            gateway.on_remote_message(topic, payload)
        except BridgePayloadError as exc:
            self._logger.warning("Ignoring malformed state from %s: %s", topic, exc)
        except Exception:
            self._logger.exception("Remote state handler failed for %s", topic)
