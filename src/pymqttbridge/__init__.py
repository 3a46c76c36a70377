"""pymqttbridge - Coalescing async state bridge over MQTT."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pymqttbridge")
except PackageNotFoundError:
    __version__ = "0+local"
from pymqttbridge.bridge import MqttStateBridge
from pymqttbridge.config import BridgeConfig, parse_broker_url
from pymqttbridge.exceptions import (
    BridgeConfigError,
    BridgeConnectionError,
    BridgeError,
    BridgePayloadError,
    BridgePublishError,
    BridgeSubscribeError,
)
from pymqttbridge.gateway import PublishGateway, decode_state, encode_state
from pymqttbridge.models import ConnectionState, FlushResult, StateMessage
from pymqttbridge.state.coalescer import StateCoalescer
from pymqttbridge.state.timer import QuietPeriodTimer

__all__ = [
    "__version__",
    "BridgeConfig",
    "BridgeConfigError",
    "BridgeConnectionError",
    "BridgeError",
    "BridgePayloadError",
    "BridgePublishError",
    "BridgeSubscribeError",
    "ConnectionState",
    "FlushResult",
    "MqttStateBridge",
    "PublishGateway",
    "QuietPeriodTimer",
    "StateCoalescer",
    "StateMessage",
    "decode_state",
    "encode_state",
    "parse_broker_url",
]
