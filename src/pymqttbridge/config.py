"""Bridge configuration for pymqttbridge."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pymqttbridge.exceptions import BridgeConfigError

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 1883
DEFAULT_SCHEME = "mqtt"

#: Seconds of quiet after the latest mutation before the snapshot is published.
DEFAULT_QUIET_PERIOD: float = 0.020

_SCHEMES: frozenset[str] = frozenset({"mqtt", "tcp", "ws"})


def parse_broker_url(raw_url: str) -> tuple[str, str, int]:
    """Split ``scheme://host:port`` into its parts.

    Missing scheme or port fall back to ``mqtt`` and ``1883``.
    """
    value = raw_url.strip()
    if not value:
        raise BridgeConfigError("Broker URL is empty")

    scheme = DEFAULT_SCHEME
    if "://" in value:
        scheme, value = value.split("://", 1)
        scheme = scheme.lower()
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return scheme, host, int(maybe_port)
    return scheme, value or DEFAULT_HOST, DEFAULT_PORT


@dataclasses.dataclass(frozen=True)
class BridgeConfig:
    """Bridge configuration.

    Parameters
    ----------
    outbound_topic : str
        Topic the remote peer publishes its state on (remote -> local).
        The bridge subscribes to it.
    inbound_topic : str
        Topic the bridge publishes the coalesced local state to
        (local -> remote).
    host : str
        Broker host name.
    port : int
        Broker port.
    scheme : str
        ``mqtt``/``tcp`` for plain TCP, ``ws`` for websockets.
    client_id : str
        MQTT client identifier. Empty lets paho generate one.
    keepalive : int
        MQTT keepalive in seconds.
    qos : int
        Quality of service used for outbound state messages.
    quiet_period : float
        Seconds without further mutations before a flush is triggered.
    publish_timeout : float
        Seconds to wait for the broker acknowledgement of a flush before
        reporting it as failed.
    """

    outbound_topic: str
    inbound_topic: str
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    scheme: str = DEFAULT_SCHEME
    client_id: str = ""
    keepalive: int = 60
    qos: int = 2
    quiet_period: float = DEFAULT_QUIET_PERIOD
    publish_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.outbound_topic or not self.inbound_topic:
            raise BridgeConfigError("outbound_topic and inbound_topic must be non-empty")
        if self.scheme not in _SCHEMES:
            raise BridgeConfigError(f"Unsupported broker scheme {self.scheme!r}")
        if not 0 < self.port < 65536:
            raise BridgeConfigError(f"Invalid broker port {self.port}")
        if self.qos not in (0, 1, 2):
            raise BridgeConfigError(f"Invalid QoS level {self.qos}")
        if self.quiet_period < 0:
            raise BridgeConfigError("quiet_period must be >= 0")
        if self.publish_timeout <= 0:
            raise BridgeConfigError("publish_timeout must be > 0")

    @property
    def address(self) -> str:
        """Broker address as ``scheme://host:port``."""
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def transport(self) -> str:
        """paho-mqtt transport name for the configured scheme."""
        return "websockets" if self.scheme == "ws" else "tcp"

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> BridgeConfig:
        """Create configuration from a broker URL plus topic settings."""
        scheme, host, port = parse_broker_url(url)
        return cls(scheme=scheme, host=host, port=port, **kwargs)

    @classmethod
    def from_env(cls, **overrides: Any) -> BridgeConfig:
        """Create configuration from ``MQTT_BRIDGE_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "MQTT_BRIDGE_OUTBOUND_TOPIC": "outbound_topic",
            "MQTT_BRIDGE_INBOUND_TOPIC": "inbound_topic",
            "MQTT_BRIDGE_HOST": "host",
            "MQTT_BRIDGE_SCHEME": "scheme",
            "MQTT_BRIDGE_CLIENT_ID": "client_id",
        }
        _ENV_INT_MAP = {
            "MQTT_BRIDGE_PORT": "port",
            "MQTT_BRIDGE_KEEPALIVE": "keepalive",
            "MQTT_BRIDGE_QOS": "qos",
        }
        _ENV_FLOAT_MAP = {
            "MQTT_BRIDGE_QUIET_PERIOD": "quiet_period",
            "MQTT_BRIDGE_PUBLISH_TIMEOUT": "publish_timeout",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise BridgeConfigError(f"Invalid numeric environment value: {exc}") from exc

        config_kwargs.update(overrides)

        missing = [name for name in ("outbound_topic", "inbound_topic") if name not in config_kwargs]
        if missing:
            raise BridgeConfigError(f"Missing required setting(s): {', '.join(missing)}")

        return cls(**config_kwargs)
