#!/usr/bin/env python3
"""Interactive probe for a state bridge peer.

Connects with ``MQTT_BRIDGE_*`` settings (overridable on the command line),
prints every remote state received on the outbound topic, and optionally
publishes one JSON partial state through the coalescing path.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pymqttbridge import BridgeConfig, BridgeError, MqttStateBridge  # noqa: E402

_LOG = logging.getLogger("bridge_probe")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Probe an MQTT state bridge peer.",
    )
    parser.add_argument("--url", help="Broker URL, e.g. mqtt://localhost:1883.")
    parser.add_argument("--outbound-topic", help="Topic the peer publishes its state on.")
    parser.add_argument("--inbound-topic", help="Topic to publish local state to.")
    parser.add_argument(
        "--set",
        dest="partial",
        help='JSON object to merge and publish, e.g. \'{"on": true}\'.',
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=10.0,
        help="Seconds to listen for remote state (0 = until Ctrl+C).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _build_config(args: argparse.Namespace) -> BridgeConfig:
    overrides: dict[str, Any] = {}
    if args.outbound_topic:
        overrides["outbound_topic"] = args.outbound_topic
    if args.inbound_topic:
        overrides["inbound_topic"] = args.inbound_topic
    if args.url:
        env_config = BridgeConfig.from_env(**overrides)
        return BridgeConfig.from_url(
            args.url,
            outbound_topic=env_config.outbound_topic,
            inbound_topic=env_config.inbound_topic,
        )
    return BridgeConfig.from_env(**overrides)


def _print_state(state: dict[str, Any]) -> None:
    print(f"[probe] remote state {json.dumps(state, ensure_ascii=False, sort_keys=True)}")


async def _run(config: BridgeConfig, partial: dict[str, Any] | None, duration: float) -> int:
    async with MqttStateBridge(config, on_remote_state_change=_print_state, logger=_LOG) as bridge:
        if partial is not None:
            try:
                await bridge.set_state(partial)
            except BridgeError as exc:
                print(f"[probe] publish failed: {exc}", file=sys.stderr)
                return 1
            print(f"[probe] published {json.dumps(bridge.state, sort_keys=True)}")

        try:
            if duration > 0:
                await asyncio.sleep(duration)
            else:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        print(f"[probe] connection state at exit: {bridge.connection_state}")
    return 0


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = _build_config(args)
    except BridgeError as exc:
        print(f"[probe] invalid configuration: {exc}", file=sys.stderr)
        return 2

    partial: dict[str, Any] | None = None
    if args.partial:
        parsed = json.loads(args.partial)
        if not isinstance(parsed, dict):
            print("[probe] --set must be a JSON object", file=sys.stderr)
            return 2
        partial = parsed

    try:
        return asyncio.run(_run(config, partial, args.duration))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(_main())
