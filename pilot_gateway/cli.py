"""Command-line interface for pilot-gateway."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

from . import constants
from .app import GatewayApp
from .config import GatewayConfig, load_config
from .errors import ConfigurationError, StorageError
from .store import TelemetryStore

LOGGER = logging.getLogger(__name__)

_MASKED_KEYS = {"password", "app_key", "license"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pilot-gateway", description="Drone telemetry and command MQTT gateway"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the gateway service")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    export_parser = subparsers.add_parser(
        "export", help="Write stored telemetry as JSON lines"
    )
    export_parser.add_argument(
        "--from", dest="from_ts", type=int, default=None, help="First timestamp (ms)"
    )
    export_parser.add_argument(
        "--to", dest="to_ts", type=int, default=None, help="Last timestamp (ms)"
    )

    return parser


def show_config(config: GatewayConfig, stream: TextIO) -> None:
    print(f"Configuration loaded from {config.path!s}\n", file=stream)
    for section in config.raw.sections():
        print(f"[{section}]", file=stream)
        for key, value in config.raw[section].items():
            if key in _MASKED_KEYS and value:
                value = "********"
            print(f"{key} = {value}", file=stream)
        print(file=stream)


def export_telemetry(
    config: GatewayConfig,
    stream: TextIO,
    *,
    from_ts: Optional[int] = None,
    to_ts: Optional[int] = None,
) -> int:
    store = TelemetryStore(config.storage.path)
    try:
        count = 0
        for sample in store.range(from_ts, to_ts):
            stream.write(json.dumps(sample.as_dict()) + "\n")
            count += 1
    finally:
        store.close()
    return count


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "start":
        return GatewayApp.start(config)

    if args.command == "show-config":
        show_config(config, sys.stdout)
        return 0

    if args.command == "export":
        try:
            export_telemetry(config, sys.stdout, from_ts=args.from_ts, to_ts=args.to_ts)
        except StorageError as exc:
            LOGGER.error("Export failed: %s", exc)
            return 1
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
