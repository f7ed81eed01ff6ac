"""Process-wide logging setup for pilot-gateway."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty transport loggers, kept at WARNING unless network logging is on.
NETWORK_LOGGERS = (
    "aiohttp.access",
    "paho",
    "pilot_gateway.adapters.mqtt.paho",
)


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Install console (and optionally file) handlers on the root logger.

    ``log_network`` keeps the paho and aiohttp loggers at ``level``, which
    is useful when diagnosing broker handshakes.
    """

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(numeric_level)
    logging.captureWarnings(True)

    network_level = numeric_level if log_network else max(numeric_level, logging.WARNING)
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
