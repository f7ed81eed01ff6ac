"""Constants used across the pilot-gateway package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "pilot-gateway"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".pilot-gateway" / DEFAULT_CONFIG_FILENAME
DEFAULT_STORAGE_PATH = Path.home() / ".pilot-gateway" / "telemetry.db"
DEFAULT_LOG_PATH = Path.home() / ".pilot-gateway" / "logs" / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_KEEPALIVE_SECONDS = 60

ENV_PREFIX = "PILOT_GATEWAY_"

# DJI Cloud API topic layout
TOPIC_OSD = "thing/product/{serial}/osd"
TOPIC_SERVICES = "thing/product/{serial}/services"
TOPIC_SERVICES_REPLY = "thing/product/{serial}/services_reply"

METHOD_UPDATE_TOPO = "update_topo"
