"""Adapter modules for external integrations."""

from .bridge import (
    BridgeCapabilities,
    BridgeError,
    BridgeTransport,
    discover_identity,
    verify_license,
)
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "BridgeCapabilities",
    "BridgeError",
    "BridgeTransport",
    "MQTTClient",
    "MQTTConnectionError",
    "discover_identity",
    "verify_license",
]
