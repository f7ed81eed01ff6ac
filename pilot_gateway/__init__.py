"""Telemetry and command session manager for a drone-fleet MQTT gateway."""

from .config import GatewayConfig, load_config
from .core.models import (
    DeviceIdentity,
    SessionState,
    StatusUpdate,
    Subscription,
    TelemetrySample,
)
from .errors import (
    CommandCancelled,
    CommandRejected,
    ConfigurationError,
    CorrelationTimeout,
    DecodeError,
    GatewayError,
    StorageError,
    TransportError,
)
from .gateway import Gateway
from .session import SessionManager
from .store import TelemetryStore

__all__ = [
    "CommandCancelled",
    "CommandRejected",
    "ConfigurationError",
    "CorrelationTimeout",
    "DecodeError",
    "DeviceIdentity",
    "Gateway",
    "GatewayConfig",
    "GatewayError",
    "SessionManager",
    "SessionState",
    "StatusUpdate",
    "StorageError",
    "Subscription",
    "TelemetrySample",
    "TelemetryStore",
    "TransportError",
    "load_config",
]
