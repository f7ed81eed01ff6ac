"""Core primitives for pilot-gateway."""

from .models import (
    CommandEnvelope,
    CommandReply,
    DecodedMessage,
    DeviceIdentity,
    OsdReport,
    PendingCommand,
    PropertyReport,
    SessionState,
    StatusUpdate,
    Subscription,
    TelemetrySample,
    TopologyUpdate,
    UnknownMessage,
    now_ms,
)
from .protocols import BrokerTransport, MessageHandler, VendorBridge
from .topics import TopicScheme, validate_pattern

__all__ = [
    "BrokerTransport",
    "CommandEnvelope",
    "CommandReply",
    "DecodedMessage",
    "DeviceIdentity",
    "MessageHandler",
    "OsdReport",
    "PendingCommand",
    "PropertyReport",
    "SessionState",
    "StatusUpdate",
    "Subscription",
    "TelemetrySample",
    "TopicScheme",
    "TopologyUpdate",
    "UnknownMessage",
    "VendorBridge",
    "now_ms",
    "validate_pattern",
]
