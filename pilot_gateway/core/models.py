"""Domain models for telemetry, commands and session state."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class SessionState(str, Enum):
    """Lifecycle state of a broker session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class StatusUpdate:
    state: SessionState
    previous: Optional[SessionState] = None
    detail: Optional[str] = None
    error: Optional[BaseException] = None
    at: int = field(default_factory=now_ms)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "previous": self.previous.value if self.previous else None,
            "detail": self.detail,
            "error": str(self.error) if self.error else None,
            "at": self.at,
        }


@dataclass(frozen=True, slots=True)
class TelemetrySample:
    """One decoded OSD sample. Absent readings stay ``None``."""

    timestamp: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    elevation: Optional[float] = None
    attitude_pitch: Optional[float] = None
    attitude_roll: Optional[float] = None
    attitude_heading: Optional[float] = None
    horizontal_speed: Optional[float] = None
    vertical_speed: Optional[float] = None
    received_at: int = field(default_factory=now_ms)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "elevation": self.elevation,
            "attitudePitch": self.attitude_pitch,
            "attitudeRoll": self.attitude_roll,
            "attitudeHeading": self.attitude_heading,
            "horizontalSpeed": self.horizontal_speed,
            "verticalSpeed": self.vertical_speed,
            "receivedAt": self.received_at,
        }


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    aircraft_serial: str
    gateway_serial: str
    remote_controller_serial: str


@dataclass(frozen=True, slots=True)
class Subscription:
    topic_pattern: str
    qos: int = 0


@dataclass(slots=True)
class PendingCommand:
    transaction_id: str
    business_id: str
    method: str
    issued_at: float
    future: "asyncio.Future[Dict[str, Any]]"


@dataclass(frozen=True, slots=True)
class CommandEnvelope:
    tid: str
    bid: str
    timestamp: int
    method: str
    data: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tid": self.tid,
            "bid": self.bid,
            "timestamp": self.timestamp,
            "method": self.method,
            "data": self.data,
        }


# ----------------------------------------------------------------------
# Decoded inbound message variants
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TopologyUpdate:
    topic: str
    gateway_serial: Optional[str]
    sub_devices: tuple
    timestamp: Optional[int]
    payload: Dict[str, Any]
    method: str = "update_topo"


@dataclass(frozen=True, slots=True)
class PropertyReport:
    topic: str
    method: Optional[str]
    timestamp: Optional[int]
    data: Dict[str, Any]
    payload: Dict[str, Any]


@dataclass(frozen=True, slots=True)
class OsdReport:
    topic: str
    method: Optional[str]
    timestamp: Optional[int]
    data: Dict[str, Any]
    payload: Dict[str, Any]


@dataclass(frozen=True, slots=True)
class CommandReply:
    topic: str
    transaction_id: str
    business_id: Optional[str]
    method: Optional[str]
    timestamp: Optional[int]
    data: Dict[str, Any]
    payload: Dict[str, Any]

    @property
    def result(self) -> Any:
        return self.data.get("result")


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    topic: str
    reason: str
    raw: bytes = b""


DecodedMessage = Union[
    TopologyUpdate, PropertyReport, OsdReport, CommandReply, UnknownMessage
]
