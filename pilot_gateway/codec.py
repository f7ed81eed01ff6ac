"""Encoding of command envelopes and tolerant decoding of inbound frames.

Gateways multiplex several message kinds onto overlapping topics, so frames
are classified by their shape rather than by topic:

- ``update_topo`` method                    -> :class:`TopologyUpdate`
- ``tid`` on a ``*_reply`` topic or method -> :class:`CommandReply`
- position/attitude/speed readings         -> :class:`OsdReport`
- any other enveloped ``data`` object      -> :class:`PropertyReport`
- everything else                          -> :class:`UnknownMessage`

Decoding never raises. Payloads may arrive double-encoded (a JSON string
whose value is itself JSON); one extra unwrap is attempted.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from . import constants
from .core.models import (
    CommandEnvelope,
    CommandReply,
    DecodedMessage,
    OsdReport,
    PropertyReport,
    TelemetrySample,
    TopologyUpdate,
    UnknownMessage,
    now_ms,
)
from .errors import DecodeError

LOGGER = logging.getLogger(__name__)

# Sample attribute -> accepted payload keys, in lookup order.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lng", "lon"),
    "altitude": ("altitude", "height"),
    "elevation": ("elevation",),
    "attitude_pitch": ("attitude_pitch", "attitudePitch", "pitch"),
    "attitude_roll": ("attitude_roll", "attitudeRoll", "roll"),
    "attitude_heading": (
        "attitude_head",
        "attitude_heading",
        "attitudeHeading",
        "attitudeHead",
        "heading",
    ),
    "horizontal_speed": ("horizontal_speed", "horizontalSpeed"),
    "vertical_speed": ("vertical_speed", "verticalSpeed"),
}

_MAX_TIMESTAMP = 2**63

_TELEMETRY_KEYS = frozenset(key for keys in FIELD_ALIASES.values() for key in keys)

RawPayload = Union[bytes, bytearray, str]


def encode_command(method: str, data: Optional[Mapping[str, Any]] = None) -> CommandEnvelope:
    """Build an outgoing command envelope with fresh transaction/business ids."""

    if not method:
        raise ValueError("Command method must not be empty")

    return CommandEnvelope(
        tid=str(uuid.uuid4()),
        bid=str(uuid.uuid4()),
        timestamp=now_ms(),
        method=method,
        data=dict(data or {}),
    )


def envelope_to_bytes(envelope: CommandEnvelope) -> bytes:
    return json.dumps(envelope.as_dict(), separators=(",", ":")).encode("utf-8")


def parse_payload(raw: RawPayload) -> Dict[str, Any]:
    """Return the JSON object carried by ``raw``, unwrapping one string layer.

    Raises:
        DecodeError: The payload is not UTF-8, not JSON, or not an object.
    """

    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("Payload is not valid UTF-8") from exc
    else:
        text = raw

    try:
        value = json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"Payload is not JSON: {exc}") from exc
    except RecursionError as exc:
        raise DecodeError("Payload is nested too deeply") from exc

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise DecodeError("Double-encoded payload is not JSON") from exc
        except RecursionError as exc:
            raise DecodeError("Double-encoded payload is nested too deeply") from exc

    if not isinstance(value, dict):
        raise DecodeError(f"Expected a JSON object, got {type(value).__name__}")

    return value


def decode(raw: RawPayload, topic: str = "") -> DecodedMessage:
    """Classify an inbound frame. Malformed input yields :class:`UnknownMessage`."""

    try:
        payload = parse_payload(raw)
    except DecodeError as exc:
        return UnknownMessage(topic=topic, reason=str(exc), raw=_raw_bytes(raw))

    method = payload.get("method")
    method = method if isinstance(method, str) else None
    timestamp = _coerce_timestamp(payload.get("timestamp"))
    data = payload.get("data")

    if method == constants.METHOD_UPDATE_TOPO:
        return _decode_topology(topic, payload, data, timestamp)

    tid = payload.get("tid")
    if isinstance(tid, str) and tid and _is_reply(topic, method):
        return CommandReply(
            topic=topic,
            transaction_id=tid,
            business_id=payload.get("bid") if isinstance(payload.get("bid"), str) else None,
            method=method,
            timestamp=timestamp,
            data=data if isinstance(data, dict) else {},
            payload=payload,
        )

    if isinstance(data, dict):
        if _has_telemetry(data):
            return OsdReport(
                topic=topic, method=method, timestamp=timestamp, data=data, payload=payload
            )
        return PropertyReport(
            topic=topic, method=method, timestamp=timestamp, data=data, payload=payload
        )

    if _has_telemetry(payload):
        # Flat report without an envelope.
        return OsdReport(
            topic=topic, method=method, timestamp=timestamp, data=payload, payload=payload
        )

    return UnknownMessage(
        topic=topic, reason="Unrecognised message shape", raw=_raw_bytes(raw)
    )


def to_sample(
    report: Union[OsdReport, PropertyReport], *, received_at: Optional[int] = None
) -> Optional[TelemetrySample]:
    """Map a report onto a :class:`TelemetrySample`.

    Returns ``None`` when the report carries no telemetry reading at all.
    Missing readings stay ``None``; unknown fields are ignored. When the
    frame has no timestamp the receive time is used as the sample key.
    """

    received = received_at if received_at is not None else now_ms()
    values: Dict[str, Optional[float]] = {}
    for attribute, keys in FIELD_ALIASES.items():
        values[attribute] = _lookup_float(report.data, keys)

    if all(value is None for value in values.values()):
        return None

    timestamp = report.timestamp
    if timestamp is None:
        timestamp = _coerce_timestamp(report.data.get("timestamp"))
    if timestamp is None:
        timestamp = received

    return TelemetrySample(timestamp=timestamp, received_at=received, **values)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _decode_topology(
    topic: str, payload: Dict[str, Any], data: Any, timestamp: Optional[int]
) -> TopologyUpdate:
    data = data if isinstance(data, dict) else {}
    sub_devices = data.get("sub_devices")
    if not isinstance(sub_devices, list):
        sub_devices = []

    gateway = payload.get("gateway")
    if not isinstance(gateway, str) or not gateway:
        gateway = _serial_from_topic(topic)

    return TopologyUpdate(
        topic=topic,
        gateway_serial=gateway,
        sub_devices=tuple(
            _freeze(device) for device in sub_devices if isinstance(device, dict)
        ),
        timestamp=timestamp,
        payload=payload,
    )


def _freeze(device: Dict[str, Any]) -> Tuple[Tuple[str, str], ...]:
    """Hashable, order-independent view of a sub-device entry."""
    return tuple(sorted((str(key), json.dumps(value, sort_keys=True)) for key, value in device.items()))


def _is_reply(topic: str, method: Optional[str]) -> bool:
    # Event frames (flight task progress and the like) also carry a tid and
    # data.result; only the *_reply channels answer a command.
    if method and method.endswith("_reply"):
        return True
    return topic.endswith("_reply")


def _has_telemetry(data: Mapping[str, Any]) -> bool:
    return any(key in data for key in _TELEMETRY_KEYS)


def _lookup_float(data: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[float]:
    for key in keys:
        if key not in data:
            continue
        value = _coerce_float(data[key])
        if value is not None:
            return value
    return None


def _coerce_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, str)):
        try:
            result = float(value)
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _coerce_timestamp(value: Any) -> Optional[int]:
    # Sample timestamps are the SQLite INTEGER key, a signed 64-bit value.
    number = _coerce_float(value)
    if number is None or number < 0 or number >= _MAX_TIMESTAMP:
        return None
    return int(number)


def _serial_from_topic(topic: str) -> Optional[str]:
    parts = topic.split("/")
    if len(parts) >= 3 and parts[1] == "product":
        return parts[2] or None
    return None


def _raw_bytes(raw: RawPayload) -> bytes:
    if isinstance(raw, str):
        return raw.encode("utf-8", errors="replace")
    return bytes(raw)
