"""Dispatch of inbound broker frames to storage, correlation and listeners."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from . import codec
from .core.models import (
    CommandReply,
    DecodedMessage,
    OsdReport,
    PropertyReport,
    TelemetrySample,
    TopologyUpdate,
    UnknownMessage,
    now_ms,
)
from .errors import StorageError
from .events import EventChannel
from .store import TelemetryStore

LOGGER = logging.getLogger(__name__)

ReplyHandler = Callable[[CommandReply], bool]


@dataclass(slots=True)
class RouterCounters:
    dispatched: int = 0
    telemetry: int = 0
    replies: int = 0
    topology_changes: int = 0
    topology_suppressed: int = 0
    dropped: int = 0
    storage_failures: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "dispatched": self.dispatched,
            "telemetry": self.telemetry,
            "replies": self.replies,
            "topologyChanges": self.topology_changes,
            "topologySuppressed": self.topology_suppressed,
            "dropped": self.dropped,
            "storageFailures": self.storage_failures,
        }


class TopicRouter:
    """Classifies frames by shape and forwards them downstream.

    Topology updates are coalesced per gateway: only the latest is kept and
    a frame is forwarded to event listeners only when it differs from the
    cached one. Storage failures are logged and counted; they never stop
    dispatch of subsequent frames.
    """

    def __init__(
        self,
        *,
        store: Optional[TelemetryStore] = None,
        telemetry: Optional[EventChannel[TelemetrySample]] = None,
        events: Optional[EventChannel[DecodedMessage]] = None,
        reply_handler: Optional[ReplyHandler] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self.telemetry: EventChannel[TelemetrySample] = telemetry or EventChannel(
            "telemetry"
        )
        self.events: EventChannel[DecodedMessage] = events or EventChannel("events")
        self._reply_handler = reply_handler
        self._clock = clock
        self._topologies: Dict[str, TopologyUpdate] = {}
        self.counters = RouterCounters()
        self.last_storage_error: Optional[StorageError] = None

    def set_reply_handler(self, handler: Optional[ReplyHandler]) -> None:
        self._reply_handler = handler

    def topologies(self) -> Dict[str, TopologyUpdate]:
        """Latest topology per gateway serial."""
        return dict(self._topologies)

    def reset(self) -> None:
        self._topologies.clear()

    def dispatch(self, topic: str, raw_payload: bytes) -> DecodedMessage:
        received_at = self._clock()
        message = codec.decode(raw_payload, topic)
        self.counters.dispatched += 1

        if isinstance(message, TopologyUpdate):
            self._handle_topology(message)
        elif isinstance(message, CommandReply):
            self._handle_reply(message)
        elif isinstance(message, (OsdReport, PropertyReport)):
            self._handle_report(message, received_at)
        else:
            self._handle_unknown(message)
        return message

    def _handle_topology(self, message: TopologyUpdate) -> None:
        key = message.gateway_serial or message.topic
        previous = self._topologies.get(key)
        self._topologies[key] = message
        if previous is not None and previous.sub_devices == message.sub_devices:
            self.counters.topology_suppressed += 1
            return

        self.counters.topology_changes += 1
        LOGGER.info(
            "Topology update from %s: %d sub-device(s)",
            key,
            len(message.sub_devices),
        )
        self.events.publish(message)

    def _handle_reply(self, message: CommandReply) -> None:
        self.counters.replies += 1
        handler = self._reply_handler
        if handler is None or not handler(message):
            LOGGER.debug(
                "Reply %s (%s) matched no pending command",
                message.transaction_id,
                message.method,
            )

    def _handle_report(
        self, message: OsdReport | PropertyReport, received_at: int
    ) -> None:
        if isinstance(message, PropertyReport):
            self.events.publish(message)

        sample = codec.to_sample(message, received_at=received_at)
        if sample is None:
            return

        if self._store is not None:
            try:
                self._store.append(sample)
            except StorageError as exc:
                self.counters.storage_failures += 1
                self.last_storage_error = exc
                LOGGER.error("Dropping telemetry sample %s: %s", sample.timestamp, exc)
                return

        self.counters.telemetry += 1
        self.telemetry.publish(sample)

    def _handle_unknown(self, message: UnknownMessage) -> None:
        self.counters.dropped += 1
        LOGGER.debug("Dropping frame on %s: %s", message.topic, message.reason)
