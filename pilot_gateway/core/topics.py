"""Topic layout of the DJI Cloud API, bound to a device identity."""

from __future__ import annotations

from dataclasses import dataclass

from .. import constants
from .models import DeviceIdentity


@dataclass(frozen=True, slots=True)
class TopicScheme:
    identity: DeviceIdentity

    @property
    def aircraft_osd(self) -> str:
        return constants.TOPIC_OSD.format(serial=self.identity.aircraft_serial)

    @property
    def services(self) -> str:
        return constants.TOPIC_SERVICES.format(serial=self.identity.gateway_serial)

    @property
    def services_reply(self) -> str:
        return constants.TOPIC_SERVICES_REPLY.format(
            serial=self.identity.gateway_serial
        )


def validate_pattern(pattern: str) -> None:
    """Raise ``ValueError`` for patterns the broker would reject."""

    if not pattern:
        raise ValueError("Topic pattern must not be empty")
    parts = pattern.split("/")
    for index, part in enumerate(parts):
        if "#" in part and (part != "#" or index != len(parts) - 1):
            raise ValueError(f"Invalid multi-level wildcard in {pattern!r}")
        if "+" in part and part != "+":
            raise ValueError(f"Invalid single-level wildcard in {pattern!r}")
