"""Protocol definitions for broker transports and the vendor bridge."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

MessageHandler = Callable[[str, bytes], None]
DisconnectHandler = Callable[[int], None]


class BrokerTransport(Protocol):
    """Minimal contract the session manager needs from a broker connection."""

    async def connect(self, timeout: float = 30.0) -> None:
        """Open the connection and wait for the broker acknowledgement."""
        ...

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Close the connection. Must be safe to call when already closed."""
        ...

    async def publish(
        self, topic: str, payload: bytes, qos: int = 0, timeout: float = 10.0
    ) -> None:
        """Publish a payload, waiting for the broker ack when ``qos > 0``."""
        ...

    async def subscribe(self, topic: str, qos: int = 0, timeout: float = 10.0) -> None:
        """Subscribe to a topic pattern and wait for SUBACK."""
        ...

    async def unsubscribe(self, topic: str, timeout: float = 10.0) -> None:
        """Remove a topic subscription."""
        ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        """Route inbound frames to ``handler`` on the event loop thread."""
        ...

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        """Invoke ``handler(rc)`` on the event loop whenever the link drops."""
        ...

    def is_connected(self) -> bool:
        ...


class VendorBridge(Protocol):
    """Call surface of the pilot app's embedded bridge object.

    Every call returns the bridge's JSON result string, typically of the
    form ``{"code": 0, "message": "ok", "data": ...}``.
    """

    async def verify_license(self, app_id: str, app_key: str, license: str) -> str:
        ...

    async def load_component(self, name: str, params: str) -> str:
        ...

    async def unload_component(self, name: str) -> str:
        ...

    def register_callback(self, name: str, callback: Callable[[str], None]) -> None:
        ...

    async def get_aircraft_sn(self) -> str:
        ...

    async def get_gateway_sn(self) -> str:
        ...

    async def get_remote_controller_sn(self) -> str:
        ...
