"""Broker transport over the pilot app's embedded vendor bridge.

The bridge exposes MQTT through named components whose names differ between
bridge versions. Instead of retrying every known name on every call, the
transport negotiates once per session:

- the messaging module is the first of :data:`MODULE_CANDIDATES` that loads;
- the publish component is the first of :data:`PUBLISH_CANDIDATES` the
  bridge accepts for the first outgoing message.

The result is cached in :class:`BridgeCapabilities` until the transport is
disconnected.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from ..config import BridgeConfig, BrokerConfig
from ..core.models import DeviceIdentity
from ..core.protocols import DisconnectHandler, MessageHandler, VendorBridge
from ..errors import ConfigurationError, TransportError

LOGGER = logging.getLogger(__name__)

MODULE_CANDIDATES: Tuple[str, ...] = ("thing", "cloud")
PUBLISH_CANDIDATES: Tuple[str, ...] = (
    "thing.publish",
    "cloud.publish",
    "thing.property.post",
)
SUBSCRIBE_CANDIDATES: Tuple[str, ...] = ("thing.subscribe", "cloud.subscribe")

STATUS_CALLBACK = "onMqttStatusChange"
MESSAGE_CALLBACK = "onTelemetryChange"

CONNECT_STATE_CONNECTED = 1


class BridgeError(TransportError):
    """Raised when the vendor bridge rejects a call."""


@dataclass(frozen=True, slots=True)
class BridgeResult:
    code: int
    message: str = ""
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.code == 0


def parse_result(raw: Any) -> BridgeResult:
    """Interpret a bridge return value. Unparseable values count as failures."""

    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except (ValueError, RecursionError):
            return BridgeResult(code=-1, message=raw)
    if isinstance(value, bool):
        return BridgeResult(code=0 if value else -1)
    if not isinstance(value, dict):
        return BridgeResult(code=-1, message=str(value))
    code = value.get("code", -1)
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = -1
    return BridgeResult(code=code, message=str(value.get("message", "")), data=value.get("data"))


@dataclass(slots=True)
class BridgeCapabilities:
    module: Optional[str] = None
    publish: Optional[str] = None
    subscribe: Optional[str] = None
    rejected: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "module": self.module,
            "publish": self.publish,
            "subscribe": self.subscribe,
            "rejected": list(self.rejected),
        }


async def verify_license(bridge: VendorBridge, config: BridgeConfig) -> None:
    """Run the bridge licence check when credentials are configured."""

    if not (config.app_id and config.app_key and config.license):
        LOGGER.debug("Bridge licence not configured; skipping verification")
        return
    result = parse_result(
        await bridge.verify_license(config.app_id, config.app_key, config.license)
    )
    if not result.ok:
        raise ConfigurationError(
            f"Bridge licence verification failed (code={result.code}): {result.message}"
        )
    LOGGER.info("Bridge licence verified")


async def discover_identity(bridge: VendorBridge) -> DeviceIdentity:
    """Query serial numbers once; the caller caches them for the session."""

    aircraft = (await bridge.get_aircraft_sn() or "").strip()
    gateway = (await bridge.get_gateway_sn() or "").strip()
    remote = (await bridge.get_remote_controller_sn() or "").strip()
    if not gateway:
        gateway = remote
    if not aircraft or not gateway:
        raise ConfigurationError("Bridge did not report aircraft and gateway serials")
    LOGGER.info("Discovered device identity aircraft=%s gateway=%s", aircraft, gateway)
    return DeviceIdentity(
        aircraft_serial=aircraft,
        gateway_serial=gateway,
        remote_controller_serial=remote or gateway,
    )


class BridgeTransport:
    """:class:`BrokerTransport` implemented on top of a :class:`VendorBridge`."""

    def __init__(self, bridge: VendorBridge, config: BrokerConfig) -> None:
        self._bridge = bridge
        self._config = config
        self._client_id = config.client_id or f"pilot-gateway-{uuid.uuid4().hex[:8]}"
        self._capabilities = BridgeCapabilities()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        self._connect_future: Optional["asyncio.Future[bool]"] = None
        self._message_handler: Optional[MessageHandler] = None
        self._disconnect_handlers: List[DisconnectHandler] = []
        self._callbacks_registered = False

    @property
    def capabilities(self) -> BridgeCapabilities:
        return self._capabilities

    def _register_callbacks(self) -> None:
        if self._callbacks_registered:
            return
        self._bridge.register_callback(STATUS_CALLBACK, self._on_status)
        self._bridge.register_callback(MESSAGE_CALLBACK, self._on_message)
        self._callbacks_registered = True

    def _connect_params(self) -> str:
        return json.dumps(
            {
                "host": self._config.host,
                "port": self._config.port,
                "username": self._config.username,
                "password": self._config.password,
                "clientId": self._client_id,
                "clean": self._config.clean_session,
                "keepalive": self._config.keepalive,
                "protocol": "ssl" if self._config.tls else "tcp",
                "connectCallback": STATUS_CALLBACK,
                "messageCallback": MESSAGE_CALLBACK,
            }
        )

    async def connect(self, timeout: float = 30.0) -> None:
        self._loop = asyncio.get_running_loop()
        self._register_callbacks()
        self._connect_future = self._loop.create_future()
        params = self._connect_params()

        candidates = (
            (self._capabilities.module,) if self._capabilities.module else MODULE_CANDIDATES
        )
        for name in candidates:
            result = parse_result(await self._bridge.load_component(name, params))
            if result.ok:
                if self._capabilities.module != name:
                    LOGGER.info("Bridge messaging module negotiated: %s", name)
                self._capabilities.module = name
                break
            LOGGER.info("Bridge rejected module %s (code=%s)", name, result.code)
            self._capabilities.rejected.append(name)
        else:
            raise BridgeError("Bridge accepted none of the messaging modules")

        try:
            accepted = await asyncio.wait_for(self._connect_future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise BridgeError("Timed out waiting for bridge connection status") from exc
        if not accepted:
            raise BridgeError("Bridge reported the broker connection as failed")

    async def disconnect(self, timeout: float = 5.0) -> None:
        module = self._capabilities.module
        self._connected = False
        if module is None:
            return
        try:
            result = parse_result(
                await asyncio.wait_for(self._bridge.unload_component(module), timeout)
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out unloading bridge module %s", module)
            return
        if not result.ok:
            LOGGER.warning("Bridge refused to unload %s (code=%s)", module, result.code)

    async def publish(
        self, topic: str, payload: bytes, qos: int = 0, timeout: float = 10.0
    ) -> None:
        if not self._connected:
            raise BridgeError("Bridge transport not connected")

        params = json.dumps(
            {"topic": topic, "message": payload.decode("utf-8"), "qos": qos}
        )
        if self._capabilities.publish is not None:
            await self._call(self._capabilities.publish, params, timeout)
            return

        for name in PUBLISH_CANDIDATES:
            result = await self._try(name, params, timeout)
            if result.ok:
                LOGGER.info("Bridge publish component negotiated: %s", name)
                self._capabilities.publish = name
                return
            self._capabilities.rejected.append(name)
        raise BridgeError("Bridge accepted none of the publish components")

    async def subscribe(self, topic: str, qos: int = 0, timeout: float = 10.0) -> None:
        if not self._connected:
            raise BridgeError("Bridge transport not connected")

        params = json.dumps({"topic": topic, "qos": qos})
        if self._capabilities.subscribe is not None:
            await self._call(self._capabilities.subscribe, params, timeout)
            return

        for name in SUBSCRIBE_CANDIDATES:
            result = await self._try(name, params, timeout)
            if result.ok:
                LOGGER.info("Bridge subscribe component negotiated: %s", name)
                self._capabilities.subscribe = name
                return
            self._capabilities.rejected.append(name)
        raise BridgeError("Bridge accepted none of the subscribe components")

    async def unsubscribe(self, topic: str, timeout: float = 10.0) -> None:
        if self._capabilities.subscribe is None:
            return
        name = self._capabilities.subscribe.rsplit(".", 1)[0] + ".unsubscribe"
        result = await self._try(name, json.dumps({"topic": topic}), timeout)
        if not result.ok:
            LOGGER.debug("Bridge unsubscribe of %s returned code=%s", topic, result.code)

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    async def _try(self, name: str, params: str, timeout: float) -> BridgeResult:
        try:
            raw = await asyncio.wait_for(self._bridge.load_component(name, params), timeout)
        except asyncio.TimeoutError as exc:
            raise BridgeError(f"Bridge call {name} timed out") from exc
        return parse_result(raw)

    async def _call(self, name: str, params: str, timeout: float) -> None:
        result = await self._try(name, params, timeout)
        if not result.ok:
            raise BridgeError(f"Bridge call {name} failed (code={result.code}): {result.message}")

    # ------------------------------------------------------------------
    # Bridge callbacks
    # ------------------------------------------------------------------
    def _on_status(self, raw: str) -> None:
        result = parse_result(raw)
        data = result.data if isinstance(result.data, dict) else {}
        connected = result.ok and data.get("connectState") == CONNECT_STATE_CONNECTED
        LOGGER.debug("Bridge status update: %s", raw)

        was_connected = self._connected
        self._connected = connected

        future = self._connect_future
        if future is not None and not future.done():
            future.set_result(connected)
            return

        if was_connected and not connected:
            for handler in list(self._disconnect_handlers):
                try:
                    handler(result.code if result.code else 1)
                except Exception:
                    LOGGER.exception("Bridge disconnect handler raised an exception")

    def _on_message(self, raw: str) -> None:
        handler = self._message_handler
        if handler is None:
            return

        topic = ""
        payload: Any = raw
        try:
            value = json.loads(raw)
        except (TypeError, ValueError, RecursionError):
            value = None
        if isinstance(value, dict) and isinstance(value.get("topic"), str):
            topic = value["topic"]
            payload = value.get("message", value.get("payload", ""))
            if not isinstance(payload, str):
                payload = json.dumps(payload)

        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        handler(topic, data)
