"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..core.protocols import DisconnectHandler, MessageHandler
from ..errors import TransportError

LOGGER = logging.getLogger(__name__)
PAHO_LOGGER = logging.getLogger(f"{__name__}.paho")


class MQTTConnectionError(TransportError):
    """Raised when the MQTT client fails to connect, publish or subscribe."""


def _reason_value(reason_code: Any) -> int:
    if isinstance(reason_code, int):
        return reason_code
    return int(getattr(reason_code, "value", 0))


def _is_failure(reason_code: Any) -> bool:
    failure = getattr(reason_code, "is_failure", None)
    if isinstance(failure, bool):
        return failure
    return _reason_value(reason_code) >= 128


def _resolve(future: "asyncio.Future[Any]", result: Any) -> None:
    if not future.done():
        future.set_result(result)


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho runs its network loop on a background thread; every callback that
    touches asyncio state is handed to the event loop with
    ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: Optional[str] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id or config.client_id or f"pilot-gateway-{uuid.uuid4().hex[:8]}"
        self.keepalive = config.keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[DisconnectHandler] = []

        self._ack_lock = threading.Lock()
        self._publish_waiters: Dict[int, "asyncio.Future[None]"] = {}
        self._subscribe_waiters: Dict[int, "asyncio.Future[List[Any]]"] = {}
        self._early_subacks: Dict[int, List[Any]] = {}

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=self.config.clean_session,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(PAHO_LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        if self.config.tls:
            ca_file = str(self.config.ca_file) if self.config.ca_file else None
            client.tls_set(ca_certs=ca_file)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe
        return client

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        if self._client is not None:
            await self._discard_client()

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = self._build_client()
        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )

        try:
            client.connect_async(self.config.host, self.config.port, self.keepalive)
        except (OSError, ValueError) as exc:
            self._client = None
            raise MQTTConnectionError(f"Could not start MQTT connection: {exc}") from exc
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        client = self._client
        was_connected = self._connected
        client.disconnect()

        try:
            if was_connected and self._disconnect_event is not None:
                await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_waiters("MQTT client disconnected")

    async def _discard_client(self) -> None:
        client = self._client
        self._client = None
        self._connected = False
        if client is not None:
            client.loop_stop()
        self._fail_waiters("MQTT client replaced")

    async def publish(
        self, topic: str, payload: bytes, qos: int = 0, timeout: float = 10.0
    ) -> None:
        """Publish ``payload``; for ``qos > 0`` wait for the broker ack."""

        if not self._client or not self._connected:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
        if qos == 0:
            return

        assert self._loop is not None
        future: "asyncio.Future[None]" = self._loop.create_future()
        with self._ack_lock:
            self._publish_waiters[info.mid] = future
        if info.is_published():
            with self._ack_lock:
                self._publish_waiters.pop(info.mid, None)
            return

        try:
            await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                f"Timed out waiting for publish ack on {topic}"
            ) from exc
        finally:
            with self._ack_lock:
                self._publish_waiters.pop(info.mid, None)

    async def subscribe(self, topic: str, qos: int = 0, timeout: float = 10.0) -> None:
        if not self._client or not self._connected:
            raise MQTTConnectionError("MQTT client not connected")

        assert self._loop is not None
        future: "asyncio.Future[List[Any]]" = self._loop.create_future()
        with self._ack_lock:
            result, mid = self._client.subscribe(topic, qos=qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise MQTTConnectionError(f"Subscribe failed with rc={result}")
            early = self._early_subacks.pop(mid, None)
            if early is None:
                self._subscribe_waiters[mid] = future
            else:
                future.set_result(early)

        try:
            granted = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(f"Timed out waiting for SUBACK on {topic}") from exc
        finally:
            with self._ack_lock:
                self._subscribe_waiters.pop(mid, None)

        if any(_is_failure(code) for code in granted):
            raise MQTTConnectionError(f"Broker refused subscription to {topic}")

    async def unsubscribe(self, topic: str, timeout: float = 10.0) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        result, _ = self._client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _fail_waiters(self, reason: str) -> None:
        with self._ack_lock:
            waiters = list(self._publish_waiters.values()) + list(
                self._subscribe_waiters.values()
            )
            self._publish_waiters.clear()
            self._subscribe_waiters.clear()
            self._early_subacks.clear()
        for future in waiters:
            if not future.done():
                future.set_exception(MQTTConnectionError(reason))

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._handle_connect, rc)

    def _handle_connect(self, rc: int) -> None:
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _on_disconnect(
        self, client: mqtt.Client, userdata, flags, reason_code=0, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._handle_disconnect, client, rc)

    def _handle_disconnect(self, client: mqtt.Client, rc: int) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        if client is not self._client and self._client is not None:
            # Callback from a client that has already been replaced.
            return
        was_connected = self._connected
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        if not was_connected:
            return
        self._fail_waiters(f"MQTT connection lost (rc={rc})")
        for handler in list(self._disconnect_handlers):
            try:
                handler(rc)
            except Exception:
                LOGGER.exception("MQTT disconnect handler raised an exception")

    def _on_publish(self, client: mqtt.Client, userdata, mid: int, reason_code=None, properties=None) -> None:
        with self._ack_lock:
            future = self._publish_waiters.pop(mid, None)
        if future is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(_resolve, future, None)

    def _on_subscribe(
        self, client: mqtt.Client, userdata, mid: int, reason_codes, properties=None
    ) -> None:
        codes = list(reason_codes) if isinstance(reason_codes, (list, tuple)) else [reason_codes]
        with self._ack_lock:
            future = self._subscribe_waiters.pop(mid, None)
            if future is None:
                self._early_subacks[mid] = codes
                return
        if self._loop is not None:
            self._loop.call_soon_threadsafe(_resolve, future, codes)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        handler = self._message_handler
        loop = self._loop
        if not handler or not loop:
            return

        loop.call_soon_threadsafe(handler, message.topic, bytes(message.payload))
