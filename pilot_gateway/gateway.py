"""Gateway facade: the single entry point for the web and UI layers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .adapters.bridge import (
    BridgeCapabilities,
    BridgeTransport,
    discover_identity,
    verify_license,
)
from .config import BrokerConfig, DeviceConfig, GatewayConfig
from .core.models import (
    DecodedMessage,
    DeviceIdentity,
    SessionState,
    StatusUpdate,
    Subscription,
    TelemetrySample,
    TopologyUpdate,
)
from .core.protocols import BrokerTransport, VendorBridge
from .core.topics import TopicScheme
from .correlator import CommandCorrelator
from .errors import ConfigurationError, StorageError, TransportError
from .events import EventChannel, Listener, ListenerHandle, StatusStream
from .router import TopicRouter
from .session import SessionManager, TransportFactory
from .store import TelemetryRange, TelemetryStore

LOGGER = logging.getLogger(__name__)


def identity_from_config(device: DeviceConfig) -> DeviceIdentity:
    """Build a device identity from configured serials.

    Raises:
        ConfigurationError: Aircraft or gateway serial is missing.
    """

    gateway = device.gateway_serial or device.remote_controller_serial
    if not device.aircraft_serial or not gateway:
        raise ConfigurationError(
            "Device aircraft_serial and gateway_serial must be configured "
            "when no vendor bridge is attached"
        )
    return DeviceIdentity(
        aircraft_serial=device.aircraft_serial,
        gateway_serial=gateway,
        remote_controller_serial=device.remote_controller_serial or gateway,
    )


def expand_topic(template: str, identity: DeviceIdentity) -> str:
    """Substitute ``{aircraft}``, ``{gateway}`` and ``{rc}`` placeholders."""
    return template.format(
        aircraft=identity.aircraft_serial,
        gateway=identity.gateway_serial,
        rc=identity.remote_controller_serial,
    )


class Gateway:
    """Wires session, router, codec, correlator and store together.

    The web and UI layers interact only with this class: they start and stop
    the session, send commands, add telemetry subscriptions, and attach
    listeners for telemetry, session status and device events. Every
    ``on_*`` call returns its own :class:`ListenerHandle`.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        store: Optional[TelemetryStore] = None,
        bridge: Optional[VendorBridge] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._bridge = bridge
        self._bridge_transport: Optional[BridgeTransport] = None

        self.telemetry: EventChannel[TelemetrySample] = EventChannel("telemetry")
        self.events: EventChannel[DecodedMessage] = EventChannel("events")

        self._router = TopicRouter(
            store=store, telemetry=self.telemetry, events=self.events
        )

        if transport_factory is None and bridge is not None:
            transport_factory = self._bridge_transport_factory

        self._session = SessionManager(
            config.session,
            transport_factory=transport_factory,
            frame_handler=self._router.dispatch,
        )
        self._correlator = CommandCorrelator(
            self._session.publish,
            default_timeout=config.commands.reply_timeout_seconds,
        )
        self._router.set_reply_handler(self._correlator.resolve)
        self._session.add_teardown_hook(self._cancel_pending_commands)

        self._identity: Optional[DeviceIdentity] = None
        self._topics: Optional[TopicScheme] = None

    def _bridge_transport_factory(self, broker: BrokerConfig) -> BrokerTransport:
        assert self._bridge is not None
        self._bridge_transport = BridgeTransport(self._bridge, broker)
        return self._bridge_transport

    def _cancel_pending_commands(self) -> None:
        self._correlator.cancel_all("session closed")

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def identity(self) -> Optional[DeviceIdentity]:
        return self._identity

    @property
    def topics(self) -> Optional[TopicScheme]:
        return self._topics

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def status(self) -> StatusStream:
        return self._session.status

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def router(self) -> TopicRouter:
        return self._router

    @property
    def correlator(self) -> CommandCorrelator:
        return self._correlator

    @property
    def store(self) -> Optional[TelemetryStore]:
        return self._store

    def topologies(self) -> Dict[str, TopologyUpdate]:
        """Latest sub-device topology reported by each gateway."""
        return self._router.topologies()

    @property
    def capabilities(self) -> Optional[BridgeCapabilities]:
        transport = self._bridge_transport
        return transport.capabilities if transport is not None else None

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    async def start_session(
        self,
        device_config: Optional[DeviceConfig] = None,
        *,
        broker: Optional[BrokerConfig] = None,
    ) -> StatusStream:
        """Validate settings, resolve the device identity and open the session.

        Raises:
            ConfigurationError: Broker credentials or device serials are
                missing, or the bridge licence check failed. Raised before
                any broker connection is attempted.
        """

        broker_config = broker or self._config.broker
        device = device_config or self._config.device
        broker_config.validate()

        if self._session.state in (
            SessionState.CONNECTING,
            SessionState.CONNECTED,
            SessionState.RECONNECTING,
        ):
            return self._session.status

        if self._identity is None:
            self._identity = await self._resolve_identity(device)
        self._topics = TopicScheme(self._identity)

        subscriptions = self._initial_subscriptions(device, self._topics)
        LOGGER.info(
            "Starting session for aircraft %s via gateway %s",
            self._identity.aircraft_serial,
            self._identity.gateway_serial,
        )
        return await self._session.connect(broker_config, subscriptions)

    async def _resolve_identity(self, device: DeviceConfig) -> DeviceIdentity:
        if self._bridge is None:
            return identity_from_config(device)
        await verify_license(self._bridge, self._config.bridge)
        return await discover_identity(self._bridge)

    def _initial_subscriptions(
        self, device: DeviceConfig, topics: TopicScheme
    ) -> List[Subscription]:
        assert self._identity is not None
        if device.default_qos not in (0, 1, 2):
            raise ConfigurationError(f"Invalid default_qos {device.default_qos}")

        subscriptions = [Subscription(topic_pattern=topics.services_reply, qos=1)]
        for template in device.default_subscriptions:
            try:
                pattern = expand_topic(template, self._identity)
            except (KeyError, IndexError) as exc:
                raise ConfigurationError(
                    f"Unknown placeholder in subscription {template!r}"
                ) from exc
            subscriptions.append(
                Subscription(topic_pattern=pattern, qos=device.default_qos)
            )
        return subscriptions

    async def stop_session(self) -> None:
        """Cancel pending commands, drop subscriptions and disconnect.

        Active ``stream()`` iterators on the telemetry, event and status
        channels end after the final ``disconnected`` update; listeners stay
        attached for the next session.
        """

        await self._session.disconnect()
        self._correlator.cancel_all("session closed")
        for channel in (self.telemetry, self.events, self._session.status):
            channel.close()
        self._router.reset()
        self._identity = None
        self._topics = None
        self._bridge_transport = None

    async def wait_connected(self, timeout: float = 30.0) -> StatusUpdate:
        return await self._session.wait_for_state(
            SessionState.CONNECTED, SessionState.FAILED, timeout=timeout
        )

    # ------------------------------------------------------------------
    # Commands and subscriptions
    # ------------------------------------------------------------------
    async def send_command(
        self,
        method: str,
        data: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a service command to the gateway and wait for its reply."""

        topics = self._topics
        if topics is None:
            raise TransportError("No active session")
        return await self._correlator.send(
            method, data, topic=topics.services, timeout=timeout
        )

    async def subscribe_telemetry(
        self, pattern: Optional[str] = None, qos: int = 0
    ) -> Subscription:
        """Subscribe to a telemetry topic pattern (default: the aircraft OSD topic)."""

        if pattern is None:
            if self._topics is None:
                raise TransportError("No active session")
            pattern = self._topics.aircraft_osd
        return await self._session.subscribe(pattern, qos=qos)

    async def unsubscribe_telemetry(self, pattern: str) -> None:
        await self._session.unsubscribe(pattern)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def on_telemetry(self, callback: Listener) -> ListenerHandle:
        return self.telemetry.add_listener(callback)

    def on_status(self, callback: Listener) -> ListenerHandle:
        return self._session.status.add_listener(callback)

    def on_event(self, callback: Listener) -> ListenerHandle:
        """Topology changes and property reports."""
        return self.events.add_listener(callback)

    # ------------------------------------------------------------------
    # Stored telemetry
    # ------------------------------------------------------------------
    def _require_store(self) -> TelemetryStore:
        if self._store is None:
            raise StorageError("No telemetry store configured")
        return self._store

    def latest_telemetry(self) -> Optional[TelemetrySample]:
        return self._require_store().latest()

    def telemetry_range(
        self, from_ts: Optional[int] = None, to_ts: Optional[int] = None
    ) -> TelemetryRange:
        return self._require_store().range(from_ts, to_ts)
