import asyncio
import json
from typing import Callable, List, Optional

import pytest

from pilot_gateway.config import BrokerConfig, SessionConfig, load_config
from pilot_gateway.errors import TransportError


class FakeTransport:
    """In-memory broker transport recording every call."""

    def __init__(
        self,
        config: BrokerConfig,
        *,
        fail_connects: int = 0,
        refuse: Optional[set] = None,
        on_publish: Optional[Callable] = None,
        subscribe_delay: float = 0.0,
        unsubscribe_delay: float = 0.0,
    ):
        self.config = config
        self.fail_connects = fail_connects
        self.refuse = set(refuse or ())
        self.on_publish = on_publish
        self.subscribe_delay = subscribe_delay
        self.unsubscribe_delay = unsubscribe_delay
        self.connect_calls = 0
        self.calls: List[str] = []
        self.published: list = []
        self.subscribed: list = []
        self.unsubscribed: list = []
        self._connected = False
        self._handler = None
        self._disconnect_handlers: list = []

    async def connect(self, timeout: float = 30.0) -> None:
        self.connect_calls += 1
        self.calls.append("connect")
        if self.connect_calls <= self.fail_connects:
            raise TransportError("Simulated connection failure")
        self._connected = True

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.calls.append("disconnect")
        self._connected = False

    async def publish(self, topic, payload, qos=0, timeout=10.0) -> None:
        if not self._connected:
            raise TransportError("not connected")
        self.published.append((topic, payload, qos))
        if self.on_publish is not None:
            self.on_publish(self, topic, payload)

    async def subscribe(self, topic, qos=0, timeout=10.0) -> None:
        if self.subscribe_delay:
            await asyncio.sleep(self.subscribe_delay)
        if not self._connected:
            raise TransportError("not connected")
        if topic in self.refuse:
            raise TransportError(f"Broker refused subscription to {topic}")
        self.subscribed.append((topic, qos))

    async def unsubscribe(self, topic, timeout=10.0) -> None:
        if self.unsubscribe_delay:
            await asyncio.sleep(self.unsubscribe_delay)
        self.unsubscribed.append(topic)

    def set_message_handler(self, handler) -> None:
        self._handler = handler

    def register_disconnect_handler(self, handler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # test helpers ---------------------------------------------------
    def deliver(self, topic: str, payload) -> None:
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if self._handler is not None:
            self._handler(topic, payload)

    def drop(self, rc: int = 7) -> None:
        self._connected = False
        for handler in list(self._disconnect_handlers):
            handler(rc)


class FakeTransportFactory:
    def __init__(self):
        self.created: List[FakeTransport] = []
        self.fail_connects = 0
        self.refuse: set = set()
        self.on_publish: Optional[Callable] = None
        self.subscribe_delay = 0.0
        self.unsubscribe_delay = 0.0

    def __call__(self, config: BrokerConfig) -> FakeTransport:
        transport = FakeTransport(
            config,
            fail_connects=self.fail_connects,
            refuse=self.refuse,
            on_publish=self.on_publish,
            subscribe_delay=self.subscribe_delay,
            unsubscribe_delay=self.unsubscribe_delay,
        )
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def broker_config():
    return BrokerConfig(
        host="broker.test", port=1883, username="pilot", password="secret"
    )


@pytest.fixture
def fast_session():
    return SessionConfig(
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.05,
        reconnect_jitter_ratio=0.0,
        reconnect_max_attempts=3,
        connect_timeout_seconds=1.0,
        publish_timeout_seconds=1.0,
    )


@pytest.fixture
def gateway_config(tmp_path, fast_session):
    config = load_config(tmp_path / "pilot-gateway.cfg", environ={})
    config.broker.username = "pilot"
    config.broker.password = "secret"
    config.device.aircraft_serial = "AC-001"
    config.device.gateway_serial = "RC-001"
    config.session = fast_session
    config.commands.reply_timeout_seconds = 1.0
    config.storage.path = tmp_path / "telemetry.db"
    config.logging.path = None
    return config


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 1.0) -> None:
        async def _poll():
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout=timeout)

    return _wait
