"""Unit tests for SessionManager.

Covers the session state machine:
- Idempotent connect and configuration checks before any attempt
- Connection loss recovery with subscription replay
- Bounded retries ending in the failed state
- Fail-fast publish/subscribe while not connected
- Ordered teardown on disconnect
"""

import asyncio

import pytest

from pilot_gateway.config import BrokerConfig
from pilot_gateway.core.models import SessionState, Subscription
from pilot_gateway.errors import ConfigurationError, TransportError
from pilot_gateway.session import SessionManager


@pytest.fixture
def session_setup(fast_session, transport_factory):
    sessions: list = []

    def _create(**kwargs) -> SessionManager:
        session = SessionManager(
            fast_session, transport_factory=transport_factory, **kwargs
        )
        sessions.append(session)
        return session

    return _create


def _record_states(session: SessionManager) -> list:
    states: list = []
    session.status.add_listener(lambda update: states.append(update.state))
    return states


@pytest.mark.asyncio
async def test_connect_replays_seed_subscriptions(
    session_setup, broker_config, transport_factory, wait_until
):
    session = session_setup()
    states = _record_states(session)

    await session.connect(broker_config, [Subscription("thing/product/+/osd", 0)])
    update = await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)
    await wait_until(lambda: transport_factory.last.subscribed)

    assert update.previous == SessionState.CONNECTING
    assert states == [SessionState.CONNECTING, SessionState.CONNECTED]
    assert transport_factory.last.subscribed == [("thing/product/+/osd", 0)]

    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_is_idempotent_while_active(
    session_setup, broker_config, transport_factory
):
    session = session_setup()

    first = await session.connect(broker_config)
    second = await session.connect(broker_config)
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)
    third = await session.connect(broker_config)

    assert first is second is third
    assert len(transport_factory.created) == 1
    assert transport_factory.last.connect_calls == 1

    await session.disconnect()


@pytest.mark.asyncio
async def test_invalid_settings_fail_before_connecting(session_setup, transport_factory):
    session = session_setup()

    with pytest.raises(ConfigurationError):
        await session.connect(BrokerConfig(host="broker.test", username="pilot"))

    with pytest.raises(ValueError):
        await session.connect(
            BrokerConfig(host="broker.test", username="pilot", password="secret"),
            [Subscription("bad/#/pattern")],
        )

    assert transport_factory.created == []
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connection_loss_reconnects_and_replays(
    session_setup, broker_config, transport_factory, wait_until
):
    session = session_setup()
    states = _record_states(session)

    await session.connect(broker_config)
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)
    await session.subscribe("thing/product/AC-001/osd", qos=1)

    transport = transport_factory.last
    transport.drop()

    await wait_until(lambda: states.count(SessionState.CONNECTED) == 2)
    await wait_until(lambda: len(transport.subscribed) == 2)

    assert states == [
        SessionState.CONNECTING,
        SessionState.CONNECTED,
        SessionState.RECONNECTING,
        SessionState.CONNECTED,
    ]
    assert transport.subscribed == [
        ("thing/product/AC-001/osd", 1),
        ("thing/product/AC-001/osd", 1),
    ]
    assert transport.connect_calls == 2

    await session.disconnect()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(
    session_setup, broker_config, transport_factory
):
    transport_factory.fail_connects = 100
    session = session_setup()
    states = _record_states(session)

    await session.connect(broker_config, [Subscription("thing/product/+/osd")])
    update = await session.wait_for_state(SessionState.FAILED, timeout=2.0)

    assert states == [
        SessionState.CONNECTING,
        SessionState.RECONNECTING,
        SessionState.FAILED,
    ]
    # one initial attempt plus reconnect_max_attempts retries
    assert transport_factory.last.connect_calls == 4
    assert isinstance(update.error, TransportError)
    assert isinstance(session.last_error, TransportError)
    assert [sub.topic_pattern for sub in session.subscriptions] == ["thing/product/+/osd"]

    with pytest.raises(TransportError):
        await session.publish("thing/product/RC-001/services", b"{}")

    await session.disconnect()
    assert session.state == SessionState.DISCONNECTED
    assert session.subscriptions == ()


@pytest.mark.asyncio
async def test_recovers_after_transient_connect_failures(
    session_setup, broker_config, transport_factory
):
    transport_factory.fail_connects = 2
    session = session_setup()

    await session.connect(broker_config)
    update = await session.wait_for_state(
        SessionState.CONNECTED, SessionState.FAILED, timeout=2.0
    )

    assert update.state == SessionState.CONNECTED
    assert transport_factory.last.connect_calls == 3

    await session.disconnect()


@pytest.mark.asyncio
async def test_publish_fails_fast_while_reconnecting(
    session_setup, broker_config, transport_factory, wait_until
):
    session = session_setup()
    states = _record_states(session)

    await session.connect(broker_config)
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    transport = transport_factory.last
    transport.fail_connects = 100
    transport.drop()
    await wait_until(lambda: SessionState.RECONNECTING in states)

    with pytest.raises(TransportError):
        await session.publish("thing/product/RC-001/services", b"{}", qos=1)
    with pytest.raises(TransportError):
        await session.subscribe("thing/product/AC-001/osd")

    assert transport.published == []

    await session.disconnect()


@pytest.mark.asyncio
async def test_subscribe_is_idempotent(session_setup, broker_config, transport_factory):
    session = session_setup()
    await session.connect(broker_config)
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    first = await session.subscribe("thing/product/AC-001/osd")
    second = await session.subscribe("thing/product/AC-001/osd")

    assert first == second
    assert transport_factory.last.subscribed == [("thing/product/AC-001/osd", 0)]

    with pytest.raises(ValueError):
        await session.subscribe("thing/product/AC-001/osd", qos=3)
    with pytest.raises(ValueError):
        await session.subscribe("thing/+x/osd")

    await session.unsubscribe("thing/product/AC-001/osd")
    assert session.subscriptions == ()
    assert transport_factory.last.unsubscribed == ["thing/product/AC-001/osd"]

    await session.disconnect()


@pytest.mark.asyncio
async def test_refused_subscription_is_dropped_on_replay(
    session_setup, broker_config, transport_factory, wait_until
):
    transport_factory.refuse = {"forbidden/topic"}
    session = session_setup()

    await session.connect(
        broker_config, [Subscription("forbidden/topic"), Subscription("allowed/topic")]
    )
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)
    await wait_until(lambda: len(session.subscriptions) == 1)

    assert session.subscriptions == (Subscription("allowed/topic"),)
    assert session.state == SessionState.CONNECTED

    await session.disconnect()


@pytest.mark.asyncio
async def test_disconnect_tears_down_in_order(
    session_setup, broker_config, transport_factory, wait_until
):
    session = session_setup()
    await session.connect(broker_config, [Subscription("a/b"), Subscription("c/d")])
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)
    transport = transport_factory.last
    await wait_until(lambda: len(transport.subscribed) == 2)

    session.add_teardown_hook(lambda: transport.calls.append("hook"))
    await session.disconnect()

    assert transport.calls[-2:] == ["hook", "disconnect"]
    assert sorted(transport.unsubscribed) == ["a/b", "c/d"]
    assert session.state == SessionState.DISCONNECTED
    assert session.subscriptions == ()
    assert session.transport is None

    # a second disconnect is harmless
    await session.disconnect()
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_frames_are_dispatched_in_order(
    session_setup, broker_config, transport_factory, wait_until
):
    received: list = []

    async def handler(topic: str, payload: bytes) -> None:
        await asyncio.sleep(0)
        received.append(payload)

    session = session_setup(frame_handler=handler)
    await session.connect(broker_config)
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    for index in range(5):
        transport_factory.last.deliver("thing/product/AC-001/osd", str(index))

    await wait_until(lambda: len(received) == 5)
    assert received == [b"0", b"1", b"2", b"3", b"4"]

    await session.disconnect()


@pytest.mark.asyncio
async def test_session_can_reconnect_after_failure(
    session_setup, broker_config, transport_factory
):
    transport_factory.fail_connects = 100
    session = session_setup()
    await session.connect(broker_config)
    await session.wait_for_state(SessionState.FAILED, timeout=2.0)

    transport_factory.fail_connects = 0
    await session.connect(broker_config)
    update = await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    assert update.previous == SessionState.CONNECTING
    assert len(transport_factory.created) == 2

    await session.disconnect()


@pytest.mark.asyncio
async def test_connected_is_announced_after_replay_completes(
    session_setup, broker_config, transport_factory, wait_until
):
    transport_factory.subscribe_delay = 0.05
    session = session_setup()
    states = _record_states(session)
    reply_topic = Subscription("thing/product/RC-001/services_reply", 1)

    await session.connect(broker_config, [reply_topic])
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    transport = transport_factory.last
    assert transport.subscribed == [("thing/product/RC-001/services_reply", 1)]

    transport.drop()
    await wait_until(lambda: SessionState.RECONNECTING in states)
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    assert len(transport.subscribed) == 2

    await session.disconnect()


@pytest.mark.asyncio
async def test_connection_lost_during_replay_reconnects(
    session_setup, broker_config, transport_factory, wait_until
):
    transport_factory.subscribe_delay = 0.05
    session = session_setup()
    states = _record_states(session)

    await session.connect(broker_config, [Subscription("a/b")])
    transport = transport_factory.last
    await wait_until(transport.is_connected)
    transport.drop()

    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    assert states == [
        SessionState.CONNECTING,
        SessionState.RECONNECTING,
        SessionState.CONNECTED,
    ]
    assert transport.connect_calls == 2
    assert transport.subscribed == [("a/b", 0)]

    await session.disconnect()


@pytest.mark.asyncio
async def test_publish_is_refused_while_closing(
    session_setup, broker_config, transport_factory
):
    transport_factory.unsubscribe_delay = 0.1
    session = session_setup()
    await session.connect(broker_config, [Subscription("a/b")])
    await session.wait_for_state(SessionState.CONNECTED, timeout=1.0)

    closing = asyncio.create_task(session.disconnect())
    await asyncio.sleep(0.01)
    assert session.state == SessionState.CONNECTED

    with pytest.raises(TransportError, match="closing"):
        await session.publish("thing/product/RC-001/services", b"{}", qos=1)
    with pytest.raises(TransportError):
        await session.subscribe("c/d")

    await closing
    assert transport_factory.last.published == []
    assert session.state == SessionState.DISCONNECTED
