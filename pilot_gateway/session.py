"""Broker session lifecycle: connect, supervise, reconnect, tear down.

The :class:`SessionManager` is the only owner of :class:`SessionState` and of
the active subscription set. Other components observe the session through
its :class:`StatusStream` and go through its public coroutines to publish or
subscribe.

State machine::

    disconnected -> connecting -> connected
    connecting   -> reconnecting            (handshake or replay failed)
    connected    -> reconnecting            (transport lost)
    reconnecting -> connected | failed      (bounded exponential backoff)
    failed       -> connecting              (explicit connect() only)
    *            -> disconnected            (disconnect())
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from .adapters.mqtt import MQTTClient
from .config import BrokerConfig, SessionConfig
from .core.models import SessionState, StatusUpdate, Subscription
from .core.protocols import BrokerTransport
from .core.topics import validate_pattern
from .errors import TransportError
from .events import StatusStream

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[BrokerConfig], BrokerTransport]
FrameHandler = Callable[[str, bytes], Union[Awaitable[None], None, object]]
TeardownHook = Callable[[], None]

_ACTIVE_STATES = (
    SessionState.CONNECTING,
    SessionState.CONNECTED,
    SessionState.RECONNECTING,
)


def _default_transport_factory(config: BrokerConfig) -> BrokerTransport:
    return MQTTClient(config)


def _check_qos(qos: int) -> None:
    if qos not in (0, 1, 2):
        raise ValueError(f"Invalid QoS level {qos!r}")


class SessionManager:
    """Owns one broker connection and keeps it alive.

    Key responsibilities:
    - Validate broker settings before any connection attempt
    - Drive the state machine from a single supervisor task
    - Retry lost connections with bounded exponential backoff and jitter
    - Replay the subscription set before announcing the session connected
    - Deliver inbound frames, in arrival order, from a single dispatch task
    - Tear everything down as one sequence on :meth:`disconnect`, refusing
      publish and subscribe until it completes
    """

    def __init__(
        self,
        settings: Optional[SessionConfig] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        frame_handler: Optional[FrameHandler] = None,
    ) -> None:
        self._settings = settings or SessionConfig()
        self._transport_factory = transport_factory or _default_transport_factory
        self._frame_handler = frame_handler

        self._status = StatusStream()
        self._config: Optional[BrokerConfig] = None
        self._transport: Optional[BrokerTransport] = None
        self._subscriptions: Dict[str, Subscription] = {}
        self._teardown_hooks: List[TeardownHook] = []

        self._lifecycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._lost_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None
        self._dispatch_task: Optional[asyncio.Task[None]] = None
        self._inbound: "asyncio.Queue[Tuple[str, bytes]]" = asyncio.Queue()
        self._last_error: Optional[BaseException] = None
        # Set for the whole of disconnect(); publish/subscribe are refused.
        self._closing = False

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def status(self) -> StatusStream:
        return self._status

    @property
    def state(self) -> SessionState:
        return self._status.state

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def subscriptions(self) -> Tuple[Subscription, ...]:
        return tuple(self._subscriptions.values())

    @property
    def transport(self) -> Optional[BrokerTransport]:
        return self._transport

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    async def wait_for_state(
        self, *states: SessionState, timeout: float = 30.0
    ) -> StatusUpdate:
        return await self._status.wait_for(*states, timeout=timeout)

    def set_frame_handler(self, handler: Optional[FrameHandler]) -> None:
        self._frame_handler = handler

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a callback run first, synchronously, in :meth:`disconnect`."""
        self._teardown_hooks.append(hook)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(
        self,
        config: BrokerConfig,
        subscriptions: Iterable[Subscription] = (),
    ) -> StatusStream:
        """Start (or join) the session and return its status stream.

        Does not wait for the broker handshake; observe the stream or call
        :meth:`wait_for_state` for that.

        Raises:
            ConfigurationError: The broker settings are invalid.
        """

        async with self._lifecycle_lock:
            if self.state in _ACTIVE_STATES:
                LOGGER.debug("connect() while %s; reusing session", self.state.value)
                return self._status

            config.validate()
            seeds = list(subscriptions)
            for subscription in seeds:
                validate_pattern(subscription.topic_pattern)
                _check_qos(subscription.qos)
            for subscription in seeds:
                self._subscriptions.setdefault(subscription.topic_pattern, subscription)

            if self._transport is not None:
                await self._close_transport()

            self._config = config
            self._last_error = None
            self._stop_event = asyncio.Event()
            self._lost_event = asyncio.Event()

            self._transition(
                SessionState.CONNECTING, detail=f"{config.host}:{config.port}"
            )

            transport = self._transport_factory(config)
            transport.set_message_handler(self._enqueue_frame)
            transport.register_disconnect_handler(self._on_transport_lost)
            self._transport = transport

            self._start_dispatcher()
            self._supervisor_task = asyncio.create_task(self._supervise())
            return self._status

    async def disconnect(self) -> None:
        """Tear the session down.

        Pending work is cancelled via teardown hooks, the supervisor is
        stopped, every subscription is removed, the transport is closed and
        the state becomes ``disconnected``, in that order.
        """

        async with self._lifecycle_lock:
            if self._supervisor_task is None and self._transport is None:
                self._subscriptions.clear()
                if self.state != SessionState.DISCONNECTED:
                    self._transition(SessionState.DISCONNECTED, detail="session closed")
                return

            LOGGER.info("Closing broker session")
            self._closing = True
            self._stop_event.set()
            self._lost_event.set()
            try:
                await self._teardown()
            finally:
                self._closing = False
            self._transition(SessionState.DISCONNECTED, detail="session closed")

    async def _teardown(self) -> None:
        for hook in list(self._teardown_hooks):
            try:
                hook()
            except Exception:
                LOGGER.exception("Session teardown hook failed")

        task = self._supervisor_task
        self._supervisor_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        transport = self._transport
        if transport is not None and transport.is_connected():
            for subscription in list(self._subscriptions.values()):
                try:
                    await transport.unsubscribe(subscription.topic_pattern)
                except Exception as exc:
                    LOGGER.debug(
                        "Unsubscribe of %s failed during teardown: %s",
                        subscription.topic_pattern,
                        exc,
                    )
        self._subscriptions.clear()

        await self._close_transport()
        await self._stop_dispatcher()

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------
    def _require_connected(self, operation: str) -> BrokerTransport:
        transport = self._transport
        if self._closing:
            raise TransportError(f"Cannot {operation} while session is closing")
        if self.state != SessionState.CONNECTED or transport is None:
            raise TransportError(
                f"Cannot {operation} while session is {self.state.value}"
            )
        return transport

    async def publish(
        self,
        topic: str,
        payload: Union[bytes, str],
        qos: int = 0,
        timeout: Optional[float] = None,
    ) -> None:
        """Publish and wait for the broker ack (``qos > 0``).

        Raises:
            TransportError: Not connected, publish refused, or ack timed out.
        """

        _check_qos(qos)
        transport = self._require_connected("publish")
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        deadline = self._settings.publish_timeout_seconds if timeout is None else timeout
        try:
            await transport.publish(topic, data, qos=qos, timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Publish to {topic} timed out") from exc

    async def subscribe(
        self, pattern: str, qos: int = 0, timeout: Optional[float] = None
    ) -> Subscription:
        """Add ``pattern`` to the subscription set. Re-subscribing is a no-op.

        Raises:
            TransportError: Not connected or the broker refused the subscription.
            ValueError: Invalid pattern or QoS.
        """

        validate_pattern(pattern)
        _check_qos(qos)

        existing = self._subscriptions.get(pattern)
        if existing is not None and existing.qos == qos:
            return existing

        transport = self._require_connected("subscribe")
        deadline = self._settings.publish_timeout_seconds if timeout is None else timeout
        try:
            await transport.subscribe(pattern, qos=qos, timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Subscribe to {pattern} timed out") from exc

        subscription = Subscription(topic_pattern=pattern, qos=qos)
        self._subscriptions[pattern] = subscription
        LOGGER.info("Subscribed to %s (qos=%d)", pattern, qos)
        return subscription

    async def unsubscribe(self, pattern: str) -> None:
        if self._subscriptions.pop(pattern, None) is None:
            return
        transport = self._transport
        if self.state == SessionState.CONNECTED and transport is not None:
            await transport.unsubscribe(pattern)
        LOGGER.info("Unsubscribed from %s", pattern)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------
    def _transition(
        self,
        state: SessionState,
        *,
        detail: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        previous = self.state
        LOGGER.info(
            "Session state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        self._status.publish(
            StatusUpdate(state=state, previous=previous, detail=detail, error=error)
        )

    def _on_transport_lost(self, rc: int) -> None:
        if self._stop_event.is_set():
            return
        if self.state != SessionState.CONNECTED:
            return
        LOGGER.warning("Broker connection lost (rc=%s)", rc)
        self._lost_event.set()

    async def _supervise(self) -> None:
        transport = self._transport
        assert transport is not None

        initial = True
        while not self._stop_event.is_set():
            self._lost_event.clear()
            connected = await self._connect_with_backoff(transport, initial=initial)
            if self._stop_event.is_set():
                return
            if not connected:
                attempts = self._settings.reconnect_max_attempts
                self._transition(
                    SessionState.FAILED,
                    detail=f"gave up after {attempts} reconnect attempt(s)",
                    error=self._last_error,
                )
                await self._close_transport()
                return

            initial = False
            # Subscriptions are restored before the session is announced.
            replayed = await self._replay_subscriptions(transport)
            if self._stop_event.is_set():
                return
            if not replayed:
                if self.state != SessionState.RECONNECTING:
                    self._transition(
                        SessionState.RECONNECTING,
                        detail="transport lost during subscription replay",
                    )
                await self._drop_connection(transport)
                continue

            self._transition(SessionState.CONNECTED)
            if not transport.is_connected():
                self._lost_event.set()

            await self._lost_event.wait()
            if self._stop_event.is_set():
                return

            self._transition(SessionState.RECONNECTING, detail="transport lost")
            await self._drop_connection(transport)

    async def _drop_connection(self, transport: BrokerTransport) -> None:
        try:
            await transport.disconnect()
        except Exception:
            pass  # Cleanup before reconnecting - ignore errors

    async def _connect_with_backoff(
        self, transport: BrokerTransport, *, initial: bool
    ) -> bool:
        """Attempt connection with exponential backoff.

        On the initial connect one immediate attempt is made in the
        ``connecting`` state before the bounded retry budget starts.

        Returns:
            True if connection succeeded, False otherwise.
        """

        settings = self._settings
        delay = max(0.0, settings.reconnect_initial_seconds)
        max_delay = max(delay, settings.reconnect_max_seconds)

        if initial:
            if await self._attempt(transport, 0):
                return True
            self._transition(
                SessionState.RECONNECTING,
                detail="initial connection failed",
                error=self._last_error,
            )
            if await self._backoff(delay):
                return False
            delay = min(delay * 2, max_delay)

        attempt = 0
        while not self._stop_event.is_set():
            attempt += 1
            if await self._attempt(transport, attempt):
                return True
            if attempt >= settings.reconnect_max_attempts:
                break
            if await self._backoff(delay):
                return False
            delay = min(delay * 2, max_delay)

        return False

    async def _attempt(self, transport: BrokerTransport, attempt: int) -> bool:
        try:
            LOGGER.debug("Broker connection attempt %d", attempt)
            await transport.connect(timeout=self._settings.connect_timeout_seconds)
        except Exception as exc:
            self._last_error = exc
            LOGGER.warning("Connection attempt %d failed: %s", attempt, exc)
            try:
                await transport.disconnect()
            except Exception:
                pass  # Cleanup after failed attempt - ignore errors
            return False
        return True

    async def _backoff(self, delay: float) -> bool:
        """Sleep ``delay`` seconds with jitter. Returns True if stopped meanwhile."""

        jitter_ratio = max(0.0, min(1.0, self._settings.reconnect_jitter_ratio))
        sleep_for = delay
        if jitter_ratio > 0.0 and delay > 0.0:
            jitter = delay * jitter_ratio
            sleep_for = random.uniform(max(0.0, delay - jitter), delay + jitter)

        LOGGER.info("Retrying broker connection in %.1fs", sleep_for)
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            return False
        return True

    async def _replay_subscriptions(self, transport: BrokerTransport) -> bool:
        """Re-subscribe the active set. Returns False if the connection dropped."""

        if not transport.is_connected():
            return False
        for subscription in list(self._subscriptions.values()):
            try:
                await transport.subscribe(
                    subscription.topic_pattern,
                    qos=subscription.qos,
                    timeout=self._settings.publish_timeout_seconds,
                )
            except Exception as exc:
                if not transport.is_connected():
                    LOGGER.warning(
                        "Subscription replay interrupted by connection loss: %s", exc
                    )
                    return False
                LOGGER.error(
                    "Broker refused subscription %s; removing it: %s",
                    subscription.topic_pattern,
                    exc,
                )
                self._subscriptions.pop(subscription.topic_pattern, None)
        if self._subscriptions:
            LOGGER.info("Replayed %d subscription(s)", len(self._subscriptions))
        return True

    async def _close_transport(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is None:
            return
        transport.set_message_handler(None)
        try:
            await transport.disconnect()
        except Exception as exc:
            LOGGER.debug("Transport disconnect failed: %s", exc)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------
    def _enqueue_frame(self, topic: str, payload: bytes) -> None:
        self._inbound.put_nowait((topic, payload))

    def _start_dispatcher(self) -> None:
        if self._dispatch_task is not None and not self._dispatch_task.done():
            return
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    async def _stop_dispatcher(self) -> None:
        task = self._dispatch_task
        self._dispatch_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while not self._inbound.empty():
            self._inbound.get_nowait()

    async def _dispatch_loop(self) -> None:
        while True:
            topic, payload = await self._inbound.get()
            handler = self._frame_handler
            if handler is None:
                continue
            try:
                result = handler(topic, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Frame handler raised for topic %s", topic)
