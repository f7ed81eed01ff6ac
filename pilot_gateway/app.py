"""Main application entry-point for pilot-gateway."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict, Optional

from .config import GatewayConfig, load_config
from .core.models import SessionState, StatusUpdate
from .errors import ConfigurationError, StorageError
from .gateway import Gateway
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .store import TelemetryStore

LOGGER = logging.getLogger(__name__)


class GatewayApp:
    """Coordinates service startup and shutdown.

    Opens the telemetry store, starts the optional health endpoint, starts
    the gateway session and runs until a shutdown signal arrives. A session
    that ends in ``failed`` keeps the process alive in degraded mode so the
    health endpoint can report it.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        store: Optional[TelemetryStore] = None,
        gateway: Optional[Gateway] = None,
    ) -> None:
        self._config = config or load_config()
        self._store = store
        self._gateway = gateway
        self._health = HealthReporter(details=self._health_details)
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def gateway(self) -> Optional[Gateway]:
        return self._gateway

    @property
    def health(self) -> HealthReporter:
        return self._health

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        LOGGER.info("pilot-gateway starting with config: %s", self._config.path)

        try:
            await self._start_services()
            self._install_signal_handlers()
            await self._shutdown_event.wait()
            LOGGER.info("pilot-gateway received shutdown signal")
        finally:
            await self._stop_services()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; KeyboardInterrupt still applies.
                pass

    async def _start_services(self) -> None:
        if self._store is None:
            self._store = TelemetryStore(self._config.storage.path)
        await self._health.update("storage", True, self._store.path)

        if self._gateway is None:
            self._gateway = Gateway(self._config, store=self._store)
        self._gateway.on_status(self._health.record_session)
        self._gateway.on_status(self._log_status)

        if self._config.health.enabled:
            self._health_server = HealthServer(
                self._health, self._config.health.host, self._config.health.port
            )
            await self._health_server.start()

        await self._gateway.start_session()

    async def _stop_services(self) -> None:
        if self._gateway is not None:
            await self._gateway.stop_session()

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._store is not None:
            self._store.close()

    def _log_status(self, update: StatusUpdate) -> None:
        if update.state == SessionState.FAILED:
            LOGGER.error(
                "Broker session failed (%s); running in degraded mode", update.detail
            )

    def _health_details(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        gateway = self._gateway
        if gateway is None:
            return details

        details["router"] = gateway.router.counters.as_dict()
        details["pendingCommands"] = gateway.correlator.pending_count
        details["subscriptions"] = [
            {"topic": sub.topic_pattern, "qos": sub.qos}
            for sub in gateway.session.subscriptions
        ]
        details["topology"] = {
            serial: len(update.sub_devices)
            for serial, update in gateway.topologies().items()
        }
        if gateway.identity is not None:
            details["aircraft"] = gateway.identity.aircraft_serial
            details["gateway"] = gateway.identity.gateway_serial
        capabilities = gateway.capabilities
        if capabilities is not None:
            details["bridge"] = capabilities.as_dict()
        if gateway.store is not None:
            try:
                latest = gateway.store.latest()
            except StorageError:
                latest = None
            details["latestTelemetry"] = latest.timestamp if latest else None
        return details

    @classmethod
    def start(cls, config: Optional[GatewayConfig] = None) -> int:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except ConfigurationError as exc:
            LOGGER.error("Invalid configuration: %s", exc)
            return 2
        except KeyboardInterrupt:
            LOGGER.info("pilot-gateway received shutdown signal")
        return 0
