"""Health reporting for the gateway process.

The report is ``ok`` only while every registered component is healthy and
the broker session is ``connected``. A failed session keeps the process
alive, so the endpoint answers 503 with the failure detail instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aiohttp import web

from .core.models import SessionState, StatusUpdate

LOGGER = logging.getLogger(__name__)

DetailsProvider = Callable[[], Dict[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ComponentHealth:
    name: str
    healthy: bool
    detail: Optional[str] = None
    checked_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "checkedAt": self.checked_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Collects component checks and the latest session transition."""

    def __init__(self, *, details: Optional[DetailsProvider] = None) -> None:
        self._components: Dict[str, ComponentHealth] = {}
        self._session: Optional[StatusUpdate] = None
        self._details = details
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentHealth(name, healthy, detail)

    def record_session(self, update: StatusUpdate) -> None:
        """Status-stream listener; keeps only the most recent transition."""
        self._session = update

    @property
    def session_state(self) -> Optional[SessionState]:
        return self._session.state if self._session is not None else None

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components: List[ComponentHealth] = list(self._components.values())

        healthy = all(component.healthy for component in components) and (
            self.session_state == SessionState.CONNECTED
        )
        report: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": [component.as_dict() for component in components],
        }
        if self._session is not None:
            report["session"] = self._session.as_dict()

        if self._details is not None:
            try:
                report["details"] = self._details()
            except Exception:
                LOGGER.warning("Health details provider failed", exc_info=True)

        return report


class HealthServer:
    """aiohttp endpoint serving the reporter snapshot on ``/healthz``."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([web.get("/healthz", self._healthz)])
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self._build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner
        self._site = site
        LOGGER.info("Health endpoint at http://%s:%s/healthz", self._host, self._port)

    async def stop(self) -> None:
        site, runner = self._site, self._runner
        self._site = None
        self._runner = None
        if site is not None:
            with contextlib.suppress(Exception):
                await site.stop()
        if runner is not None:
            await runner.cleanup()

    async def _healthz(self, request: web.Request) -> web.Response:
        report = await self._reporter.snapshot()
        return web.json_response(
            report, status=200 if report["status"] == "ok" else 503
        )
