import aiohttp
import pytest

from pilot_gateway.core.models import SessionState, StatusUpdate
from pilot_gateway.health import HealthReporter, HealthServer


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("storage", True)
    await reporter.update("bridge", False, "licence rejected")
    reporter.record_session(StatusUpdate(state=SessionState.CONNECTED))

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["storage"]["healthy"] is True
    assert components["bridge"]["healthy"] is False
    assert components["bridge"]["detail"] == "licence rejected"


@pytest.mark.asyncio
async def test_session_state_affects_status():
    reporter = HealthReporter(details=lambda: {"pendingCommands": 2})
    await reporter.update("storage", True)

    reporter.record_session(
        StatusUpdate(
            state=SessionState.FAILED,
            previous=SessionState.RECONNECTING,
            detail="gave up after 5 reconnect attempt(s)",
        )
    )
    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    assert snapshot["session"]["state"] == "failed"
    assert snapshot["session"]["previous"] == "reconnecting"
    assert snapshot["details"] == {"pendingCommands": 2}

    reporter.record_session(StatusUpdate(state=SessionState.CONNECTED))
    snapshot = await reporter.snapshot()
    assert snapshot["status"] == "ok"


@pytest.mark.asyncio
async def test_failing_details_provider_is_tolerated():
    def broken():
        raise RuntimeError("boom")

    reporter = HealthReporter(details=broken)
    reporter.record_session(StatusUpdate(state=SessionState.CONNECTED))

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "ok"
    assert "details" not in snapshot


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("storage", True)

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(reporter, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                assert response.status == 503
                payload = await response.json()
                assert payload["status"] == "degraded"

            reporter.record_session(StatusUpdate(state=SessionState.CONNECTED))
            async with session.get(f"http://{host}:{port}/healthz") as response:
                assert response.status == 200
                payload = await response.json()
                assert payload["session"]["state"] == "connected"
    finally:
        await server.stop()
