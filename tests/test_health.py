"""Tests for the component health monitor."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from token_alert_hub.health import (
    ComponentHealth,
    ComponentStatus,
    HealthMonitor,
    HealthReport,
    HealthStatus,
)


class TestComponentHealth:
    """Tests for the ComponentHealth dataclass."""

    def test_defaults(self) -> None:
        health = ComponentHealth(name="event_feed")
        assert health.status is ComponentStatus.DOWN
        assert health.last_activity is None
        assert health.activity_count == 0
        assert health.can_go_stale is True

    def test_report_defaults(self) -> None:
        report = HealthReport(status=HealthStatus.HEALTHY)
        assert report.components == {}
        assert report.details == {}
        assert report.uptime_seconds == 0.0


class TestHealthMonitor:
    """Tests for component tracking and overall status."""

    def test_register_component_idempotent(self) -> None:
        monitor = HealthMonitor()
        monitor.register_component("delivery", can_go_stale=False)
        monitor.register_component("delivery")

        report = monitor.get_health_report()
        assert list(report.components) == ["delivery"]
        assert report.components["delivery"].can_go_stale is False

    def test_no_components_is_healthy(self) -> None:
        assert HealthMonitor().get_health_report().status is HealthStatus.HEALTHY

    def test_all_active_is_healthy(self) -> None:
        monitor = HealthMonitor()
        monitor.set_component_up("event_feed")
        monitor.set_component_up("hub")

        assert monitor.get_health_report().status is HealthStatus.HEALTHY

    def test_one_down_is_degraded(self) -> None:
        monitor = HealthMonitor()
        monitor.set_component_up("event_feed")
        monitor.set_component_down("hub", error="bind failed")

        report = monitor.get_health_report()
        assert report.status is HealthStatus.DEGRADED
        assert report.components["hub"].last_error == "bind failed"

    def test_all_down_is_unhealthy(self) -> None:
        monitor = HealthMonitor()
        monitor.set_component_down("event_feed")
        monitor.set_component_down("hub")

        assert monitor.get_health_report().status is HealthStatus.UNHEALTHY

    def test_record_activity_counts(self) -> None:
        monitor = HealthMonitor()
        monitor.set_component_up("event_feed")
        for _ in range(3):
            monitor.record_activity("event_feed")

        component = monitor.get_health_report().components["event_feed"]
        assert component.activity_count == 3
        assert component.last_activity is not None

    def test_quiet_component_goes_stale(self) -> None:
        monitor = HealthMonitor(stale_threshold_seconds=10)
        monitor.set_component_up("event_feed")
        monitor._components["event_feed"].last_activity = time.time() - 60

        report = monitor.get_health_report()
        assert report.components["event_feed"].status is ComponentStatus.STALE
        assert report.status is HealthStatus.DEGRADED

    def test_activity_revives_stale_component(self) -> None:
        monitor = HealthMonitor(stale_threshold_seconds=10)
        monitor.set_component_up("event_feed")
        monitor._components["event_feed"].last_activity = time.time() - 60
        monitor.get_health_report()

        monitor.record_activity("event_feed")

        report = monitor.get_health_report()
        assert report.components["event_feed"].status is ComponentStatus.ACTIVE

    def test_idle_component_never_stale(self) -> None:
        monitor = HealthMonitor(stale_threshold_seconds=10)
        monitor.register_component("delivery", can_go_stale=False)
        monitor.set_component_up("delivery")
        monitor._components["delivery"].up_since = time.time() - 600

        report = monitor.get_health_report()
        assert report.components["delivery"].status is ComponentStatus.ACTIVE

    def test_report_is_a_snapshot(self) -> None:
        monitor = HealthMonitor()
        monitor.set_component_up("event_feed")
        report = monitor.get_health_report()

        monitor.record_activity("event_feed")

        assert report.components["event_feed"].activity_count == 0

    def test_details_provider(self) -> None:
        monitor = HealthMonitor(details=lambda: {"hub_connections": 4})
        assert monitor.get_health_report().details == {"hub_connections": 4}

    def test_details_provider_error_is_contained(self) -> None:
        def broken() -> dict[str, int]:
            raise RuntimeError("boom")

        monitor = HealthMonitor(details=broken)
        assert monitor.get_health_report().details == {}

    async def test_start_stop(self) -> None:
        monitor = HealthMonitor()

        await monitor.start()
        await monitor.start()  # Should not raise
        assert monitor.is_running

        await monitor.stop()
        assert not monitor.is_running
        assert monitor._health_task is None

    async def test_stop_when_not_running(self) -> None:
        await HealthMonitor().stop()

    async def test_context_manager(self) -> None:
        async with HealthMonitor() as monitor:
            assert monitor.is_running
        assert not monitor.is_running

    async def test_health_change_callback(self) -> None:
        """The callback fires on the first check of the loop."""
        callback = AsyncMock()
        monitor = HealthMonitor(health_check_interval=0.05, on_health_change=callback)

        await monitor.start()
        monitor.set_component_up("event_feed")
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert callback.called
        report = callback.call_args.args[0]
        assert isinstance(report, HealthReport)

    async def test_health_change_callback_error_is_contained(self) -> None:
        callback = AsyncMock(side_effect=ValueError("test error"))
        monitor = HealthMonitor(health_check_interval=0.05, on_health_change=callback)

        await monitor.start()
        await asyncio.sleep(0.1)

        assert monitor.is_running
        await monitor.stop()


# ============================================================================
# HTTP Endpoint Tests
# ============================================================================


class TestHealthMonitorHTTPEndpoints:
    """Tests for the aiohttp endpoints."""

    @pytest.fixture
    def monitor(self) -> HealthMonitor:
        return HealthMonitor(details=lambda: {"hub_connections": 2})

    @pytest.fixture
    def app(self, monitor: HealthMonitor) -> web.Application:
        return monitor.create_app()

    async def test_health_endpoint_healthy(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        monitor.set_component_up("event_feed")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            body = await resp.json()

        assert body["status"] == "healthy"
        assert body["components"]["event_feed"]["status"] == "active"
        assert body["details"] == {"hub_connections": 2}

    async def test_health_endpoint_degraded(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        monitor.set_component_up("event_feed")
        monitor.set_component_down("hub", error="bind failed")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/health")
            assert resp.status == 503
            body = await resp.json()

        assert body["status"] == "degraded"
        assert body["components"]["hub"]["last_error"] == "bind failed"

    async def test_metrics_endpoint(self, monitor: HealthMonitor, app: web.Application) -> None:
        monitor.set_component_up("event_feed")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/metrics")
            assert resp.status == 200
            text = await resp.text()

        assert "token_alert_health_status" in text
        assert 'token_alert_component_status{component="event_feed"}' in text

    async def test_ready_while_degraded(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        monitor.set_component_up("event_feed")
        monitor.set_component_down("hub")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/ready")
            assert resp.status == 200
            assert await resp.json() == {"ready": True}

    async def test_not_ready_when_unhealthy(
        self, monitor: HealthMonitor, app: web.Application
    ) -> None:
        monitor.set_component_down("event_feed")

        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/ready")
            assert resp.status == 503
            body = await resp.json()

        assert body["ready"] is False

    async def test_live_endpoint(self, app: web.Application) -> None:
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/live")
            assert resp.status == 200
            assert await resp.json() == {"live": True}
