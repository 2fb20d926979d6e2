"""Component health monitor with metrics and HTTP endpoints.

This module tracks the health of the pipeline's moving parts (event feed,
delivery, broadcast hub), detects components that have gone quiet and serves
``/health``, ``/metrics``, ``/ready`` and ``/live`` over aiohttp.
"""

import asyncio
import contextlib
import copy
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from aiohttp import web
from prometheus_client import Gauge, generate_latest

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_STALE_THRESHOLD_SECONDS = 120
DEFAULT_HEALTH_CHECK_INTERVAL = 5  # seconds
DEFAULT_HTTP_PORT = 8080


class HealthStatus(Enum):
    """Overall health status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentStatus(Enum):
    """Status of an individual component."""

    ACTIVE = "active"
    STALE = "stale"
    DOWN = "down"


@dataclass
class ComponentHealth:
    """Health status for an individual component."""

    name: str
    status: ComponentStatus = ComponentStatus.DOWN
    last_activity: float | None = None
    activity_count: int = 0
    up_since: float | None = None
    last_error: str | None = None
    # Components that are idle by nature (e.g. delivery) never go stale
    can_go_stale: bool = True


@dataclass
class HealthReport:
    """Health report across all components."""

    status: HealthStatus
    components: dict[str, ComponentHealth] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    uptime_seconds: float = 0.0
    timestamp: float = field(default_factory=time.time)


HealthCallback = Callable[[HealthReport], Awaitable[None]]
DetailsProvider = Callable[[], dict[str, Any]]


COMPONENT_STATUS = Gauge(
    "token_alert_component_status",
    "Component status (1=active, 0.5=stale, 0=down)",
    ["component"],
)

LAST_ACTIVITY_TIMESTAMP = Gauge(
    "token_alert_component_last_activity_timestamp",
    "Unix timestamp of the component's last activity",
    ["component"],
)

HEALTH_STATUS = Gauge(
    "token_alert_health_status",
    "Overall health status (1=healthy, 0.5=degraded, 0=unhealthy)",
)

_STATUS_VALUE = {
    ComponentStatus.ACTIVE: 1.0,
    ComponentStatus.STALE: 0.5,
    ComponentStatus.DOWN: 0.0,
}


class HealthMonitor:
    """Monitor component health and expose metrics.

    Example:
        ```python
        monitor = HealthMonitor(details=lambda: {"hub_connections": hub.connection_count})
        await monitor.start()

        monitor.set_component_up("event_feed")
        monitor.record_activity("event_feed")

        await monitor.start_http_server(port=8080)
        ```
    """

    def __init__(
        self,
        *,
        stale_threshold_seconds: float = DEFAULT_STALE_THRESHOLD_SECONDS,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        on_health_change: HealthCallback | None = None,
        details: DetailsProvider | None = None,
    ) -> None:
        """Initialize the health monitor.

        Args:
            stale_threshold_seconds: Seconds without activity before a component is stale.
            health_check_interval: Seconds between health check updates.
            on_health_change: Optional callback when health status changes.
            details: Optional callable adding pipeline details to /health.
        """
        self._stale_threshold = stale_threshold_seconds
        self._health_check_interval = health_check_interval
        self._on_health_change = on_health_change
        self._details = details

        self._components: dict[str, ComponentHealth] = {}
        self._start_time: float | None = None
        self._running = False
        self._health_task: asyncio.Task[None] | None = None
        self._last_health_status: HealthStatus | None = None

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def register_component(self, name: str, *, can_go_stale: bool = True) -> None:
        if name not in self._components:
            self._components[name] = ComponentHealth(name=name, can_go_stale=can_go_stale)
            logger.info("Registered component for monitoring: %s", name)

    def set_component_up(self, name: str) -> None:
        self.register_component(name)
        component = self._components[name]
        component.status = ComponentStatus.ACTIVE
        component.up_since = time.time()
        component.last_error = None
        COMPONENT_STATUS.labels(component=name).set(1.0)
        logger.debug("Component up: %s", name)

    def set_component_down(self, name: str, error: str | None = None) -> None:
        self.register_component(name)
        component = self._components[name]
        component.status = ComponentStatus.DOWN
        component.up_since = None
        component.last_error = error
        COMPONENT_STATUS.labels(component=name).set(0.0)
        logger.debug("Component down: %s (error: %s)", name, error)

    def record_activity(self, name: str) -> None:
        """Record that a component did useful work."""
        self.register_component(name)
        now = time.time()
        component = self._components[name]
        component.activity_count += 1
        component.last_activity = now
        if component.status is ComponentStatus.STALE:
            component.status = ComponentStatus.ACTIVE
        LAST_ACTIVITY_TIMESTAMP.labels(component=name).set(now)

    def _check_staleness(self) -> None:
        now = time.time()
        for name, component in self._components.items():
            if component.status is ComponentStatus.DOWN or not component.can_go_stale:
                continue
            reference = component.last_activity or component.up_since
            if reference is not None and now - reference > self._stale_threshold:
                component.status = ComponentStatus.STALE
            else:
                component.status = ComponentStatus.ACTIVE
            COMPONENT_STATUS.labels(component=name).set(_STATUS_VALUE[component.status])

    def _determine_overall_status(self) -> HealthStatus:
        if not self._components:
            return HealthStatus.HEALTHY

        statuses = [c.status for c in self._components.values()]
        if all(s is ComponentStatus.DOWN for s in statuses):
            return HealthStatus.UNHEALTHY
        if any(s is not ComponentStatus.ACTIVE for s in statuses):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def get_health_report(self) -> HealthReport:
        """Generate a health report."""
        self._check_staleness()

        overall_status = self._determine_overall_status()
        HEALTH_STATUS.set(
            1.0 if overall_status == HealthStatus.HEALTHY
            else 0.5 if overall_status == HealthStatus.DEGRADED
            else 0.0
        )

        details: dict[str, Any] = {}
        if self._details is not None:
            try:
                details = self._details()
            except Exception as e:
                logger.error("Error collecting health details: %s", e)

        uptime = time.time() - self._start_time if self._start_time else 0.0

        return HealthReport(
            status=overall_status,
            components={name: copy.copy(c) for name, c in self._components.items()},
            details=details,
            uptime_seconds=uptime,
        )

    async def _health_check_loop(self) -> None:
        """Background task for periodic health checks."""
        while self._running:
            try:
                report = self.get_health_report()

                if self._on_health_change and report.status != self._last_health_status:
                    self._last_health_status = report.status
                    try:
                        await self._on_health_change(report)
                    except Exception as e:
                        logger.error("Error in health change callback: %s", e)

                await asyncio.sleep(self._health_check_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in health check loop: %s", e)
                await asyncio.sleep(1)

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._start_time = time.time()
        self._health_task = asyncio.create_task(self._health_check_loop())
        logger.info("Health monitor started")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False

        if self._health_task:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None

        await self.stop_http_server()
        logger.info("Health monitor stopped")

    # HTTP Server methods

    async def _handle_health(self, _request: web.Request) -> web.Response:
        report = self.get_health_report()
        status_code = 200 if report.status == HealthStatus.HEALTHY else 503

        body: dict[str, Any] = {
            "status": report.status.value,
            "uptime_seconds": report.uptime_seconds,
            "components": {
                name: {
                    "status": c.status.value,
                    "activity_count": c.activity_count,
                    "last_activity": c.last_activity,
                    "last_error": c.last_error,
                }
                for name, c in report.components.items()
            },
            "details": report.details,
        }
        return web.json_response(body, status=status_code)

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Prometheus text format."""
        self.get_health_report()
        return web.Response(body=generate_latest(), content_type="text/plain", charset="utf-8")

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        report = self.get_health_report()
        if report.status == HealthStatus.UNHEALTHY:
            return web.json_response({"ready": False, "reason": "unhealthy"}, status=503)
        return web.json_response({"ready": True}, status=200)

    async def _handle_live(self, _request: web.Request) -> web.Response:
        return web.json_response({"live": True}, status=200)

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/live", self._handle_live)
        return app

    async def start_http_server(self, port: int = DEFAULT_HTTP_PORT, host: str = "0.0.0.0") -> None:
        if self._runner:
            logger.warning("HTTP server already running")
            return

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("Health HTTP server started on port %d", port)

    async def stop_http_server(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            logger.info("Health HTTP server stopped")

    async def __aenter__(self) -> "HealthMonitor":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
