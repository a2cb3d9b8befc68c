"""Application metrics built on the metric registry"""

import asyncio
from typing import Any, Dict, Optional, Tuple

import psutil

from .logging import get_logger
from .registry import Counter, Gauge, Histogram, MetricRegistry, render_exposition

logger = get_logger(__name__)

HTTP_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
OPERATION_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def classify_error(status_code: Optional[int]) -> Tuple[str, str]:
    """Map a status code to (error_type, severity)"""
    if status_code is not None and 400 <= status_code < 500:
        return "client_error", "medium"
    return "server_error", "high"


def session_duration_bucket(duration_seconds: float) -> str:
    if duration_seconds < 60:
        return "short"
    if duration_seconds < 300:
        return "medium"
    if duration_seconds < 900:
        return "long"
    return "very_long"


class MetricsCollector:
    """The application's metric set, registered once per registry"""

    def __init__(self, registry: Optional[MetricRegistry] = None):
        self.registry = registry if registry is not None else MetricRegistry()
        self._process = psutil.Process()

        # HTTP metrics
        self.http_requests_total = self.registry.register(Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "route", "status_code"],
        ))

        self.http_request_duration_seconds = self.registry.register(Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "route", "status_code"],
            buckets=HTTP_BUCKETS,
        ))

        # Instrumented operations of every category
        self.operation_duration_seconds = self.registry.register(Histogram(
            "operation_duration_seconds",
            "Duration of instrumented operations in seconds",
            ["category", "status"],
            buckets=OPERATION_BUCKETS,
        ))

        self.application_errors_total = self.registry.register(Counter(
            "application_errors_total",
            "Total application errors",
            ["error_type", "severity", "component"],
        ))

        # Live gauges
        self.active_connections = self.registry.register(Gauge(
            "active_connections",
            "Number of in-flight HTTP requests",
        ))

        self.active_users = self.registry.register(Gauge(
            "active_users_current",
            "Current number of active users",
        ))

        # Process resources
        self.memory_usage = self.registry.register(Gauge(
            "application_memory_usage_bytes",
            "Application memory usage in bytes",
            ["type"],
        ))

        self.cpu_seconds = self.registry.register(Gauge(
            "process_cpu_seconds",
            "CPU time consumed by the process in seconds",
            ["mode"],
        ))

        # Collaborators
        self.database_connections = self.registry.register(Gauge(
            "database_connections_active",
            "Active database connections",
            ["database", "state"],
        ))

        self.cache_operations_total = self.registry.register(Counter(
            "cache_operations_total",
            "Cache operations",
            ["operation", "result"],
        ))

        # Business events
        self.business_events_total = self.registry.register(Counter(
            "business_events_total",
            "Business events",
            ["event_type", "user_segment"],
        ))

        self.user_sessions_total = self.registry.register(Counter(
            "user_sessions_total",
            "Total number of user sessions",
            ["user_type", "session_duration_bucket"],
        ))

    def record_http_request(
        self,
        method: str,
        route: str,
        status_code: int,
        duration_seconds: float,
    ) -> None:
        """Record HTTP request metrics"""
        labels = {"method": method, "route": route, "status_code": str(status_code)}
        self.http_requests_total.inc(labels)
        self.http_request_duration_seconds.observe(labels, duration_seconds)

    def record_operation(self, category: str, status: str, duration_seconds: float) -> None:
        """Record the duration of an instrumented operation"""
        self.operation_duration_seconds.observe(
            {"category": category, "status": status},
            duration_seconds,
        )

    def record_error(self, component: str, status_code: Optional[int] = None) -> None:
        """Count an error, classified by status code"""
        error_type, severity = classify_error(status_code)
        self.application_errors_total.inc({
            "error_type": error_type,
            "severity": severity,
            "component": component,
        })

    def connection_opened(self) -> None:
        self.active_connections.add(delta=1)

    def connection_closed(self) -> None:
        self.active_connections.add(delta=-1)

    def record_active_users(self, count: int) -> None:
        self.active_users.set(value=count)

    def record_database_connection(self, database: str, state: str, count: int = 1) -> None:
        self.database_connections.set({"database": database, "state": state}, count)

    def record_cache_operation(self, operation: str, result: str) -> None:
        """Count a cache operation; result is hit, miss or error"""
        self.cache_operations_total.inc({"operation": operation, "result": result})

    def record_business_event(self, event_type: str, user_segment: str) -> None:
        self.business_events_total.inc({"event_type": event_type, "user_segment": user_segment})

    def record_user_session(self, user_type: str, duration_seconds: float) -> None:
        self.user_sessions_total.inc({
            "user_type": user_type,
            "session_duration_bucket": session_duration_bucket(duration_seconds),
        })

    def process_snapshot(self) -> Dict[str, Any]:
        """Current process memory and CPU usage"""
        with self._process.oneshot():
            memory = self._process.memory_info()
            cpu = self._process.cpu_times()
        return {
            "memory": {"rss": memory.rss, "vms": memory.vms},
            "cpu": {"user": cpu.user, "system": cpu.system},
        }

    def record_process_metrics(self) -> Dict[str, Any]:
        """Refresh the process resource gauges"""
        snapshot = self.process_snapshot()
        for kind, value in snapshot["memory"].items():
            self.memory_usage.set({"type": kind}, value)
        for mode, value in snapshot["cpu"].items():
            self.cpu_seconds.set({"mode": mode}, value)
        return snapshot

    def current_connections(self) -> int:
        return int(self.registry.get_sample_value("active_connections") or 0)

    def export(self) -> Tuple[bytes, str]:
        """Export metrics in Prometheus format"""
        return render_exposition(self.registry)


class ProcessMetricsSampler:
    """Periodically refreshes process gauges while the app is running"""

    def __init__(self, collector: MetricsCollector, interval_seconds: float = 5.0):
        self.collector = collector
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def _run(self) -> None:
        while True:
            try:
                self.collector.record_process_metrics()
            except Exception:
                logger.warning("Failed to sample process metrics", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
