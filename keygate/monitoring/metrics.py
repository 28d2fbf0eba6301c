"""
keygate Prometheus Metrics
==========================

Prometheus metrics for the admission gateway.

Key Features:
- Admission decisions by outcome
- Admin operations by operation and outcome
- Credential store load/save counts and latency
- Live credential gauge
- HTTP request counts and latency (ASGI middleware)

Usage:
    from keygate.monitoring.metrics import GatewayMetrics

    metrics = GatewayMetrics(registry=CollectorRegistry())
    metrics.record_admission("granted")
    payload = metrics.get_metrics()
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class MetricType(str, Enum):
    """Types of Prometheus metrics."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"
    GAUGE = "gauge"


@dataclass
class MetricConfig:
    """Configuration for a single metric."""

    name: str
    metric_type: MetricType
    description: str
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None


class MetricsConfig:
    """Configuration for all metrics."""

    def __init__(self, namespace: str = "keygate", subsystem: str = "gateway"):
        self.namespace = namespace
        self.subsystem = subsystem

        self._metric_configs: List[MetricConfig] = []
        self._register_default_metrics()

    def _register_default_metrics(self):
        """Register default gateway metrics."""
        self._metric_configs.extend(
            [
                MetricConfig(
                    name="admission_total",
                    metric_type=MetricType.COUNTER,
                    description="Admission decisions by outcome",
                    labels=["outcome"],
                ),
                MetricConfig(
                    name="admin_operation_total",
                    metric_type=MetricType.COUNTER,
                    description="Admin operations by operation and outcome",
                    labels=["operation", "outcome"],
                ),
                MetricConfig(
                    name="store_operation_total",
                    metric_type=MetricType.COUNTER,
                    description="Credential store operations by operation and outcome",
                    labels=["operation", "outcome"],
                ),
                MetricConfig(
                    name="store_operation_latency_seconds",
                    metric_type=MetricType.HISTOGRAM,
                    description="Credential store operation latency in seconds",
                    labels=["operation"],
                    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
                ),
                MetricConfig(
                    name="credentials",
                    metric_type=MetricType.GAUGE,
                    description="Live credentials seen at the last store operation",
                ),
                MetricConfig(
                    name="http_request_total",
                    metric_type=MetricType.COUNTER,
                    description="Total HTTP requests",
                    labels=["endpoint", "method", "status_code"],
                ),
                MetricConfig(
                    name="http_request_latency_seconds",
                    metric_type=MetricType.HISTOGRAM,
                    description="HTTP request latency in seconds",
                    labels=["endpoint", "method"],
                    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0],
                ),
            ]
        )


class GatewayMetrics:
    """
    Gateway Metrics Collector.

    Thread-safe wrapper over a Prometheus registry. Pass a fresh
    ``CollectorRegistry`` per application to keep instances independent.
    """

    def __init__(
        self,
        config: Optional[MetricsConfig] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.config = config or MetricsConfig()
        self._lock = threading.RLock()
        self._registry = registry or REGISTRY
        self._metrics: Dict[str, Any] = {}

        self._initialize_metrics()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _initialize_metrics(self):
        """Initialize all metrics in the registry."""
        with self._lock:
            for cfg in self.config._metric_configs:
                full_name = f"{self.config.namespace}_{self.config.subsystem}_{cfg.name}"

                if cfg.metric_type == MetricType.COUNTER:
                    self._metrics[full_name] = Counter(full_name, cfg.description, cfg.labels, registry=self._registry)
                elif cfg.metric_type == MetricType.HISTOGRAM:
                    self._metrics[full_name] = Histogram(
                        full_name,
                        cfg.description,
                        cfg.labels,
                        buckets=cfg.buckets or Histogram.DEFAULT_BUCKETS,
                        registry=self._registry,
                    )
                elif cfg.metric_type == MetricType.GAUGE:
                    self._metrics[full_name] = Gauge(full_name, cfg.description, cfg.labels, registry=self._registry)

    def _get_metric(self, name: str) -> Any:
        """Get a metric by name."""
        return self._metrics.get(f"{self.config.namespace}_{self.config.subsystem}_{name}")

    def record_admission(self, outcome: str):
        """Record an admission decision."""
        self._get_metric("admission_total").labels(outcome=outcome).inc()

    def record_admin_operation(self, operation: str, outcome: str = "success"):
        """Record an admin operation."""
        self._get_metric("admin_operation_total").labels(operation=operation, outcome=outcome).inc()

    def record_store_operation(self, operation: str, outcome: str, latency_ms: float):
        """Record a credential store load or save."""
        self._get_metric("store_operation_total").labels(operation=operation, outcome=outcome).inc()
        self._get_metric("store_operation_latency_seconds").labels(operation=operation).observe(latency_ms / 1000.0)

    def set_credentials(self, count: int):
        self._get_metric("credentials").set(count)

    def record_http_request(self, endpoint: str, method: str, status_code: int, latency_ms: float):
        """Record HTTP request."""
        self._get_metric("http_request_total").labels(
            endpoint=endpoint, method=method, status_code=str(status_code)
        ).inc()
        self._get_metric("http_request_latency_seconds").labels(endpoint=endpoint, method=method).observe(
            latency_ms / 1000.0
        )

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get content type for metrics."""
        return CONTENT_TYPE_LATEST

    def get_sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of one sample, e.g. ``get_sample("admission_total", {"outcome": "granted"})``."""
        full_name = f"{self.config.namespace}_{self.config.subsystem}_{name}"
        return self._registry.get_sample_value(full_name, labels or {})


class MetricsMiddleware:
    """ASGI middleware for recording HTTP metrics."""

    def __init__(self, app, metrics: GatewayMetrics):
        self.app = app
        self.metrics = metrics

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "GET")
        endpoint = self._normalize_path(scope.get("path", "/"))
        start = time.perf_counter()
        status = {"code": 500}

        async def wrapped_send(message):
            if message["type"] == "http.response.start":
                status["code"] = message.get("status", 200)
            await send(message)

        try:
            await self.app(scope, receive, wrapped_send)
        finally:
            self.metrics.record_http_request(
                endpoint=endpoint,
                method=method,
                status_code=status["code"],
                latency_ms=(time.perf_counter() - start) * 1000,
            )

    def _normalize_path(self, path: str) -> str:
        """Collapse key path segments so labels stay bounded."""
        return re.sub(r"^(/admin/api/keys)/[^/]+", r"\1/{key}", path)


__all__ = [
    "GatewayMetrics",
    "MetricsConfig",
    "MetricsMiddleware",
]
