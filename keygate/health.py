"""Health Checks - readiness of the gateway's backing services."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict

from .credentials import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health check statuses."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Outcome of one probe."""

    name: str
    status: HealthStatus
    message: str = ""
    latency_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2),
            "details": self.details,
            "checked_at": format_timestamp(self.checked_at),
        }


Probe = Callable[[], Dict[str, Any]]


class HealthChecker:
    """Runs registered probes off the event loop.

    A probe returns ``{"status", "message", "details"}``; a probe that raises
    counts as unhealthy.
    """

    def __init__(self):
        self._probes: Dict[str, Probe] = {}
        self._results: Dict[str, HealthCheckResult] = {}
        self._started = time.monotonic()

    def register_check(self, name: str, probe: Probe) -> None:
        self._probes[name] = probe

    async def run_check(self, name: str) -> HealthCheckResult:
        probe = self._probes.get(name)
        if probe is None:
            return HealthCheckResult(name, HealthStatus.UNKNOWN, f"No check named {name!r}")

        started = time.perf_counter()
        try:
            outcome = await asyncio.to_thread(probe)
        except Exception as e:
            logger.warning("Health check %s failed: %s", name, e)
            return HealthCheckResult(
                name,
                HealthStatus.UNHEALTHY,
                str(e),
                (time.perf_counter() - started) * 1000,
                {"error": type(e).__name__},
            )
        return HealthCheckResult(
            name,
            HealthStatus(outcome.get("status", HealthStatus.HEALTHY.value)),
            outcome.get("message", ""),
            (time.perf_counter() - started) * 1000,
            outcome.get("details", {}),
        )

    async def run_all_checks(self) -> Dict[str, HealthCheckResult]:
        self._results = {name: await self.run_check(name) for name in self._probes}
        return self._results

    def get_overall_status(self) -> HealthStatus:
        """Worst status among the last results; UNKNOWN before any run."""
        if not self._results:
            return HealthStatus.UNKNOWN
        seen = {r.status for r in self._results.values()}
        for status in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED, HealthStatus.UNKNOWN):
            if status in seen:
                return status
        return HealthStatus.HEALTHY

    def get_summary(self) -> Dict[str, Any]:
        return {
            "status": self.get_overall_status().value,
            "uptime_seconds": round(time.monotonic() - self._started, 3),
            "checks": {name: result.to_dict() for name, result in self._results.items()},
            "timestamp": format_timestamp(utcnow()),
        }


def create_store_check(store) -> Probe:
    """Probe that the credential store decodes, ignoring its read-error policy."""

    def check() -> Dict[str, Any]:
        count = store.check()
        return {
            "status": HealthStatus.HEALTHY.value,
            "message": f"{count} credentials readable",
            "details": {"location": store.location, "credentials": count},
        }

    return check
