"""
Health aggregation for the relay.

    component          unhealthy when                  degraded when
    ───────────────    ────────────────────────────    ─────────────────────────
    configuration      token / URL unusable            -
    delivery_client    missing, shut down, fatal auth  -
    capacity           -                               ≥ 90 % of MAX_PENDING_TOTAL
    channels           -                               - (informational)

/health returns the full report; /health/ready turns UNHEALTHY into 503.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from hec_ack.core.config import Settings, settings as default_settings
from hec_ack.core.errors import ConfigurationError

if TYPE_CHECKING:
    from hec_ack.delivery.client import AckingClient

logger = logging.getLogger(__name__)

# Fraction of MAX_PENDING_TOTAL at which the relay reports DEGRADED
CAPACITY_WARN_RATIO = 0.9

_started_at = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # accepting events, but submitters may wait
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    components: List[ComponentHealth]
    version: str
    environment: str
    uptime_seconds: float
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        """Worst component status wins."""
        statuses = {c.status for c in self.components}
        for status in (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED):
            if status in statuses:
                return status
        return HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


def _timed(name: str, check: Callable[[ComponentHealth], None]) -> ComponentHealth:
    comp = ComponentHealth(name=name)
    start = time.perf_counter()
    check(comp)
    comp.latency_ms = (time.perf_counter() - start) * 1000
    return comp


# ═══════════════════════════════════════════════════════════════════════════
# Checks
# ═══════════════════════════════════════════════════════════════════════════

def check_configuration(config: Settings) -> ComponentHealth:
    def check(comp: ComponentHealth) -> None:
        try:
            config.validate_for_sending()
        except ConfigurationError as exc:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = exc.message
            return
        comp.message = "HEC endpoint configured"
        comp.details = {"hec_url": config.base_url, "channel_transport": config.CHANNEL_TRANSPORT}

    return _timed("configuration", check)


def check_client(client: Optional["AckingClient"]) -> ComponentHealth:
    def check(comp: ComponentHealth) -> None:
        if client is None:
            comp.status, comp.message = HealthStatus.UNHEALTHY, "Client not started"
        elif client.fatal_error is not None:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = f"Authentication rejected: {client.fatal_error.message}"
        elif client.closed:
            comp.status, comp.message = HealthStatus.UNHEALTHY, "Client shut down"
        else:
            comp.message = "Accepting events"
            comp.details = {"in_flight": client.stats()["in_flight"]}

    return _timed("delivery_client", check)


def check_capacity(client: Optional["AckingClient"], config: Settings) -> ComponentHealth:
    """Outstanding ackIds against the aggregate ceiling."""
    def check(comp: ComponentHealth) -> None:
        if client is None:
            comp.status, comp.message = HealthStatus.DEGRADED, "No client"
            return
        used, limit = client.tracker.total_occupancy, config.MAX_PENDING_TOTAL
        comp.details = {"outstanding": used, "limit": limit, "used_pct": round(used / limit * 100, 1)}
        if used >= limit * CAPACITY_WARN_RATIO:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Backpressure: {used}/{limit} acknowledgments outstanding"
        else:
            comp.message = f"{limit - used} slots free"

    return _timed("capacity", check)


def check_channels(client: Optional["AckingClient"]) -> ComponentHealth:
    def check(comp: ComponentHealth) -> None:
        if client is None:
            return
        snapshot = client.registry.snapshot()
        active = snapshot["active"]
        comp.details = {
            "active_channel": active["id"] if active else None,
            "open_channels": snapshot["open_channels"],
            "polling": active is not None and client.poller.is_polling(active["id"]),
        }
        comp.message = "Channel open" if active else "No channel open (created on next event)"

    return _timed("channels", check)


async def run_health_check(
    client: Optional["AckingClient"] = None, config: Optional[Settings] = None
) -> HealthReport:
    config = config or default_settings
    report = HealthReport(
        components=[
            check_configuration(config),
            check_client(client),
            check_capacity(client, config),
            check_channels(client),
        ],
        version=config.APP_VERSION,
        environment=config.ENVIRONMENT,
        uptime_seconds=time.monotonic() - _started_at,
    )
    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check %s", report.status.value)
    return report
