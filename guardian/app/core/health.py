"""
Subsystem probes behind /health and /health/ready.

The database is the only hard dependency. Redis being unreachable or a push
channel missing its credentials leaves the service DEGRADED: emergencies
still reach contacts whose app is open through the realtime channel, and
the chat limiter falls back to per-process counters.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from guardian.app.core import cache, database
from guardian.app.core.config import settings
from guardian.app.realtime.rooms import rooms

logger = logging.getLogger(__name__)

_started = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = [HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNHEALTHY]


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    latency_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth]
    uptime_seconds: float
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.HEALTHY
        return max((c.status for c in self.components), key=_SEVERITY.index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "checked_at": self.checked_at.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


def _without_credentials(url: str) -> str:
    return url.rsplit("@", 1)[-1]


async def check_database() -> ComponentHealth:
    comp = ComponentHealth("database", details={"host": _without_credentials(settings.DATABASE_URL)})
    began = time.monotonic()
    try:
        await database.ping_db()
    except Exception as exc:
        logger.error("Database probe failed: %s", exc)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = f"{type(exc).__name__}: {exc}"
    comp.latency_ms = (time.monotonic() - began) * 1000
    return comp


async def check_redis() -> ComponentHealth:
    """Only probed when the chat limiter is configured to use it."""
    comp = ComponentHealth("redis")
    if settings.RATE_LIMIT_BACKEND != "redis":
        comp.message = "unused, chat limits are kept in memory"
        return comp

    comp.details = {"host": _without_credentials(settings.REDIS_URL)}
    began = time.monotonic()
    reachable = await cache.ping_redis()
    comp.latency_ms = (time.monotonic() - began) * 1000
    if not reachable:
        comp.status = HealthStatus.DEGRADED
        comp.message = "unreachable, chat limits fall back to this process"
    return comp


async def check_push_channels() -> ComponentHealth:
    configured = {
        "mobile_push": settings.mobile_push_enabled,
        "web_push": settings.web_push_enabled,
    }
    comp = ComponentHealth("push_channels", details=configured)
    missing = [name for name, enabled in configured.items() if not enabled]
    if len(missing) == len(configured):
        comp.status = HealthStatus.DEGRADED
        comp.message = "no push channel configured, realtime delivery only"
    elif missing:
        comp.message = f"{missing[0]} not configured"
    return comp


async def check_realtime() -> ComponentHealth:
    stats = rooms.stats()
    return ComponentHealth(
        "realtime",
        message=f"{stats['connections']} socket(s) on this worker",
        details=stats,
    )


async def run_health_check() -> HealthReport:
    components = [
        await check_database(),
        await check_redis(),
        await check_push_channels(),
        await check_realtime(),
    ]
    return HealthReport(components, uptime_seconds=time.monotonic() - _started)
