from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from apigate.logging import get_logger

logger = get_logger(__name__)

Checker = Callable[[], Awaitable[Any]]


class HealthService:
    """Check external collaborators and fold the results into one status.

    ``healthy`` when every configured dependency is up, ``unhealthy`` when a
    critical one is down, ``degraded`` otherwise.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 3.0,
        critical: Iterable[str] = ("identity_provider",),
        version: str = "0.0.0",
        environment: str = "development",
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.critical = set(critical)
        self.version = version
        self.environment = environment
        self._checkers: Dict[str, Optional[Checker]] = {}
        self._started = time.monotonic()

    def register(self, name: str, checker: Optional[Checker]) -> None:
        """Register a dependency; ``None`` reports it as not configured."""
        self._checkers[name] = checker

    async def _run_bounded(self, name: str, checker: Optional[Checker]) -> Dict[str, Any]:
        if checker is None:
            return {"status": "not_configured", "latency_ms": None, "error": None}
        started = time.perf_counter()
        error: Optional[str] = None
        try:
            await asyncio.wait_for(checker(), self.timeout_seconds)
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout_seconds}s"
            logger.error("health_check_timeout", component=name, timeout=self.timeout_seconds)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("health_check_failed", component=name, error=error)
        latency = round((time.perf_counter() - started) * 1000, 2)
        return {"status": "down" if error else "up", "latency_ms": latency, "error": error}

    async def check(self) -> Dict[str, Any]:
        started = time.perf_counter()
        names = list(self._checkers)
        results = await asyncio.gather(
            *(self._run_bounded(name, self._checkers[name]) for name in names)
        )
        checks = dict(zip(names, results))

        down = {name for name, result in checks.items() if result["status"] == "down"}
        if down & self.critical:
            status = "unhealthy"
        elif down:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - self._started, 1),
            "version": self.version,
            "environment": self.environment,
            "total_latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    @staticmethod
    def http_status(report: Dict[str, Any]) -> int:
        return 503 if report["status"] == "unhealthy" else 200
