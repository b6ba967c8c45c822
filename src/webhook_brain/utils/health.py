"""
Health monitoring for the webhook engine.

Provides health checks over the subscription cache, the dispatch queue
and the worker pool for deployment probes and operator visibility.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

HealthCheckFunc = Callable[[], Awaitable["HealthCheckResult"]]


@dataclass
class HealthCheckResult:
    """Result of a health check."""

    name: str
    status: str  # "healthy", "unhealthy", "degraded"
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return self.status == HEALTHY


@dataclass
class HealthStatus:
    """Overall health status aggregation."""

    status: str
    checks: List[HealthCheckResult]
    timestamp: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return self.status == HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "checks": [
                {
                    "name": check.name,
                    "status": check.status,
                    "message": check.message,
                    "duration_ms": check.duration_ms,
                    "details": check.details,
                }
                for check in self.checks
            ],
        }


class HealthChecker:
    """
    Runs registered health checks with per-check timeouts.

    A failing critical check makes the engine unhealthy; a degraded
    critical check or any failing non-critical check makes it degraded.
    """

    def __init__(self):
        self._checks: Dict[str, HealthCheckFunc] = {}
        self._check_configs: Dict[str, Dict[str, Any]] = {}

    def register_check(
        self,
        name: str,
        check_func: HealthCheckFunc,
        timeout_seconds: float = 5.0,
        critical: bool = True,
    ) -> None:
        """
        Register a health check function.

        Args:
            name: Unique name for the health check
            check_func: Async function that returns HealthCheckResult
            timeout_seconds: Timeout for the check
            critical: Whether this check can make the engine unhealthy
        """
        self._checks[name] = check_func
        self._check_configs[name] = {
            "timeout_seconds": timeout_seconds,
            "critical": critical,
        }
        logger.debug("Registered health check", name=name, critical=critical, timeout=timeout_seconds)

    def unregister_check(self, name: str) -> None:
        self._checks.pop(name, None)
        self._check_configs.pop(name, None)

    async def run_check(self, name: str) -> HealthCheckResult:
        """
        Run a specific health check.

        Args:
            name: Name of the check to run

        Returns:
            Health check result; timeouts and exceptions become unhealthy results
        """
        if name not in self._checks:
            return HealthCheckResult(name=name, status=UNHEALTHY, message=f"Unknown health check: {name}")

        config = self._check_configs[name]
        start_time = time.time()

        try:
            result = await asyncio.wait_for(self._checks[name](), timeout=config["timeout_seconds"])
            result.duration_ms = (time.time() - start_time) * 1000
            return result

        except asyncio.TimeoutError:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning("Health check timed out", name=name, timeout=config["timeout_seconds"])
            return HealthCheckResult(
                name=name,
                status=UNHEALTHY,
                message=f"Health check timed out after {config['timeout_seconds']}s",
                duration_ms=duration_ms,
            )

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error("Health check failed", name=name, error=str(e), exc_info=True)
            return HealthCheckResult(
                name=name,
                status=UNHEALTHY,
                message=f"Health check failed: {e}",
                duration_ms=duration_ms,
                details={"exception": str(e)},
            )

    async def run_all_checks(self) -> HealthStatus:
        """Run all registered health checks concurrently."""
        if not self._checks:
            return HealthStatus(status=HEALTHY, checks=[])

        results = await asyncio.gather(*(self.run_check(name) for name in self._checks))
        overall_status = self._determine_overall_status(results)

        logger.info(
            "Health checks completed",
            overall_status=overall_status,
            total_checks=len(results),
            healthy_checks=sum(1 for r in results if r.is_healthy),
        )
        return HealthStatus(status=overall_status, checks=list(results))

    def _determine_overall_status(self, results: List[HealthCheckResult]) -> str:
        status = HEALTHY
        for result in results:
            if result.is_healthy:
                continue
            critical = self._check_configs.get(result.name, {}).get("critical", True)
            if critical and result.status == UNHEALTHY:
                return UNHEALTHY
            status = DEGRADED
        return status

    def get_registered_checks(self) -> List[str]:
        return list(self._checks.keys())


def create_cache_health_check(cache) -> HealthCheckFunc:
    """
    Create a freshness check for the subscription cache.

    Unhealthy before the first snapshot is loaded; degraded once the
    snapshot is older than two refresh intervals.
    """

    async def cache_health() -> HealthCheckResult:
        stats = cache.get_stats()
        if not cache.loaded:
            return HealthCheckResult(
                name="subscription_cache",
                status=UNHEALTHY,
                message="No subscription snapshot loaded yet",
                details=stats,
            )

        staleness = cache.staleness_seconds or 0.0
        if staleness > 2 * cache.refresh_interval_seconds:
            return HealthCheckResult(
                name="subscription_cache",
                status=DEGRADED,
                message=f"Subscription snapshot is {staleness:.0f}s old",
                details=stats,
            )

        return HealthCheckResult(
            name="subscription_cache",
            status=HEALTHY,
            message="Subscription snapshot is fresh",
            details=stats,
        )

    return cache_health


def create_queue_health_check(queue, max_visible: Optional[int] = None) -> HealthCheckFunc:
    """
    Create a backlog check for the dispatch queue.

    Degraded when more than ``max_visible`` descriptors wait for a worker.
    """

    async def queue_health() -> HealthCheckResult:
        stats = await queue.get_stats()
        visible = stats.get("visible", 0)
        if max_visible is not None and visible > max_visible:
            return HealthCheckResult(
                name="dispatch_queue",
                status=DEGRADED,
                message=f"Dispatch backlog of {visible} exceeds {max_visible}",
                details=stats,
            )
        return HealthCheckResult(
            name="dispatch_queue",
            status=HEALTHY,
            message="Dispatch queue is reachable",
            details=stats,
        )

    return queue_health


def create_worker_pool_health_check(pool) -> HealthCheckFunc:
    """Create a liveness check for the dispatch worker pool."""

    async def worker_pool_health() -> HealthCheckResult:
        stats = pool.get_stats()
        stats.pop("tracker", None)
        if not pool.is_running:
            return HealthCheckResult(
                name="worker_pool",
                status=UNHEALTHY,
                message="Dispatch worker pool is not running",
                details=stats,
            )
        return HealthCheckResult(
            name="worker_pool",
            status=HEALTHY,
            message="Dispatch worker pool is running",
            details=stats,
        )

    return worker_pool_health
