"""Dependency probes and the registry that aggregates them."""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx

from ..utils.logging import (
    ConfigurationError,
    LogContext,
    PaperHealthException,
    ProbeError,
    ProbeTimeoutError,
    get_logger,
)
from .collaborators import CacheClient, QueryClient
from .config import ExternalEndpointConfig, HealthServiceConfig, ResourceThresholds
from .models import HealthState, HealthStatus, SystemHealth

if TYPE_CHECKING:
    from .sampler import ResourceSampler

logger = get_logger(__name__, LogContext.PROBE)

DATABASE_TARGET = "database"
CACHE_TARGET = "cache"
SYSTEM_TARGET = "system_resources"
EXTERNAL_TARGET_PREFIX = "external_api_"


class HealthProbe(ABC):
    """Abstract base class for dependency probes."""

    def __init__(self, name: str, timeout: float = 5.0, critical: bool = False):
        """Initialize probe.

        Args:
            name: Target name reported in every status
            timeout: Budget for a single probe run in seconds
            critical: Whether the target is on the critical path
        """
        self.name = name
        self.timeout = timeout
        self.critical = critical

    @abstractmethod
    async def probe(self) -> HealthStatus:
        """Probe the target once.

        Returns:
            HealthStatus describing the target right now
        """
        pass

    def _status(
        self,
        state: HealthState,
        started: float | None = None,
        error: str | None = None,
        **metadata: Any,
    ) -> HealthStatus:
        response_time_ms = (
            (time.perf_counter() - started) * 1000 if started is not None else None
        )
        return HealthStatus(
            target=self.name,
            state=state,
            response_time_ms=response_time_ms,
            error=error,
            metadata={"critical": self.critical, **metadata},
        )


class DatabaseProbe(HealthProbe):
    """Checks that the persistent store answers a trivial query in time."""

    existence_query = "SELECT 1"

    def __init__(
        self,
        client: QueryClient | None,
        timeout: float = 5.0,
        degraded_threshold_ms: float = 1000.0,
        critical_queries: Iterable[str] = (),
    ):
        super().__init__(DATABASE_TARGET, timeout, critical=True)
        self.client = client
        self.degraded_threshold_ms = degraded_threshold_ms
        self.critical_queries = list(critical_queries)

    async def probe(self) -> HealthStatus:
        started = time.perf_counter()

        if self.client is None:
            return self._status(
                HealthState.UNHEALTHY, started, error="No database client configured"
            )

        try:
            await self.client.query(self.existence_query)
        except Exception as e:
            logger.warning("Database probe failed", error=str(e))
            return self._status(
                HealthState.UNHEALTHY, started, error=str(e) or type(e).__name__
            )

        response_time_ms = (time.perf_counter() - started) * 1000
        critical_results = await self._run_critical_queries(started)

        state = (
            HealthState.DEGRADED
            if response_time_ms > self.degraded_threshold_ms
            else HealthState.HEALTHY
        )
        return HealthStatus(
            target=self.name,
            state=state,
            response_time_ms=response_time_ms,
            metadata={
                "critical": self.critical,
                "connection_pool": "active",
                "critical_queries": critical_results,
            },
        )

    async def _run_critical_queries(self, started: float) -> dict[str, dict[str, Any]]:
        if not self.critical_queries:
            return {}

        remaining = self.timeout - (time.perf_counter() - started)
        if remaining <= 0:
            return {
                sql: {"success": False, "latency_ms": None, "error": "skipped"}
                for sql in self.critical_queries
            }

        tasks = {
            asyncio.ensure_future(self._timed_query(sql)): sql
            for sql in self.critical_queries
        }
        try:
            # Half of what is left, so the whole probe still reports inside its budget
            done, pending = await asyncio.wait(tasks, timeout=remaining / 2)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        results: dict[str, dict[str, Any]] = {}
        for task in pending:
            results[tasks[task]] = {
                "success": False,
                "latency_ms": None,
                "error": "timed out",
            }
        for task in done:
            results[tasks[task]] = task.result()
        return results

    async def _timed_query(self, sql: str) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            await self.client.query(sql)
            return {
                "success": True,
                "latency_ms": (time.perf_counter() - started) * 1000,
                "error": None,
            }
        except Exception as e:
            return {
                "success": False,
                "latency_ms": (time.perf_counter() - started) * 1000,
                "error": str(e) or type(e).__name__,
            }


def parse_cache_memory_info(info: Any) -> dict[str, str]:
    """Extract memory-related fields from a cache ``INFO`` reply.

    Accepts either the raw ``key:value`` text blob or an already parsed mapping.
    """
    if isinstance(info, dict):
        return {str(k): str(v) for k, v in info.items() if "memory" in str(k)}

    if isinstance(info, bytes):
        info = info.decode(errors="replace")

    memory_info: dict[str, str] = {}
    for line in str(info or "").splitlines():
        if ":" not in line or line.startswith("#"):
            continue
        key, _, value = line.partition(":")
        if "memory" in key:
            memory_info[key.strip()] = value.strip()
    return memory_info


class CacheProbe(HealthProbe):
    """Round-trips a throwaway key through the cache."""

    test_value = "test"

    def __init__(
        self,
        client: CacheClient | None,
        timeout: float = 3.0,
        degraded_threshold_ms: float = 500.0,
    ):
        super().__init__(CACHE_TARGET, timeout, critical=False)
        self.client = client
        self.degraded_threshold_ms = degraded_threshold_ms

    async def probe(self) -> HealthStatus:
        started = time.perf_counter()

        if self.client is None:
            return self._status(
                HealthState.UNHEALTHY, started, error="No cache client configured"
            )

        try:
            key = f"health_check_{uuid.uuid4().hex}"
            await self.client.set(key, self.test_value, 10)
            value = await self.client.get(key)
            await self.client.delete(key)

            if isinstance(value, bytes):
                value = value.decode(errors="replace")
            if value != self.test_value:
                raise ProbeError(
                    "Cache read/write test failed", context={"value": repr(value)}
                )

            response_time_ms = (time.perf_counter() - started) * 1000
            memory_usage = parse_cache_memory_info(await self.client.info())

        except Exception as e:
            logger.warning("Cache probe failed", error=str(e))
            return self._status(
                HealthState.UNHEALTHY, started, error=str(e) or type(e).__name__
            )

        state = (
            HealthState.DEGRADED
            if response_time_ms > self.degraded_threshold_ms
            else HealthState.HEALTHY
        )
        return HealthStatus(
            target=self.name,
            state=state,
            response_time_ms=response_time_ms,
            metadata={"critical": self.critical, "memory_usage": memory_usage},
        )


class ExternalEndpointProbe(HealthProbe):
    """Lightweight HEAD request against an external dependency."""

    def __init__(
        self,
        endpoint: ExternalEndpointConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            f"{EXTERNAL_TARGET_PREFIX}{endpoint.name}",
            endpoint.timeout,
            critical=endpoint.critical,
        )
        self.endpoint = endpoint
        self.http_client = http_client
        self.active_url = endpoint.url

    @property
    def using_backup(self) -> bool:
        return self.active_url != self.endpoint.url

    def fail_over(self) -> bool:
        """Switch probing (and callers reading ``active_url``) to the backup URL.

        Returns:
            True if this call switched to a configured backup; False if there
            is no backup or it is already active
        """
        if not self.endpoint.backup_url:
            logger.warning("No backup endpoint configured", target=self.name)
            return False

        if self.using_backup:
            logger.warning(
                "Backup endpoint already active", target=self.name, url=self.active_url
            )
            return False

        self.active_url = self.endpoint.backup_url
        logger.info("Switched to backup endpoint", target=self.name, url=self.active_url)
        return True

    def restore_primary(self) -> None:
        self.active_url = self.endpoint.url
        logger.info("Restored primary endpoint", target=self.name, url=self.active_url)

    async def _head(self, url: str, timeout: float) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.head(url, timeout=timeout)
        async with httpx.AsyncClient() as client:
            return await client.head(url, timeout=timeout)

    async def _primary_reachable(self) -> bool:
        # Half the budget, leaving the rest for probing the backup
        try:
            response = await self._head(self.endpoint.url, self.timeout / 2)
        except httpx.HTTPError:
            return False
        return response.is_success or response.is_redirect

    async def probe(self) -> HealthStatus:
        started = time.perf_counter()

        if self.using_backup and await self._primary_reachable():
            self.restore_primary()

        url = self.active_url
        try:
            response = await self._head(url, self.timeout)
        except httpx.HTTPError as e:
            return self._status(
                HealthState.UNHEALTHY,
                started,
                error=str(e) or type(e).__name__,
                url=url,
                using_backup=self.using_backup,
            )

        reachable = response.is_success or response.is_redirect
        return self._status(
            HealthState.HEALTHY if reachable else HealthState.DEGRADED,
            started,
            status_code=response.status_code,
            url=url,
            using_backup=self.using_backup,
        )


class SystemResourceProbe(HealthProbe):
    """Reports local resource pressure from the sampler's latest snapshot."""

    def __init__(
        self,
        sampler: "ResourceSampler",
        thresholds: ResourceThresholds,
        timeout: float = 5.0,
    ):
        super().__init__(SYSTEM_TARGET, timeout, critical=False)
        self.sampler = sampler
        self.thresholds = thresholds

    async def probe(self) -> HealthStatus:
        metrics = self.sampler.current()
        if metrics is None:
            metrics = await self.sampler.collect_snapshot()

        memory_percentage = metrics.memory.percentage
        cpu_percentage = metrics.cpu.percentage

        pressured = (
            memory_percentage > self.thresholds.memory.warning
            or cpu_percentage > self.thresholds.cpu.warning
        )

        return self._status(
            HealthState.DEGRADED if pressured else HealthState.HEALTHY,
            memory={
                "used": metrics.memory.used,
                "total": metrics.memory.total,
                "percentage": memory_percentage,
            },
            cpu={
                "user": metrics.cpu.user,
                "system": metrics.cpu.system,
                "percentage": cpu_percentage,
            },
            uptime=metrics.process.uptime,
            sampled_at=metrics.timestamp.isoformat(),
        )


def determine_overall_health(statuses: Iterable[HealthStatus]) -> HealthState:
    """Aggregate per-target states into one system state.

    ``unhealthy`` if any critical target is unhealthy or more than half of all
    targets are unhealthy; otherwise ``degraded`` if anything is unhealthy or
    degraded; otherwise ``healthy``.
    """
    statuses = list(statuses)
    unhealthy = [s for s in statuses if s.state == HealthState.UNHEALTHY]
    degraded = [s for s in statuses if s.state == HealthState.DEGRADED]

    critical_unhealthy = any(s.is_critical for s in unhealthy)

    if critical_unhealthy or len(unhealthy) > len(statuses) / 2:
        return HealthState.UNHEALTHY

    if unhealthy or degraded:
        return HealthState.DEGRADED

    return HealthState.HEALTHY


class ProbeRegistry:
    """Runs the configured probes and aggregates their results."""

    def __init__(
        self,
        probes: Iterable[HealthProbe] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize probe registry.

        Args:
            probes: Probes to register, in reporting order
            clock: Time source for timestamps and uptime
        """
        self.clock = clock
        self.started_at = clock()
        self._probes: dict[str, HealthProbe] = {}
        self._last_health_check: SystemHealth | None = None

        for probe in probes or ():
            self.register(probe)

        logger.info("Probe registry initialized", probe_count=len(self._probes))

    @property
    def probes(self) -> list[HealthProbe]:
        return list(self._probes.values())

    @property
    def last_health_check(self) -> SystemHealth | None:
        return self._last_health_check

    def register(self, probe: HealthProbe) -> None:
        if probe.name in self._probes:
            logger.warning("Replacing registered probe", target=probe.name)
        self._probes[probe.name] = probe

    def unregister(self, name: str) -> bool:
        return self._probes.pop(name, None) is not None

    def get_probe(self, name: str) -> HealthProbe | None:
        return self._probes.get(name)

    async def perform_health_check(self) -> SystemHealth:
        """Run every probe concurrently and aggregate the results.

        Never raises: each probe is isolated behind its own timeout and
        exception handler.

        Returns:
            SystemHealth for this cycle
        """
        probes = self.probes
        statuses = await asyncio.gather(*(self._run_probe(p) for p in probes))

        health = SystemHealth(
            overall=determine_overall_health(statuses),
            targets=tuple(statuses),
            observed_at=self.clock(),
            uptime=self.clock() - self.started_at,
        )
        self._last_health_check = health

        logger.debug(
            "Health check completed",
            overall=health.overall.value,
            target_count=len(statuses),
        )
        return health

    async def _run_probe(self, probe: HealthProbe) -> HealthStatus:
        timeout = probe.timeout
        if (
            isinstance(timeout, bool)
            or not isinstance(timeout, int | float)
            or not timeout > 0
        ):
            logger.error("Invalid probe timeout", target=probe.name, timeout=timeout)
            return self._failure_status(
                probe,
                ConfigurationError(
                    f"Invalid probe timeout: {timeout!r}",
                    {"target": probe.name, "timeout": repr(timeout)},
                ),
            )

        started = time.perf_counter()
        try:
            return await asyncio.wait_for(probe.probe(), timeout=timeout)
        except TimeoutError:
            logger.warning("Probe timed out", target=probe.name, timeout=timeout)
            error = ProbeTimeoutError(
                f"{probe.name} probe timed out after {timeout}s",
                {"target": probe.name, "timeout": timeout},
            )
        except Exception as e:
            logger.error("Probe failed", target=probe.name, error=str(e))
            error = ProbeError(f"Probe failed: {e}", {"target": probe.name})

        return self._failure_status(probe, error, started)

    def _failure_status(
        self,
        probe: HealthProbe,
        error: PaperHealthException,
        started: float | None = None,
    ) -> HealthStatus:
        """Convert a probe-level error into an unhealthy status."""
        return HealthStatus(
            target=probe.name,
            state=HealthState.UNHEALTHY,
            last_checked_at=self.clock(),
            response_time_ms=(
                (time.perf_counter() - started) * 1000 if started is not None else None
            ),
            error=error.message,
            metadata={"critical": probe.critical, "error_type": type(error).__name__},
        )

    async def get_service_status(self, name: str) -> HealthStatus | None:
        """Get the latest status of one target, probing first if never checked."""
        if self._last_health_check is None:
            await self.perform_health_check()

        return self._last_health_check.get_target(name)


def create_probes(
    config: HealthServiceConfig,
    database_client: QueryClient | None = None,
    cache_client: CacheClient | None = None,
    sampler: "ResourceSampler | None" = None,
    http_client: httpx.AsyncClient | None = None,
) -> list[HealthProbe]:
    """Build the enabled probe set from configuration.

    Disabled probes are left out entirely, so their targets never appear in
    a SystemHealth.
    """
    probes: list[HealthProbe] = []

    if config.database.enabled:
        probes.append(
            DatabaseProbe(
                database_client,
                timeout=config.database.timeout,
                degraded_threshold_ms=config.database.degraded_threshold_ms,
                critical_queries=config.database.critical_queries,
            )
        )

    if config.cache.enabled:
        probes.append(
            CacheProbe(
                cache_client,
                timeout=config.cache.timeout,
                degraded_threshold_ms=config.cache.degraded_threshold_ms,
            )
        )

    if config.external_apis.enabled:
        for endpoint in config.external_apis.endpoints:
            probes.append(ExternalEndpointProbe(endpoint, http_client))

    if config.system.enabled and sampler is not None:
        probes.append(
            SystemResourceProbe(
                sampler,
                config.resource_monitoring.thresholds,
                timeout=config.system.timeout,
            )
        )

    return probes
