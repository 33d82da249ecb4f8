"""Wires probes, sampler and recovery into one monitoring service."""

from datetime import timedelta
from typing import Any

import httpx

from ..utils.logging import LogContext, get_logger
from .collaborators import CacheClient, QueryClient
from .config import HealthServiceConfig, create_default_config
from .models import (
    HealthStatus,
    RecoveryAction,
    RecoveryAttempt,
    RecoveryStats,
    ResourceAlert,
    ResourceMetrics,
    ResourceSummary,
    SystemHealth,
)
from .notifications import NotificationDispatcher, NotificationSink
from .probes import ExternalEndpointProbe, ProbeRegistry, create_probes
from .recovery import RecoveryEngine, create_default_recovery_actions
from .sampler import ResourceSampler

logger = get_logger(__name__, LogContext.HEALTH)


class HealthOrchestrator:
    """Top-level health monitoring service.

    Owns the probe registry, the resource sampler and the recovery engine,
    starts and stops them in order, and exposes a read-only query facade.
    """

    def __init__(
        self,
        config: HealthServiceConfig | None = None,
        notifier: NotificationSink | None = None,
        database_client: QueryClient | None = None,
        cache_client: CacheClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        recovery_actions: list[RecoveryAction] | None = None,
    ):
        """Initialize health orchestrator.

        Args:
            config: Monitoring configuration (reference defaults if None)
            notifier: Notification sink (log-only dispatcher if None)
            database_client: Persistent store client for the database probe
            cache_client: Cache client for the cache probe
            http_client: Shared HTTP client for external endpoint probes
            recovery_actions: Remediation table (reference actions if None)
        """
        self.config = config or create_default_config()
        self.notifier = notifier or NotificationDispatcher()

        monitoring = self.config.resource_monitoring
        self.sampler = ResourceSampler(
            self.notifier,
            thresholds=monitoring.thresholds,
            interval=monitoring.interval,
            max_samples=monitoring.max_samples,
        )

        self.registry = ProbeRegistry(
            create_probes(
                self.config,
                database_client=database_client,
                cache_client=cache_client,
                sampler=self.sampler,
                http_client=http_client,
            )
        )

        if recovery_actions is None:
            recovery_actions = create_default_recovery_actions(
                cache_client=cache_client,
                database_client=database_client,
                endpoint_probes=[
                    p for p in self.registry.probes if isinstance(p, ExternalEndpointProbe)
                ],
            )

        self.recovery = RecoveryEngine(
            self.registry,
            self.notifier,
            recovery_actions,
            check_interval=self.config.recovery.check_interval,
            alert_threshold=self.config.recovery.alert_threshold,
            enabled=self.config.recovery.enabled,
        )

        self._running = False

        logger.info(
            "Health orchestrator initialized",
            targets=[p.name for p in self.registry.probes],
            recovery_actions=len(recovery_actions),
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start sampling and recovery, then run an initial health check."""
        if self._running:
            logger.debug("Health orchestrator already running")
            return

        logger.info("Starting health monitoring")

        if self.config.resource_monitoring.enabled:
            await self.sampler.start()

        await self.recovery.start()
        self._running = True

        health = await self.registry.perform_health_check()
        logger.info("Health monitoring started", overall=health.overall.value)

    async def stop(self) -> None:
        """Stop recovery, then sampling."""
        if not self._running:
            return

        logger.info("Stopping health monitoring")
        await self.recovery.stop()
        await self.sampler.stop()
        self._running = False
        logger.info("Health monitoring stopped")

    async def get_system_health(self) -> SystemHealth:
        return await self.registry.perform_health_check()

    async def get_service_status(self, name: str) -> HealthStatus | None:
        return await self.registry.get_service_status(name)

    def get_current_resource_metrics(self) -> ResourceMetrics | None:
        return self.sampler.current()

    def get_resource_history(self, limit: int | None = None) -> list[ResourceMetrics]:
        return self.sampler.history(limit)

    def get_active_resource_alerts(self) -> list[ResourceAlert]:
        return self.sampler.active_alerts()

    def get_resource_summary(self, window: timedelta | None = None) -> ResourceSummary:
        if window is None:
            return self.sampler.summary()
        return self.sampler.summary(window)

    def get_recovery_stats(self) -> RecoveryStats:
        return self.recovery.get_recovery_stats()

    def get_recovery_history(self, action_id: str | None = None) -> list[RecoveryAttempt]:
        return self.recovery.get_recovery_history(action_id)


# Global orchestrator instance
_health_orchestrator: HealthOrchestrator | None = None


def get_health_orchestrator() -> HealthOrchestrator:
    """Get the global health orchestrator instance.

    Created lazily with the default configuration and no collaborators.

    Returns:
        HealthOrchestrator instance
    """
    global _health_orchestrator
    if _health_orchestrator is None:
        _health_orchestrator = HealthOrchestrator()
    return _health_orchestrator


def initialize_health_orchestrator(
    config: HealthServiceConfig | None = None, **collaborators: Any
) -> HealthOrchestrator:
    """Replace the global health orchestrator.

    Args:
        config: Monitoring configuration
        **collaborators: Passed through to HealthOrchestrator

    Returns:
        The new global instance (not started)
    """
    global _health_orchestrator
    _health_orchestrator = HealthOrchestrator(config, **collaborators)
    return _health_orchestrator


def reset_health_orchestrator() -> None:
    """Drop the global instance without stopping it (tests only)."""
    global _health_orchestrator
    _health_orchestrator = None
