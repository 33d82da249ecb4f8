"""Health monitoring, resource sampling and automatic recovery."""

from .config import HealthServiceConfig, create_default_config, load_health_config
from .models import (
    AlertCategory,
    AlertSeverity,
    HealthState,
    HealthStatus,
    RecoveryAction,
    RecoveryAttempt,
    ResourceAlert,
    ResourceMetrics,
    SystemHealth,
)
from .notifications import (
    Notification,
    NotificationDispatcher,
    NotificationPriority,
    NotificationSink,
    NotificationType,
)
from .orchestrator import (
    HealthOrchestrator,
    get_health_orchestrator,
    initialize_health_orchestrator,
    reset_health_orchestrator,
)
from .probes import HealthProbe, ProbeRegistry, determine_overall_health
from .recovery import RecoveryEngine, create_default_recovery_actions
from .sampler import PsutilMetricsCollector, ResourceSampler

__all__ = [
    "AlertCategory",
    "AlertSeverity",
    "HealthOrchestrator",
    "HealthProbe",
    "HealthServiceConfig",
    "HealthState",
    "HealthStatus",
    "Notification",
    "NotificationDispatcher",
    "NotificationPriority",
    "NotificationSink",
    "NotificationType",
    "ProbeRegistry",
    "PsutilMetricsCollector",
    "RecoveryAction",
    "RecoveryAttempt",
    "RecoveryEngine",
    "ResourceAlert",
    "ResourceMetrics",
    "ResourceSampler",
    "SystemHealth",
    "create_default_config",
    "create_default_recovery_actions",
    "determine_overall_health",
    "get_health_orchestrator",
    "initialize_health_orchestrator",
    "load_health_config",
    "reset_health_orchestrator",
]
