"""Data model for the health monitoring subsystem."""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any


class HealthState(Enum):
    """Health state of a probed target or of the whole system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthStatus:
    """Result of probing a single target."""

    target: str
    state: HealthState
    last_checked_at: datetime = field(default_factory=datetime.now)
    response_time_ms: float | None = None
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze metadata so a published status cannot change."""
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def is_critical(self) -> bool:
        """Whether this target is on the critical path."""
        return bool(self.metadata.get("critical", False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "state": self.state.value,
            "response_time_ms": self.response_time_ms,
            "last_checked_at": self.last_checked_at.isoformat(),
            "error": self.error,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SystemHealth:
    """Aggregate health across every probed target."""

    overall: HealthState
    targets: tuple[HealthStatus, ...]
    observed_at: datetime
    uptime: timedelta

    def get_target(self, name: str) -> HealthStatus | None:
        for status in self.targets:
            if status.target == name:
                return status
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "targets": [status.to_dict() for status in self.targets],
            "observed_at": self.observed_at.isoformat(),
            "uptime_seconds": self.uptime.total_seconds(),
        }


@dataclass(frozen=True)
class MemoryMetrics:
    """Process memory usage in bytes."""

    used: int
    total: int
    percentage: float
    rss: int = 0
    vms: int = 0
    available: int = 0


@dataclass(frozen=True)
class CpuMetrics:
    """Process CPU usage."""

    user: float
    system: float
    percentage: float
    load_average: tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass(frozen=True)
class ProcessMetrics:
    """Process identity and handle counts."""

    uptime: float
    pid: int
    version: str
    active_handles: int = 0
    active_requests: int = 0
    thread_count: int = 0


@dataclass(frozen=True)
class SchedulerMetrics:
    """Event-loop responsiveness."""

    delay_ms: float
    utilization: float


@dataclass(frozen=True)
class ResourceMetrics:
    """One resource snapshot taken by the sampler."""

    timestamp: datetime
    memory: MemoryMetrics
    cpu: CpuMetrics
    process: ProcessMetrics
    scheduler: SchedulerMetrics


class AlertCategory(Enum):
    """Metric family a resource alert is raised for."""

    MEMORY = "memory"
    CPU = "cpu"
    SCHEDULER_DELAY = "scheduler-delay"
    SCHEDULER_UTILIZATION = "scheduler-utilization"


class AlertSeverity(Enum):
    """Alert severity levels, ordered by rank."""

    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return 1 if self is AlertSeverity.WARNING else 2


@dataclass(frozen=True)
class ResourceAlert:
    """A threshold breach for one metric category."""

    id: str
    category: AlertCategory
    severity: AlertSeverity
    message: str
    value: float
    threshold: float
    raised_at: datetime
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
            "raised_at": self.raised_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class ResourceSummary:
    """Average and peak resource usage over a time window."""

    window: timedelta
    sample_count: int = 0
    average: dict[str, float] = field(default_factory=dict)
    peak: dict[str, float] = field(default_factory=dict)
    alert_count: int = 0


@dataclass(frozen=True)
class RecoveryAction:
    """Operator-defined remediation for one target service."""

    id: str
    target_service: str
    condition: Callable[[HealthStatus], bool]
    remediate: Callable[[], Awaitable[bool]]
    cooldown: timedelta
    max_attempts_per_window: int
    name: str = ""
    description: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class RecoveryAttempt:
    """Outcome of executing a recovery action once."""

    action_id: str
    timestamp: datetime
    succeeded: bool
    attempt_number: int
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class RecoveryStats:
    """Aggregate counts over the recorded recovery history."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    action_stats: dict[str, dict[str, int]] = field(default_factory=dict)
