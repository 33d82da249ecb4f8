"""
Pytest configuration and shared fixtures for paper-health tests.
"""

from datetime import datetime, timedelta

import pytest

from paper_health.health.models import (
    CpuMetrics,
    MemoryMetrics,
    ProcessMetrics,
    ResourceMetrics,
    SchedulerMetrics,
)
from paper_health.health.notifications import Notification, NotificationSink
from paper_health.health.orchestrator import reset_health_orchestrator


class RecordingSink(NotificationSink):
    """Notification sink that keeps everything it is sent."""

    def __init__(self):
        self.notifications: list[Notification] = []

    async def send(self, notification: Notification) -> bool:
        self.notifications.append(notification)
        return True

    def of_type(self, notification_type: str) -> list[Notification]:
        return [n for n in self.notifications if n.type == notification_type]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class QueuedCollector:
    """Metrics collector replaying a fixed sequence, repeating the last item."""

    def __init__(self, metrics: list[ResourceMetrics]):
        self.metrics = list(metrics)
        self.calls = 0

    async def collect(self) -> ResourceMetrics:
        self.calls += 1
        if len(self.metrics) > 1:
            return self.metrics.pop(0)
        return self.metrics[0]


def build_metrics(
    memory: float = 10.0,
    cpu: float = 5.0,
    delay_ms: float = 1.0,
    utilization: float = 5.0,
    timestamp: datetime | None = None,
) -> ResourceMetrics:
    total = 16 * 1024**3
    return ResourceMetrics(
        timestamp=timestamp or datetime(2024, 1, 15, 12, 0, 0),
        memory=MemoryMetrics(
            used=int(total * memory / 100),
            total=total,
            percentage=memory,
            rss=int(total * memory / 100),
        ),
        cpu=CpuMetrics(user=1.0, system=0.5, percentage=cpu),
        process=ProcessMetrics(uptime=120.0, pid=4242, version="3.12.0"),
        scheduler=SchedulerMetrics(delay_ms=delay_ms, utilization=utilization),
    )


@pytest.fixture
def recording_sink() -> RecordingSink:
    """Create a notification sink that records deliveries."""
    return RecordingSink()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Create a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def metrics_factory():
    """Factory for ResourceMetrics snapshots."""
    return build_metrics


@pytest.fixture
def collector_factory():
    """Factory for collectors replaying a list of snapshots."""
    return QueuedCollector


@pytest.fixture(autouse=True)
def reset_global_orchestrator():
    """Reset the process-wide orchestrator between tests."""
    reset_health_orchestrator()
    yield
    reset_health_orchestrator()
