"""Resource sampling and threshold alerting for the running process."""

import asyncio
import platform
import statistics
import time
from collections import deque
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Protocol

import psutil

from ..utils.logging import LogContext, get_logger
from .config import ResourceThresholds, ThresholdPair
from .models import (
    AlertCategory,
    AlertSeverity,
    CpuMetrics,
    MemoryMetrics,
    ProcessMetrics,
    ResourceAlert,
    ResourceMetrics,
    ResourceSummary,
    SchedulerMetrics,
)
from .notifications import (
    Notification,
    NotificationPriority,
    NotificationSink,
    NotificationType,
    deliver,
)

logger = get_logger(__name__, LogContext.SAMPLER)


class MetricsCollector(Protocol):
    """Produces one resource snapshot per call."""

    async def collect(self) -> ResourceMetrics: ...


class PsutilMetricsCollector:
    """Collects process and event-loop metrics with psutil."""

    def __init__(self, pid: int | None = None):
        """Initialize collector.

        Args:
            pid: Process to sample (defaults to the current process)
        """
        self.process = psutil.Process(pid)
        self.cpu_count = psutil.cpu_count() or 1

        # First cpu_percent() call only establishes the baseline
        self.process.cpu_percent(interval=None)
        self._last_wall = time.monotonic()
        self._last_thread_cpu = time.thread_time()

    async def collect(self) -> ResourceMetrics:
        delay_ms = await self._measure_scheduler_delay()
        utilization = self._scheduler_utilization()

        with self.process.oneshot():
            memory_info = self.process.memory_info()
            cpu_times = self.process.cpu_times()
            cpu_percent = self.process.cpu_percent(interval=None)
            create_time = self.process.create_time()
            thread_count = self.process.num_threads()
            handles = self._count_handles()

        system_memory = psutil.virtual_memory()

        try:
            load_average = tuple(psutil.getloadavg())
        except (AttributeError, OSError):
            load_average = (0.0, 0.0, 0.0)

        return ResourceMetrics(
            timestamp=datetime.now(),
            memory=MemoryMetrics(
                used=memory_info.rss,
                total=system_memory.total,
                percentage=memory_info.rss / system_memory.total * 100,
                rss=memory_info.rss,
                vms=memory_info.vms,
                available=system_memory.available,
            ),
            cpu=CpuMetrics(
                user=cpu_times.user,
                system=cpu_times.system,
                percentage=min(cpu_percent / self.cpu_count, 100.0),
                load_average=load_average,
            ),
            process=ProcessMetrics(
                uptime=time.time() - create_time,
                pid=self.process.pid,
                version=platform.python_version(),
                active_handles=handles,
                active_requests=len(asyncio.all_tasks()),
                thread_count=thread_count,
            ),
            scheduler=SchedulerMetrics(delay_ms=delay_ms, utilization=utilization),
        )

    def _count_handles(self) -> int:
        try:
            if hasattr(self.process, "num_fds"):
                return self.process.num_fds()
            return self.process.num_handles()
        except (AttributeError, psutil.AccessDenied):
            return 0

    async def _measure_scheduler_delay(self) -> float:
        """Time for the event loop to come back to us after yielding once."""
        start = time.perf_counter()
        await asyncio.sleep(0)
        return (time.perf_counter() - start) * 1000

    def _scheduler_utilization(self) -> float:
        """Share of wall time the event-loop thread spent on CPU since last call."""
        now_wall = time.monotonic()
        now_cpu = time.thread_time()

        wall_delta = now_wall - self._last_wall
        cpu_delta = now_cpu - self._last_thread_cpu
        self._last_wall = now_wall
        self._last_thread_cpu = now_cpu

        if wall_delta <= 0:
            return 0.0
        return min(cpu_delta / wall_delta * 100, 100.0)


class ResourceSampler:
    """Samples resource metrics on a timer and raises/resolves threshold alerts."""

    def __init__(
        self,
        notifier: NotificationSink,
        thresholds: ResourceThresholds | None = None,
        interval: float = 30.0,
        max_samples: int = 1000,
        collector: MetricsCollector | None = None,
        snapshot_collector: MetricsCollector | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize resource sampler.

        Args:
            notifier: Sink for alert and resolution notifications
            thresholds: Alert thresholds (reference defaults if None)
            interval: Seconds between samples
            max_samples: Ring buffer capacity
            collector: Metrics source (psutil-backed if None)
            snapshot_collector: Source for on-demand snapshots. Defaults to a
                second psutil collector for the same process when sampling
                with psutil, keeping the CPU baselines of ``collector``
                untouched; otherwise to ``collector`` itself
            clock: Time source for alert timestamps and summary windows
        """
        self.notifier = notifier
        self.thresholds = thresholds or ResourceThresholds()
        self.interval = interval
        self.max_samples = max_samples
        self.collector = collector or PsutilMetricsCollector()
        if snapshot_collector is None:
            if isinstance(self.collector, PsutilMetricsCollector):
                snapshot_collector = PsutilMetricsCollector(self.collector.process.pid)
            else:
                snapshot_collector = self.collector
        self.snapshot_collector = snapshot_collector
        self.clock = clock

        self._history: deque[ResourceMetrics] = deque(maxlen=max_samples)
        self._active_alerts: dict[str, ResourceAlert] = {}
        self._task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._tick_lock = asyncio.Lock()

        logger.info(
            "Resource sampler initialized", interval=interval, max_samples=max_samples
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start sampling; a no-op while already running."""
        if self.is_running:
            logger.debug("Resource sampler already running")
            return

        logger.info("Starting resource sampling", interval=self.interval)
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._sampling_loop(self._shutdown_event))

    async def stop(self) -> None:
        """Stop sampling after the in-flight tick, if any, completes."""
        if self._task is None:
            return

        task, self._task = self._task, None
        self._shutdown_event.set()
        await asyncio.gather(task, return_exceptions=True)

        logger.info("Resource sampling stopped")

    async def collect_snapshot(self) -> ResourceMetrics:
        """Collect one snapshot without recording it or evaluating thresholds."""
        return await self.snapshot_collector.collect()

    async def sample_once(self) -> ResourceMetrics | None:
        """Run one sampling tick.

        Returns:
            The recorded snapshot, or None if collection failed this tick
        """
        async with self._tick_lock:
            try:
                metrics = await self.collector.collect()
            except Exception as e:
                logger.error("Error collecting resource metrics", error=str(e))
                return None

            self._history.append(metrics)

            logger.debug(
                "Resource metrics recorded",
                memory_percentage=metrics.memory.percentage,
                cpu_percentage=metrics.cpu.percentage,
                scheduler_delay_ms=metrics.scheduler.delay_ms,
            )

            await self._check_thresholds(metrics)
            return metrics

    async def _sampling_loop(self, shutdown_event: asyncio.Event) -> None:
        logger.debug("Starting resource sampling loop")

        try:
            while not shutdown_event.is_set():
                try:
                    await self.sample_once()
                except Exception as e:
                    logger.error("Resource sampling tick failed", error=str(e))

                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
                    break  # Shutdown event was set
                except TimeoutError:
                    continue

        except asyncio.CancelledError:
            logger.debug("Resource sampling cancelled")
            raise
        finally:
            logger.debug("Resource sampling loop ended")

    async def _check_thresholds(self, metrics: ResourceMetrics) -> None:
        checks = [
            (
                AlertCategory.MEMORY,
                metrics.memory.percentage,
                self.thresholds.memory,
                "memory usage",
                "%",
            ),
            (
                AlertCategory.CPU,
                metrics.cpu.percentage,
                self.thresholds.cpu,
                "CPU usage",
                "%",
            ),
            (
                AlertCategory.SCHEDULER_DELAY,
                metrics.scheduler.delay_ms,
                self.thresholds.scheduler_delay,
                "scheduler delay",
                "ms",
            ),
            (
                AlertCategory.SCHEDULER_UTILIZATION,
                metrics.scheduler.utilization,
                self.thresholds.scheduler_utilization,
                "scheduler utilization",
                "%",
            ),
        ]

        for category, value, pair, label, unit in checks:
            await self._evaluate(category, value, pair, label, unit)

    async def _evaluate(
        self,
        category: AlertCategory,
        value: float,
        pair: ThresholdPair,
        label: str,
        unit: str,
    ) -> None:
        if value >= pair.critical:
            await self._raise_alert(
                category,
                AlertSeverity.CRITICAL,
                f"Critical {label}: {value:.1f}{unit}",
                value,
                pair.critical,
            )
        elif value >= pair.warning:
            await self._raise_alert(
                category,
                AlertSeverity.WARNING,
                f"High {label}: {value:.1f}{unit}",
                value,
                pair.warning,
            )
        else:
            await self._resolve_alert(category, label)

    async def _raise_alert(
        self,
        category: AlertCategory,
        severity: AlertSeverity,
        message: str,
        value: float,
        threshold: float,
    ) -> None:
        alert_id = category.value
        existing = self._active_alerts.get(alert_id)
        alert = ResourceAlert(
            id=alert_id,
            category=category,
            severity=severity,
            message=message,
            value=value,
            threshold=threshold,
            raised_at=self.clock(),
        )

        if existing is not None and severity.rank <= existing.severity.rank:
            if severity.rank < existing.severity.rank:
                self._active_alerts[alert_id] = replace(
                    alert, raised_at=existing.raised_at
                )
                logger.info("Resource alert downgraded", alert_id=alert_id)
            return

        self._active_alerts[alert_id] = alert
        logger.warning(
            "Resource alert triggered",
            alert_id=alert_id,
            severity=severity.value,
            value=value,
            threshold=threshold,
        )

        await deliver(
            self.notifier,
            Notification(
                type=NotificationType.SYSTEM_ALERT.value,
                title=f"System Resource Alert - {category.value.upper()}",
                message=message,
                priority=(
                    NotificationPriority.URGENT
                    if severity == AlertSeverity.CRITICAL
                    else NotificationPriority.HIGH
                ),
                data={
                    "alert_type": category.value,
                    "severity": severity.value,
                    "value": value,
                    "threshold": threshold,
                    "timestamp": alert.raised_at.isoformat(),
                },
            ),
        )

    async def _resolve_alert(self, category: AlertCategory, label: str) -> None:
        alert = self._active_alerts.pop(category.value, None)
        if alert is None:
            return

        resolved = replace(alert, resolved_at=self.clock())
        logger.info("Resource alert resolved", alert_id=alert.id)

        await deliver(
            self.notifier,
            Notification(
                type=NotificationType.SYSTEM_RECOVERY.value,
                title=f"System Resource Alert Resolved - {category.value.upper()}",
                message=f"{label.capitalize()} has returned to normal levels",
                priority=NotificationPriority.MEDIUM,
                data={
                    "alert_type": category.value,
                    "resolved_at": resolved.resolved_at.isoformat(),
                    "original_alert": resolved.to_dict(),
                },
            ),
        )

    def current(self) -> ResourceMetrics | None:
        """Latest recorded snapshot, if any."""
        return self._history[-1] if self._history else None

    def history(self, limit: int | None = None) -> list[ResourceMetrics]:
        """Recorded snapshots, oldest first.

        Args:
            limit: Only return the most recent ``limit`` snapshots
        """
        snapshots = list(self._history)
        if limit:
            return snapshots[-limit:]
        return snapshots

    def active_alerts(self) -> list[ResourceAlert]:
        return list(self._active_alerts.values())

    def summary(self, window: timedelta = timedelta(hours=1)) -> ResourceSummary:
        """Average and peak usage over the trailing window.

        Args:
            window: How far back to look

        Returns:
            ResourceSummary; empty averages/peaks when no samples fall in the window
        """
        cutoff = self.clock() - window
        recent = [m for m in self._history if m.timestamp >= cutoff]

        if not recent:
            return ResourceSummary(window=window, alert_count=len(self._active_alerts))

        series = {
            "memory_percentage": [m.memory.percentage for m in recent],
            "cpu_percentage": [m.cpu.percentage for m in recent],
            "scheduler_delay_ms": [m.scheduler.delay_ms for m in recent],
            "scheduler_utilization": [m.scheduler.utilization for m in recent],
        }

        return ResourceSummary(
            window=window,
            sample_count=len(recent),
            average={key: statistics.mean(values) for key, values in series.items()},
            peak={key: max(values) for key, values in series.items()},
            alert_count=len(self._active_alerts),
        )
