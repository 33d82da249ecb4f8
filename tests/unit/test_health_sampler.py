"""Tests for resource sampling and threshold alerting."""

import asyncio
import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from paper_health.health.config import ResourceThresholds, ThresholdPair
from paper_health.health.models import AlertCategory, AlertSeverity
from paper_health.health.notifications import NotificationPriority
from paper_health.health.sampler import PsutilMetricsCollector, ResourceSampler


class FailingCollector:
    """Collector whose every call fails."""

    async def collect(self):
        raise RuntimeError("psutil unavailable")


class TestThresholdAlerts:
    """Test alert raising, escalation and resolution."""

    def make_sampler(self, sink, collector, clock, thresholds=None):
        return ResourceSampler(
            sink,
            thresholds=thresholds,
            collector=collector,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_alert_is_raised_once_across_ticks(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test that a sustained breach notifies only once."""
        sampler = self.make_sampler(
            recording_sink,
            collector_factory([metrics_factory(memory=75.0)]),
            fake_clock,
        )

        for _ in range(5):
            await sampler.sample_once()

        assert len(recording_sink.notifications) == 1
        notification = recording_sink.notifications[0]
        assert notification.type == "system_alert"
        assert notification.priority == NotificationPriority.HIGH
        assert notification.data["alert_type"] == "memory"
        assert notification.data["severity"] == "warning"

        alerts = sampler.active_alerts()
        assert len(alerts) == 1
        assert alerts[0].id == "memory"
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].threshold == 70.0

    @pytest.mark.asyncio
    async def test_value_at_threshold_triggers(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test that reaching the threshold exactly counts as a breach."""
        sampler = self.make_sampler(
            recording_sink,
            collector_factory([metrics_factory(cpu=90.0)]),
            fake_clock,
        )

        await sampler.sample_once()

        alerts = sampler.active_alerts()
        assert [a.category for a in alerts] == [AlertCategory.CPU]
        assert alerts[0].severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_severity_increase_notifies_again(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test warning followed by critical."""
        sampler = self.make_sampler(
            recording_sink,
            collector_factory(
                [metrics_factory(memory=75.0), metrics_factory(memory=90.0)]
            ),
            fake_clock,
        )

        await sampler.sample_once()
        await sampler.sample_once()
        await sampler.sample_once()

        assert len(recording_sink.notifications) == 2
        assert recording_sink.notifications[1].priority == NotificationPriority.URGENT
        assert sampler.active_alerts()[0].severity == AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_severity_decrease_is_silent(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test critical followed by warning updates the alert quietly."""
        sampler = self.make_sampler(
            recording_sink,
            collector_factory(
                [metrics_factory(memory=90.0), metrics_factory(memory=75.0)]
            ),
            fake_clock,
        )

        await sampler.sample_once()
        raised_at = sampler.active_alerts()[0].raised_at
        fake_clock.advance(minutes=1)
        await sampler.sample_once()

        assert len(recording_sink.notifications) == 1
        alert = sampler.active_alerts()[0]
        assert alert.severity == AlertSeverity.WARNING
        assert alert.value == 75.0
        assert alert.raised_at == raised_at

    @pytest.mark.asyncio
    async def test_resolution_notifies_once(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test that dropping below warning resolves the alert once."""
        sampler = self.make_sampler(
            recording_sink,
            collector_factory(
                [metrics_factory(delay_ms=60.0), metrics_factory(delay_ms=2.0)]
            ),
            fake_clock,
        )

        for _ in range(4):
            await sampler.sample_once()

        assert sampler.active_alerts() == []
        recoveries = recording_sink.of_type("system_recovery")
        assert len(recoveries) == 1
        assert recoveries[0].priority == NotificationPriority.MEDIUM
        assert recoveries[0].data["alert_type"] == "scheduler-delay"
        assert recoveries[0].data["original_alert"]["resolved_at"] is not None

    @pytest.mark.asyncio
    async def test_tiny_memory_thresholds_raise_single_critical_alert(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test memory thresholds of 0.1% / 0.2% against normal usage."""
        thresholds = ResourceThresholds(
            memory=ThresholdPair(warning=0.1, critical=0.2)
        )
        sampler = self.make_sampler(
            recording_sink,
            collector_factory([metrics_factory(memory=3.5)]),
            fake_clock,
            thresholds=thresholds,
        )

        await sampler.sample_once()
        await sampler.sample_once()

        alerts = sampler.active_alerts()
        assert len(alerts) == 1
        assert alerts[0].category == AlertCategory.MEMORY
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert len(recording_sink.notifications) == 1

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_break_tick(
        self, fake_clock, metrics_factory, collector_factory
    ):
        """Test that a failing sink is logged and sampling continues."""

        class BrokenSink:
            async def send(self, notification):
                raise ConnectionError("webhook down")

        sampler = self.make_sampler(
            BrokenSink(),
            collector_factory([metrics_factory(memory=95.0)]),
            fake_clock,
        )

        metrics = await sampler.sample_once()

        assert metrics is not None
        assert len(sampler.active_alerts()) == 1


class TestSamplerHistory:
    """Test the sample ring buffer and summaries."""

    @pytest.mark.asyncio
    async def test_ring_buffer_keeps_newest(
        self, recording_sink, metrics_factory, collector_factory
    ):
        """Test that the buffer is bounded by max_samples."""
        snapshots = [metrics_factory(cpu=float(i)) for i in range(5)]
        sampler = ResourceSampler(
            recording_sink,
            max_samples=3,
            collector=collector_factory(snapshots + [snapshots[-1]]),
        )

        for _ in range(5):
            await sampler.sample_once()

        history = sampler.history()
        assert [m.cpu.percentage for m in history] == [2.0, 3.0, 4.0]
        assert [m.cpu.percentage for m in sampler.history(limit=2)] == [3.0, 4.0]
        assert sampler.current().cpu.percentage == 4.0

    def test_current_is_none_before_sampling(self, recording_sink, collector_factory):
        """Test a sampler that has not ticked yet."""
        sampler = ResourceSampler(recording_sink, collector=collector_factory([None]))

        assert sampler.current() is None
        assert sampler.history() == []

    @pytest.mark.asyncio
    async def test_collect_snapshot_does_not_record(
        self, recording_sink, metrics_factory, collector_factory
    ):
        """Test on-demand snapshots bypass history and alerts."""
        sampler = ResourceSampler(
            recording_sink,
            collector=collector_factory([metrics_factory(memory=99.0)]),
        )

        snapshot = await sampler.collect_snapshot()

        assert snapshot.memory.percentage == 99.0
        assert sampler.history() == []
        assert sampler.active_alerts() == []
        assert recording_sink.notifications == []

    @pytest.mark.asyncio
    async def test_snapshot_uses_its_own_collector(
        self, recording_sink, metrics_factory, collector_factory
    ):
        """Test that on-demand snapshots leave the sampling collector alone."""
        collector = collector_factory([metrics_factory(memory=10.0)])
        snapshots = collector_factory([metrics_factory(memory=20.0)])
        sampler = ResourceSampler(
            recording_sink, collector=collector, snapshot_collector=snapshots
        )

        snapshot = await sampler.collect_snapshot()

        assert snapshot.memory.percentage == 20.0
        assert snapshots.calls == 1
        assert collector.calls == 0

    def test_default_snapshot_collector_is_separate(self, recording_sink):
        """Test that psutil sampling gets a second collector for snapshots."""
        sampler = ResourceSampler(recording_sink)

        assert isinstance(sampler.snapshot_collector, PsutilMetricsCollector)
        assert sampler.snapshot_collector is not sampler.collector
        assert sampler.snapshot_collector.process.pid == sampler.collector.process.pid

    @pytest.mark.asyncio
    async def test_collection_failure_skips_tick(self, recording_sink):
        """Test that collector errors are logged and nothing is recorded."""
        sampler = ResourceSampler(recording_sink, collector=FailingCollector())

        with patch("paper_health.health.sampler.logger") as mock_logger:
            result = await sampler.sample_once()

        assert result is None
        assert sampler.history() == []
        mock_logger.error.assert_called_once_with(
            "Error collecting resource metrics", error="psutil unavailable"
        )

    @pytest.mark.asyncio
    async def test_summary_over_window(
        self, recording_sink, fake_clock, metrics_factory, collector_factory
    ):
        """Test averages and peaks only include samples inside the window."""
        now = fake_clock.now
        sampler = ResourceSampler(
            recording_sink,
            collector=collector_factory(
                [
                    metrics_factory(cpu=99.0, timestamp=now - timedelta(hours=2)),
                    metrics_factory(cpu=20.0, memory=30.0, timestamp=now - timedelta(minutes=30)),
                    metrics_factory(cpu=40.0, memory=50.0, timestamp=now),
                ]
            ),
            clock=fake_clock,
        )

        for _ in range(3):
            await sampler.sample_once()

        summary = sampler.summary()

        assert summary.window == timedelta(hours=1)
        assert summary.sample_count == 2
        assert summary.average["cpu_percentage"] == 30.0
        assert summary.peak["cpu_percentage"] == 40.0
        assert summary.average["memory_percentage"] == 40.0
        # The 99% sample raised a critical CPU alert that has since resolved
        assert summary.alert_count == 0

    def test_summary_without_samples(self, recording_sink, fake_clock, collector_factory):
        """Test an empty summary."""
        sampler = ResourceSampler(
            recording_sink, collector=collector_factory([None]), clock=fake_clock
        )

        summary = sampler.summary(timedelta(minutes=5))

        assert summary.sample_count == 0
        assert summary.average == {}
        assert summary.peak == {}


class TestSamplerLifecycle:
    """Test starting and stopping the sampling loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, recording_sink, metrics_factory, collector_factory):
        """Test that the loop samples until stopped."""
        collector = collector_factory([metrics_factory()])
        sampler = ResourceSampler(recording_sink, interval=0.01, collector=collector)

        await sampler.start()
        assert sampler.is_running is True
        await asyncio.sleep(0.05)
        await sampler.stop()

        assert sampler.is_running is False
        assert collector.calls >= 1
        calls = collector.calls

        await asyncio.sleep(0.03)
        assert collector.calls == calls

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, recording_sink, metrics_factory, collector_factory):
        """Test that starting twice keeps one loop."""
        sampler = ResourceSampler(
            recording_sink,
            interval=60.0,
            collector=collector_factory([metrics_factory()]),
        )

        await sampler.start()
        task = sampler._task
        await sampler.start()

        assert sampler._task is task

        await sampler.stop()
        await sampler.stop()
        assert sampler.is_running is False


class TestPsutilMetricsCollector:
    """Test the psutil-backed collector against the running process."""

    @pytest.mark.asyncio
    async def test_collect_current_process(self):
        """Test a real snapshot of this process."""
        collector = PsutilMetricsCollector()

        metrics = await collector.collect()

        assert metrics.process.pid == os.getpid()
        assert metrics.memory.total > 0
        assert metrics.memory.rss > 0
        assert 0 < metrics.memory.percentage <= 100
        assert 0 <= metrics.cpu.percentage <= 100
        assert metrics.scheduler.delay_ms >= 0
        assert 0 <= metrics.scheduler.utilization <= 100
        assert metrics.process.thread_count >= 1
        assert metrics.process.active_requests >= 1
        assert len(metrics.cpu.load_average) == 3
