"""Automatic remediation of unhealthy dependencies."""

import asyncio
import gc
import time
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from ..utils.logging import LogContext, RemediationError, get_logger
from .collaborators import CacheClient, QueryClient, Reconnectable
from .models import (
    HealthState,
    HealthStatus,
    RecoveryAction,
    RecoveryAttempt,
    RecoveryStats,
)
from .notifications import (
    Notification,
    NotificationPriority,
    NotificationSink,
    NotificationType,
    deliver,
)
from .probes import (
    CACHE_TARGET,
    DATABASE_TARGET,
    SYSTEM_TARGET,
    ExternalEndpointProbe,
    ProbeRegistry,
)

logger = get_logger(__name__, LogContext.RECOVERY)

ATTEMPT_WINDOW = timedelta(hours=24)
MAX_ATTEMPT_HISTORY = 100


class RecoveryEngine:
    """Runs remediation actions against targets the registry reports unhealthy.

    Every action is gated by a cooldown since its last attempt and by an
    attempt budget over a trailing 24 hour window. Repeated failures page a
    human once per crossing of the escalation threshold.
    """

    def __init__(
        self,
        registry: ProbeRegistry,
        notifier: NotificationSink,
        actions: Iterable[RecoveryAction] = (),
        check_interval: float = 60.0,
        alert_threshold: int = 3,
        enabled: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize recovery engine.

        Args:
            registry: Probe registry consulted on every check
            notifier: Sink for recovery and escalation notifications
            actions: Remediation actions to consider
            check_interval: Seconds between recovery checks
            alert_threshold: Failed attempts in the window before escalating
            enabled: Disabled engines never start their loop
            clock: Time source for attempt bookkeeping
        """
        self.registry = registry
        self.notifier = notifier
        self.actions: list[RecoveryAction] = list(actions)
        self.check_interval = check_interval
        self.alert_threshold = alert_threshold
        self.enabled = enabled
        self.clock = clock

        self._history: dict[str, deque[RecoveryAttempt]] = {}
        # Attempt timestamps inside ATTEMPT_WINDOW, not bounded by MAX_ATTEMPT_HISTORY
        self._window: dict[str, deque[datetime]] = {}
        self._last_attempt_at: dict[str, datetime] = {}
        self._escalated: set[str] = set()
        self._task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._tick_lock = asyncio.Lock()

        logger.info(
            "Recovery engine initialized",
            action_count=len(self.actions),
            check_interval=check_interval,
            enabled=enabled,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_action(self, action: RecoveryAction) -> None:
        self.actions.append(action)
        logger.debug("Recovery action added", action_id=action.id)

    def remove_action(self, action_id: str) -> bool:
        remaining = [a for a in self.actions if a.id != action_id]
        removed = len(remaining) != len(self.actions)
        self.actions = remaining
        return removed

    async def start(self) -> None:
        """Start periodic recovery checks."""
        if not self.enabled:
            logger.info("Automatic recovery is disabled")
            return

        if self.is_running:
            logger.debug("Recovery engine already running")
            return

        logger.info("Starting recovery engine", check_interval=self.check_interval)
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._recovery_loop(self._shutdown_event))

    async def stop(self) -> None:
        """Stop periodic checks; an in-flight check runs to completion."""
        if self._task is None:
            return

        task, self._task = self._task, None
        self._shutdown_event.set()
        await asyncio.gather(task, return_exceptions=True)

        logger.info("Recovery engine stopped")

    async def _recovery_loop(self, shutdown_event: asyncio.Event) -> None:
        logger.debug("Starting recovery loop")

        try:
            while not shutdown_event.is_set():
                await self.run_recovery_check()

                try:
                    await asyncio.wait_for(
                        shutdown_event.wait(), timeout=self.check_interval
                    )
                    break  # Shutdown event was set
                except TimeoutError:
                    continue

        except asyncio.CancelledError:
            logger.debug("Recovery loop cancelled")
            raise
        finally:
            logger.debug("Recovery loop ended")

    async def run_recovery_check(self) -> list[RecoveryAttempt]:
        """Check health once and run every eligible remediation.

        Returns:
            Attempts made during this check (empty if nothing was eligible)
        """
        async with self._tick_lock:
            try:
                health = await self.registry.perform_health_check()
            except Exception as e:
                logger.error("Recovery health check failed", error=str(e))
                return []

            if health.overall == HealthState.HEALTHY:
                return []

            attempts = []
            for status in health.targets:
                if status.state == HealthState.HEALTHY:
                    continue

                for action in list(self.actions):
                    if action.target_service != status.target:
                        continue
                    if not self._condition_holds(action, status):
                        continue
                    if not self._can_attempt(action):
                        continue

                    attempts.append(await self._execute(action, status))

            return attempts

    def _condition_holds(self, action: RecoveryAction, status: HealthStatus) -> bool:
        try:
            return bool(action.condition(status))
        except Exception as e:
            logger.error(
                "Recovery condition raised",
                action_id=action.id,
                target=status.target,
                error=str(e),
            )
            return False

    def _attempts_in_window(self, action_id: str, now: datetime) -> int:
        window = self._window.get(action_id)
        if not window:
            return 0

        cutoff = now - ATTEMPT_WINDOW
        while window and window[0] <= cutoff:
            window.popleft()
        return len(window)

    def _can_attempt(self, action: RecoveryAction) -> bool:
        now = self.clock()

        last_attempt = self._last_attempt_at.get(action.id)
        if last_attempt is not None and now - last_attempt <= action.cooldown:
            logger.debug(
                "Recovery action in cooldown",
                action_id=action.id,
                seconds_since_last=(now - last_attempt).total_seconds(),
            )
            return False

        recent = self._attempts_in_window(action.id, now)
        if recent >= action.max_attempts_per_window:
            logger.debug(
                "Recovery attempt budget exhausted",
                action_id=action.id,
                recent_attempts=recent,
                max_attempts=action.max_attempts_per_window,
            )
            return False

        return True

    async def _execute(
        self, action: RecoveryAction, status: HealthStatus
    ) -> RecoveryAttempt:
        timestamp = self.clock()
        started = time.perf_counter()
        error = None

        logger.info(
            "Attempting recovery",
            action_id=action.id,
            target=status.target,
            state=status.state.value,
        )

        try:
            succeeded = bool(await action.remediate())
        except Exception as e:
            succeeded = False
            error = str(e) or type(e).__name__

        self._last_attempt_at[action.id] = timestamp
        attempt = RecoveryAttempt(
            action_id=action.id,
            timestamp=timestamp,
            succeeded=succeeded,
            attempt_number=self._attempts_in_window(action.id, timestamp) + 1,
            error=error,
            duration_seconds=time.perf_counter() - started,
        )
        self._record(attempt)

        if succeeded:
            logger.info(
                "Recovery succeeded",
                action_id=action.id,
                duration_seconds=attempt.duration_seconds,
            )
            self._escalated.discard(action.id)
            await self._notify_success(action, attempt)
        else:
            logger.error(
                "Recovery failed",
                action_id=action.id,
                attempt_number=attempt.attempt_number,
                error=error,
            )
            await self._maybe_escalate(action, attempt)

        return attempt

    def _record(self, attempt: RecoveryAttempt) -> None:
        history = self._history.get(attempt.action_id)
        if history is None:
            history = self._history[attempt.action_id] = deque(maxlen=MAX_ATTEMPT_HISTORY)
        history.append(attempt)
        self._window.setdefault(attempt.action_id, deque()).append(attempt.timestamp)

    async def _notify_success(
        self, action: RecoveryAction, attempt: RecoveryAttempt
    ) -> None:
        await deliver(
            self.notifier,
            Notification(
                type=NotificationType.SYSTEM_RECOVERY.value,
                title=f"Auto-Recovery Successful - {action.display_name}",
                message=(
                    f"Automatically recovered {action.target_service} "
                    f"using {action.display_name}"
                ),
                priority=NotificationPriority.MEDIUM,
                data={
                    "action_id": action.id,
                    "service": action.target_service,
                    "attempt_number": attempt.attempt_number,
                    "duration_seconds": attempt.duration_seconds,
                },
            ),
        )

    async def _maybe_escalate(
        self, action: RecoveryAction, attempt: RecoveryAttempt
    ) -> None:
        threshold = min(self.alert_threshold, action.max_attempts_per_window)

        if attempt.attempt_number < threshold:
            self._escalated.discard(action.id)
            return

        if action.id in self._escalated:
            return

        self._escalated.add(action.id)
        logger.critical(
            "Recovery escalated for manual intervention",
            action_id=action.id,
            service=action.target_service,
            failed_attempts=attempt.attempt_number,
        )

        await deliver(
            self.notifier,
            Notification(
                type=NotificationType.SYSTEM_ALERT.value,
                title=f"Auto-Recovery Failed - {action.display_name}",
                message=(
                    f"Failed to recover {action.target_service} after "
                    f"{attempt.attempt_number} attempts. Manual intervention required."
                ),
                priority=NotificationPriority.URGENT,
                data={
                    "action_id": action.id,
                    "service": action.target_service,
                    "attempts": attempt.attempt_number,
                    "last_error": attempt.error,
                },
            ),
        )

    def get_recovery_history(self, action_id: str | None = None) -> list[RecoveryAttempt]:
        """Recorded attempts, oldest first, optionally for one action.

        Each action keeps its own last ``MAX_ATTEMPT_HISTORY`` attempts.
        """
        if action_id is not None:
            return list(self._history.get(action_id, ()))

        attempts = [a for history in self._history.values() for a in history]
        return sorted(attempts, key=lambda a: a.timestamp)

    def get_recovery_stats(self) -> RecoveryStats:
        action_stats: dict[str, dict[str, int]] = {}
        for action_id, history in self._history.items():
            successful = sum(1 for a in history if a.succeeded)
            action_stats[action_id] = {
                "total": len(history),
                "successful": successful,
                "failed": len(history) - successful,
            }

        total = sum(stats["total"] for stats in action_stats.values())
        successful = sum(stats["successful"] for stats in action_stats.values())
        return RecoveryStats(
            total_attempts=total,
            successful_attempts=successful,
            failed_attempts=total - successful,
            action_stats=action_stats,
        )

    def clear_recovery_history(self, action_id: str | None = None) -> None:
        """Forget attempts, cooldowns and escalation state."""
        if action_id is None:
            self._history.clear()
            self._window.clear()
            self._last_attempt_at.clear()
            self._escalated.clear()
        else:
            self._history.pop(action_id, None)
            self._window.pop(action_id, None)
            self._last_attempt_at.pop(action_id, None)
            self._escalated.discard(action_id)

        logger.info("Recovery history cleared", action_id=action_id)


async def _reconnect(client: Any, service: str) -> bool:
    if not isinstance(client, Reconnectable):
        raise RemediationError(
            f"{service} client does not support reconnect", {"service": service}
        )
    return bool(await client.reconnect())


def _memory_percentage(status: HealthStatus) -> float:
    memory = status.metadata.get("memory") or {}
    return float(memory.get("percentage", 0.0))


async def _collect_garbage() -> bool:
    collected = gc.collect()
    logger.info("Garbage collection completed", collected_objects=collected)
    return True


def _fallback_action(probe: ExternalEndpointProbe) -> RecoveryAction:
    async def fail_over() -> bool:
        return probe.fail_over()

    return RecoveryAction(
        id=f"fallback_to_backup_{probe.name}",
        name=f"Fallback to Backup ({probe.endpoint.name})",
        description=f"Switch {probe.endpoint.name} traffic to its backup endpoint",
        target_service=probe.name,
        condition=lambda status: status.state == HealthState.UNHEALTHY,
        remediate=fail_over,
        cooldown=timedelta(minutes=2),
        max_attempts_per_window=5,
    )


def create_default_recovery_actions(
    cache_client: CacheClient | None = None,
    database_client: QueryClient | None = None,
    endpoint_probes: Iterable[ExternalEndpointProbe] = (),
) -> list[RecoveryAction]:
    """Build the reference remediation table.

    Actions that need a collaborator are only included when it is supplied.

    Args:
        cache_client: Cache client to reconnect on connection errors
        database_client: Database client whose pool is restarted when slow
        endpoint_probes: External probes; critical ones get a fail-over action

    Returns:
        List of RecoveryAction
    """
    actions = []

    if cache_client is not None:

        async def restart_cache() -> bool:
            return await _reconnect(cache_client, CACHE_TARGET)

        actions.append(
            RecoveryAction(
                id="restart_cache_connection",
                name="Restart Cache Connection",
                description="Re-establish the cache connection after connection errors",
                target_service=CACHE_TARGET,
                condition=lambda status: (
                    status.state == HealthState.UNHEALTHY
                    and "connection" in (status.error or "").lower()
                ),
                remediate=restart_cache,
                cooldown=timedelta(minutes=5),
                max_attempts_per_window=3,
            )
        )

    actions.append(
        RecoveryAction(
            id="clear_memory_cache",
            name="Clear Memory Cache",
            description="Force a garbage collection pass under memory pressure",
            target_service=SYSTEM_TARGET,
            condition=lambda status: (
                status.state == HealthState.DEGRADED and _memory_percentage(status) > 80
            ),
            remediate=_collect_garbage,
            cooldown=timedelta(minutes=10),
            max_attempts_per_window=2,
        )
    )

    for probe in endpoint_probes:
        if probe.critical:
            actions.append(_fallback_action(probe))

    if database_client is not None:

        async def restart_database() -> bool:
            return await _reconnect(database_client, DATABASE_TARGET)

        actions.append(
            RecoveryAction(
                id="restart_database_connection",
                name="Restart Database Connection",
                description="Recycle the database connection pool when queries stall",
                target_service=DATABASE_TARGET,
                condition=lambda status: (
                    status.state == HealthState.UNHEALTHY
                    and (status.response_time_ms or 0) > 5000
                ),
                remediate=restart_database,
                cooldown=timedelta(minutes=15),
                max_attempts_per_window=2,
            )
        )

    return actions
