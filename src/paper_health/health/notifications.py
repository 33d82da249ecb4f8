"""Notification delivery for health alerts and recovery events."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from ..utils.logging import LogContext, NotificationError, get_logger

logger = get_logger(__name__, LogContext.NOTIFICATION)


class NotificationPriority(Enum):
    """Delivery priority of a notification."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationType(str, Enum):
    """Kinds of notification emitted by the monitoring subsystem."""

    SYSTEM_ALERT = "system_alert"
    SYSTEM_RECOVERY = "system_recovery"


@dataclass(frozen=True)
class Notification:
    """Message handed to the notification sink."""

    type: str
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    data: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        """Generate notification ID if not provided."""
        if not self.id:
            object.__setattr__(self, "id", f"{self.type}_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["created_at"] = self.created_at.isoformat()
        return data


class NotificationSink(ABC):
    """Abstract base class for notification sinks."""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Deliver a notification.

        Args:
            notification: Notification to deliver

        Returns:
            True if the notification was delivered
        """
        pass


class LogNotificationSink(NotificationSink):
    """Sink that writes notifications to the log."""

    async def send(self, notification: Notification) -> bool:
        try:
            log_level = {
                NotificationPriority.LOW: "info",
                NotificationPriority.MEDIUM: "info",
                NotificationPriority.HIGH: "warning",
                NotificationPriority.URGENT: "error",
            }[notification.priority]

            getattr(logger, log_level)(
                f"NOTIFICATION: {notification.title}",
                notification_id=notification.id,
                notification_type=notification.type,
                priority=notification.priority.value,
                detail=notification.message,
            )

            return True

        except Exception as e:
            logger.error("Failed to log notification", error=str(e))
            return False


class FileNotificationSink(NotificationSink):
    """Sink that appends notifications to a JSON-lines file."""

    def __init__(self, file_path: Path):
        """Initialize file sink.

        Args:
            file_path: Path to notification log file
        """
        self.file_path = file_path
        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    async def send(self, notification: Notification) -> bool:
        try:
            line = json.dumps(notification.to_dict(), default=str)
            with open(self.file_path, "a") as f:
                f.write(line + "\n")
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "Failed to write notification to file",
                file_path=str(self.file_path),
                error=str(e),
            )
            return False


class WebhookNotificationSink(NotificationSink):
    """Sink that POSTs notifications to a webhook."""

    def __init__(self, webhook_url: str, timeout: float = 30.0):
        """Initialize webhook sink.

        Args:
            webhook_url: URL to send notifications to
            timeout: Request timeout in seconds
        """
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def send(self, notification: Notification) -> bool:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.webhook_url,
                    content=json.dumps(notification.to_dict(), default=str),
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )

            if not response.is_success:
                raise NotificationError(
                    f"Webhook returned error status {response.status_code}",
                    {"status_code": response.status_code},
                )
            return True

        except (httpx.HTTPError, NotificationError) as e:
            logger.error(
                "Failed to send webhook notification",
                url=self.webhook_url,
                error=str(e),
            )
            return False


class NotificationDispatcher:
    """Fans notifications out to every configured sink.

    Delivery is fire-and-forget from the caller's point of view: failing
    sinks are logged and never retried.
    """

    def __init__(self, sinks: list[NotificationSink] | None = None, max_history: int = 1000):
        """Initialize dispatcher.

        Args:
            sinks: Notification sinks (defaults to a single log sink)
            max_history: Number of sent notifications to remember
        """
        self.sinks = [LogNotificationSink()] if sinks is None else sinks
        self.max_history = max_history
        self._history: list[Notification] = []

        logger.info("Notification dispatcher initialized", sink_count=len(self.sinks))

    async def send(self, notification: Notification) -> bool:
        """Deliver a notification through all sinks.

        Returns:
            True if every sink accepted the notification
        """
        self._history.append(notification)
        if len(self._history) > self.max_history:
            self._history.pop(0)

        results = await asyncio.gather(
            *(self._send_with_sink(sink, notification) for sink in self.sinks)
        )

        delivered = sum(1 for result in results if result is True)
        if delivered < len(self.sinks):
            logger.warning(
                "Some notification sinks failed",
                notification_id=notification.id,
                successful=delivered,
                total=len(self.sinks),
            )
        return delivered == len(self.sinks)

    async def _send_with_sink(
        self, sink: NotificationSink, notification: Notification
    ) -> bool:
        try:
            return await sink.send(notification)
        except Exception as e:
            logger.error(
                "Notification sink failed",
                sink=type(sink).__name__,
                notification_id=notification.id,
                error=str(e),
            )
            return False

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)
        logger.info("Notification sink added", sink=type(sink).__name__)

    def remove_sink(self, sink: NotificationSink) -> bool:
        try:
            self.sinks.remove(sink)
        except ValueError:
            return False
        logger.info("Notification sink removed", sink=type(sink).__name__)
        return True

    def get_notification_history(
        self, notification_type: str | None = None, limit: int | None = None
    ) -> list[Notification]:
        """Get sent notifications, newest first.

        Args:
            notification_type: Filter by notification type
            limit: Maximum number of notifications to return
        """
        notifications = list(reversed(self._history))

        if notification_type:
            notifications = [n for n in notifications if n.type == notification_type]

        if limit:
            notifications = notifications[:limit]

        return notifications

    def clear_history(self) -> None:
        self._history.clear()


async def deliver(sink: NotificationSink, notification: Notification) -> None:
    """Hand a notification to a sink, logging instead of raising on failure."""
    try:
        await sink.send(notification)
    except Exception as e:
        logger.error(
            "Notification delivery failed",
            notification_id=notification.id,
            notification_type=notification.type,
            error=str(e),
        )
