import platform
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from timedash.watchers.logger import logger

if sys.platform == "win32":
    from win10toast import ToastNotifier  # type: ignore[import-untyped, unused-ignore]

APP_TITLE = "TimeDash"


class NotificationLevel(Enum):
    """Notification severity levels used by the service."""

    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"


@dataclass
class NotificationConfig:
    """Configuration for :class:`NotificationService`."""

    enabled: bool = True
    toast_duration: int = 5


class NotificationService:
    """Desktop notifications with history tracking.

    Toasts are only shown on Windows; elsewhere the notification is recorded
    in the history and reported as not delivered.
    """

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self.platform = platform.system()
        self.config = config or NotificationConfig()
        self._history: list[dict[str, Any]] = []

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
    ) -> bool:
        """Display a notification and record it; returns whether it was shown."""
        delivered = False
        if self.config.enabled and self.platform == "Windows":
            try:
                notifier = ToastNotifier()
                notifier.show_toast(  # pyright: ignore[reportUnknownMemberType]
                    title, message, duration=self.config.toast_duration, threaded=True
                )
            except Exception:  # noqa: BLE001
                logger.warning("Toast notification failed", exc_info=True)
            else:
                delivered = True
        self._history.append(
            {
                "title": title,
                "message": message,
                "level": level.value,
                "timestamp": time.time(),
                "delivered": delivered,
            },
        )
        logger.info("Notification [%s] %s: %s", level.value, title, message)
        return delivered

    # ------------------------------------------------------------------
    # Query helpers
    def get_capabilities(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "supports_toast": self.platform == "Windows",
        }

    def get_notification_history(self) -> list[dict[str, Any]]:
        """Return a copy of the notification history."""
        return list(self._history)


_default_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    """Process-wide default service."""
    global _default_service  # noqa: PLW0603
    if _default_service is None:
        _default_service = NotificationService()
    return _default_service


def notify_quota_warning(
    service: NotificationService,
    percentage: int,
    used_seconds: int,
    limit_seconds: int,
) -> bool:
    """Daily budget threshold reached (75/90/100 %)."""
    if percentage >= 100:
        return service.notify(
            "Daily Limit Exceeded!",
            f"You've exceeded your daily limit of {limit_seconds // 60} minutes.",
            NotificationLevel.URGENT,
        )
    return service.notify(
        "Daily Limit Warning",
        f"You've used {percentage}% of your daily limit "
        f"({used_seconds // 60}/{limit_seconds // 60} minutes).",
        NotificationLevel.WARNING,
    )


def notify_daily_summary(
    service: NotificationService,
    total_seconds: int,
    top_domain: str,
    top_seconds: int,
) -> bool:
    """Yesterday's browsing total and top site."""
    return service.notify(
        f"{APP_TITLE} Daily Summary",
        f"Yesterday: {total_seconds // 60} minutes total. "
        f"Top site: {top_domain} ({top_seconds // 60} min)",
        NotificationLevel.INFO,
    )
