"""Bodies of the daily reset, quota check, cleanup and backup triggers."""

from __future__ import annotations

import copy
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from timedash.api.services.aggregator import UsageAggregator
from timedash.api.services.grants import GrantManager
from timedash.api.services.storage import DAY_KEY_RE, StorageManager, local_date_string
from timedash.config import AppConfig
from timedash.model.models import BackupModel
from timedash.ui.notifications import (
    NotificationService,
    notify_daily_summary,
    notify_quota_warning,
)
from timedash.watchers.logger import logger

BACKUP_VERSION = "1.0.1"
QUOTA_THRESHOLDS = (75, 90, 100)
DAILY_SUMMARY_FLAG = "summary"


def purge_day_buckets(usage: dict[str, dict[str, Any]], cutoff: str) -> int:
    """Drop day buckets dated before ``cutoff``; lifetime counters stay."""
    removed = 0
    for record in usage.values():
        for key in list(record):
            match = DAY_KEY_RE.match(key)
            if match and match.group(1) < cutoff:
                del record[key]
                removed += 1
    return removed


def purge_block_stats(stats: dict[str, dict[str, Any]], cutoff: datetime) -> int:
    removed = 0
    for domain in list(stats):
        last_blocked = stats[domain].get("lastBlocked")
        if not last_blocked:
            continue
        try:
            when = datetime.fromisoformat(last_blocked)
        except ValueError:
            logger.warning("Unparseable lastBlocked for %s: %r", domain, last_blocked)
            continue
        if when.tzinfo is not None:
            when = when.astimezone().replace(tzinfo=None)
        if when < cutoff:
            del stats[domain]
            removed += 1
    return removed


class MaintenanceJobs:
    def __init__(
        self,
        storage: StorageManager,
        aggregator: UsageAggregator,
        grants: GrantManager,
        notifications: NotificationService,
        config: AppConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.aggregator = aggregator
        self.grants = grants
        self.notifications = notifications
        self.config = config
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock())

    async def daily_reset(self) -> None:
        """Clear per-day notification flags and send yesterday's summary."""
        await self.storage.remove("dailyNotificationsSent", "quotaWarningsSent")
        await self.send_daily_summary()
        logger.info("Daily reset completed")

    async def send_daily_summary(self) -> bool:
        settings = await self.storage.get_settings()
        if not settings.get("notificationsEnabled", True):
            return False

        yesterday = local_date_string((self._now() - timedelta(days=1)).timestamp())
        today = local_date_string(self.clock())
        sent = await self.storage.get("dailyNotificationsSent", {}) or {}
        if DAILY_SUMMARY_FLAG in sent.get(today, []):
            return False

        usage = await self.storage.get_all_usage()
        total = 0
        top_domain, top_seconds = "", 0
        for domain, record in usage.items():
            seconds = int(record.get(yesterday, 0) or 0)
            total += seconds
            if seconds > top_seconds:
                top_domain, top_seconds = domain, seconds
        if total <= 0:
            return False

        notify_daily_summary(self.notifications, total, top_domain, top_seconds)

        def _mark(doc: dict[str, Any]) -> None:
            doc.setdefault("dailyNotificationsSent", {}).setdefault(today, []).append(
                DAILY_SUMMARY_FLAG
            )

        await self.storage.transact(_mark)
        return True

    async def quota_check(self) -> list[int]:
        """Notify once per threshold per day; returns thresholds sent now."""
        settings = await self.storage.get_settings()
        limit_minutes = int(settings.get("dailyTimeLimitMinutes") or 0)
        if not settings.get("notificationsEnabled", True) or limit_minutes <= 0:
            return []

        await self.aggregator.flush()
        today = local_date_string(self.clock())
        usage = await self.storage.get_all_usage()
        used = sum(int(record.get(today, 0) or 0) for record in usage.values())
        limit_seconds = limit_minutes * 60
        percentage = used / limit_seconds * 100

        sent_all = await self.storage.get("quotaWarningsSent", {}) or {}
        sent_today = set(sent_all.get(today, []))
        due = [t for t in QUOTA_THRESHOLDS if percentage >= t and str(t) not in sent_today]
        if not due:
            return []

        for threshold in due:
            notify_quota_warning(self.notifications, threshold, used, limit_seconds)

        def _mark(doc: dict[str, Any]) -> None:
            day = doc.setdefault("quotaWarningsSent", {}).setdefault(today, [])
            day.extend(str(t) for t in due if str(t) not in day)

        await self.storage.transact(_mark)
        logger.info("Quota warnings sent | used=%ss limit=%ss thresholds=%s", used, limit_seconds, due)
        return due

    async def cleanup(self) -> dict[str, int]:
        now = self._now()
        usage_cutoff = local_date_string((now - timedelta(days=self.config.retention_days)).timestamp())
        stats_cutoff = now - timedelta(days=self.config.block_stats_retention_days)

        def _purge(doc: dict[str, Any]) -> dict[str, int] | bool:
            buckets = purge_day_buckets(doc.get("usage", {}), usage_cutoff)
            stats = purge_block_stats(doc.get("blockStats", {}), stats_cutoff)
            if not buckets and not stats:
                return False
            return {"buckets": buckets, "blockStats": stats}

        result = await self.storage.transact(_purge)
        counts = result or {"buckets": 0, "blockStats": 0}
        counts["grants"] = self.grants.cleanup_expired()
        logger.info("Cleanup completed | %s", counts)
        return counts

    async def backup(self) -> int:
        """Append a snapshot to the ring buffer; returns the number kept."""
        stamp = self._now().isoformat()
        max_backups = self.config.max_backups

        def _store(doc: dict[str, Any]) -> int:
            data = copy.deepcopy({k: v for k, v in doc.items() if k != "backups"})
            backups: list[BackupModel] = doc.get("backups") or []
            backups.append({"timestamp": stamp, "version": BACKUP_VERSION, "data": data})
            doc["backups"] = backups[-max_backups:]
            return len(doc["backups"])

        kept = await self.storage.transact(_store)
        logger.info("Backup stored | kept=%s", kept)
        return kept
