__all__ = [
    "AccessResponse",
    "BackupModel",
    "BlockStatsModel",
    "RestrictedSiteModel",
    "SettingsModel",
    "TabInfo",
    "UsageRecord",
]


from typing import Any, TypedDict


class TabInfo(TypedDict):
    """Browser tab as reported by the browser bridge."""

    id: int
    window_id: int | None
    url: str | None
    active: bool


class SettingsModel(TypedDict, total=False):
    """Per-user settings stored under the ``settings`` key."""

    dailyTimeLimitMinutes: int  # 0 = no daily budget
    notificationsEnabled: bool
    trackingEnabled: bool
    defaultPlaybackSpeed: float
    maxPlaybackSpeed: float


class RestrictedSiteModel(TypedDict):
    """One entry of the persisted ``restrictedSites`` list."""

    domain: str
    timeLimitMinutes: int


class BlockStatsModel(TypedDict):
    """Per-domain block statistics stored under ``blockStats``."""

    totalBlocks: int
    lastBlocked: str | None  # ISO timestamp
    tempAccessUsed: int


class BackupModel(TypedDict):
    """One snapshot in the ``backups`` ring buffer."""

    timestamp: str
    version: str
    data: dict[str, Any]


class AccessResponse(TypedDict):
    """Wire shape of an access decision."""

    shouldBlock: bool
    reason: str | None
    domain: str


# Day buckets are keyed by local date, so a usage record is an open mapping:
# cumulative / cumulative_general / cumulative_restricted, <YYYY-MM-DD>,
# <YYYY-MM-DD>_general, <YYYY-MM-DD>_restricted, blockedToday,
# lastBlockDate, tempAccessCount, lastTempAccess.
UsageRecord = dict[str, Any]
