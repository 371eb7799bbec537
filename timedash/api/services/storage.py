"""Single shared key-value document persisted as a JSON file.

Every component performs read-modify-write on this document, so all writes go
through :meth:`StorageManager.transact`, which serializes them on one
``asyncio.Lock``.  A transaction works on a deep copy and only replaces the
in-memory document after the file write succeeded, so a failed write leaves
both the file and the in-memory view untouched.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import re
import tempfile
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from timedash.errors import TransientIOError
from timedash.model.models import BlockStatsModel, SettingsModel, UsageRecord
from timedash.watchers.logger import logger

DEFAULT_SETTINGS: SettingsModel = {
    "dailyTimeLimitMinutes": 0,
    "notificationsEnabled": True,
    "trackingEnabled": True,
    "defaultPlaybackSpeed": 1.0,
    "maxPlaybackSpeed": 16.0,
}

USAGE_GENERAL = "general"
USAGE_RESTRICTED = "restricted"

DAY_KEY_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:_(general|restricted))?$")


def local_date_string(timestamp: float | None = None) -> str:
    """``YYYY-MM-DD`` in the local timezone."""
    moment = datetime.now() if timestamp is None else datetime.fromtimestamp(timestamp)
    return moment.strftime("%Y-%m-%d")


def today_seconds_from(record: UsageRecord | None, date: str) -> int:
    """Seconds recorded in ``record`` for the day bucket ``date``."""
    if not record:
        return 0
    return int(record.get(date, 0) or 0)


class StorageManager:
    """Owner of the persisted document."""

    def __init__(
        self,
        path: Path | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path) if path else None
        self.clock = clock
        self.write_count = 0
        self._doc: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Document plumbing

    def _read_file(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            msg = f"{self.path} does not hold a JSON object"
            raise TransientIOError(msg)
        return data

    def _write_file(self, doc: dict[str, Any]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".timedash-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _ensure_loaded(self) -> dict[str, Any]:
        if self._doc is None:
            try:
                self._doc = await asyncio.to_thread(self._read_file)
            except (OSError, json.JSONDecodeError) as exc:
                msg = f"failed to read {self.path}: {exc}"
                raise TransientIOError(msg) from exc
        return self._doc

    async def _write_and_swap(self, doc: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write_file, doc)
        except OSError as exc:
            msg = f"failed to write {self.path}: {exc}"
            raise TransientIOError(msg) from exc
        self._doc = doc
        self.write_count += 1

    async def _commit(self, doc: dict[str, Any]) -> None:
        """Write ``doc`` and make it current; cancellation waits for the write.

        The file write cannot be stopped once handed to the worker thread, so
        a cancelled caller still holds the lock until ``_doc`` matches the
        file, then sees the ``CancelledError``.
        """
        write = asyncio.ensure_future(self._write_and_swap(doc))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            raise

    async def transact(self, mutate: Callable[[dict[str, Any]], Any]) -> Any:
        """Apply ``mutate`` to a copy of the document and persist it.

        ``mutate`` returns ``False`` to signal "nothing changed", in which case
        no write happens; any other return value is passed back to the caller.
        """
        async with self._lock:
            current = await self._ensure_loaded()
            doc = copy.deepcopy(current)
            result = mutate(doc)
            if result is not False:
                await self._commit(doc)
            return result

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            doc = await self._ensure_loaded()
            return copy.deepcopy(doc.get(key, default))

    async def set(self, key: str, value: Any) -> None:
        def _set(doc: dict[str, Any]) -> None:
            doc[key] = value

        await self.transact(_set)

    async def remove(self, *keys: str) -> bool:
        """Delete ``keys``; writes only if at least one was present."""

        def _remove(doc: dict[str, Any]) -> bool:
            present = [k for k in keys if k in doc]
            for k in present:
                del doc[k]
            return bool(present)

        return bool(await self.transact(_remove))

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return copy.deepcopy(await self._ensure_loaded())

    # ------------------------------------------------------------------
    # Settings

    async def get_settings(self) -> SettingsModel:
        stored = await self.get("settings", {}) or {}
        return {**DEFAULT_SETTINGS, **stored}  # type: ignore[typeddict-item]

    async def update_settings(self, changes: dict[str, Any]) -> SettingsModel:
        def _update(doc: dict[str, Any]) -> SettingsModel:
            merged = {**DEFAULT_SETTINGS, **(doc.get("settings") or {}), **changes}
            doc["settings"] = merged
            return merged  # type: ignore[return-value]

        return await self.transact(_update)

    async def reset_settings(self) -> SettingsModel:
        defaults = dict(DEFAULT_SETTINGS)

        def _reset(doc: dict[str, Any]) -> None:
            doc["settings"] = dict(defaults)

        await self.transact(_reset)
        return defaults  # type: ignore[return-value]

    async def clear_all(self) -> None:
        """Drop every key, backups included."""
        await self.transact(lambda doc: doc.clear())
        logger.warning("All stored data cleared")

    # ------------------------------------------------------------------
    # Video playback speeds

    async def get_video_speeds(self) -> dict[str, float]:
        return await self.get("videoSpeeds", {}) or {}

    async def get_video_speed(self, domain: str) -> float:
        """Stored speed for ``domain``, else the default playback speed."""
        speed = (await self.get_video_speeds()).get(domain)
        if speed:
            return float(speed)
        return float((await self.get_settings()).get("defaultPlaybackSpeed") or 1.0)

    async def set_video_speed(self, domain: str, speed: float) -> None:
        def _set(doc: dict[str, Any]) -> None:
            doc.setdefault("videoSpeeds", {})[domain] = speed

        await self.transact(_set)

    # ------------------------------------------------------------------
    # Usage (written only by the aggregator)

    async def get_all_usage(self) -> dict[str, UsageRecord]:
        return await self.get("usage", {}) or {}

    async def get_domain_usage(self, domain: str) -> UsageRecord:
        usage = await self.get_all_usage()
        return usage.get(domain, {})

    async def add_usage(self, batch: dict[str, tuple[int, str]], date: str) -> None:
        """Increment usage for every ``domain -> (seconds, usage_type)`` at once."""

        def _apply(doc: dict[str, Any]) -> bool:
            usage = doc.setdefault("usage", {})
            for domain, (seconds, usage_type) in batch.items():
                record = usage.setdefault(domain, {"cumulative": 0})
                record[date] = record.get(date, 0) + seconds
                record["cumulative"] = record.get("cumulative", 0) + seconds
                day_key = f"{date}_{usage_type}"
                total_key = f"cumulative_{usage_type}"
                record[day_key] = record.get(day_key, 0) + seconds
                record[total_key] = record.get(total_key, 0) + seconds
            return bool(batch)

        await self.transact(_apply)

    async def increment_block_count(self, domain: str) -> None:
        today = local_date_string(self.clock())

        def _bump(doc: dict[str, Any]) -> None:
            record = doc.setdefault("usage", {}).setdefault(domain, {"cumulative": 0})
            if record.get("lastBlockDate") != today:
                record["blockedToday"] = 0
                record["lastBlockDate"] = today
            record["blockedToday"] = record.get("blockedToday", 0) + 1

        await self.transact(_bump)

    async def increment_temp_access_count(self, domain: str) -> None:
        now_ms = int(self.clock() * 1000)

        def _bump(doc: dict[str, Any]) -> None:
            record = doc.setdefault("usage", {}).setdefault(domain, {"cumulative": 0})
            record["tempAccessCount"] = record.get("tempAccessCount", 0) + 1
            record["lastTempAccess"] = now_ms

        await self.transact(_bump)

    # ------------------------------------------------------------------
    # Block statistics

    @staticmethod
    def _stats_for(doc: dict[str, Any], domain: str) -> dict[str, Any]:
        return doc.setdefault("blockStats", {}).setdefault(
            domain,
            {"totalBlocks": 0, "lastBlocked": None, "tempAccessUsed": 0},
        )

    async def record_block_event(self, domain: str) -> None:
        stamp = datetime.fromtimestamp(self.clock()).isoformat()

        def _record(doc: dict[str, Any]) -> None:
            stats = self._stats_for(doc, domain)
            stats["totalBlocks"] += 1
            stats["lastBlocked"] = stamp

        await self.transact(_record)

    async def record_temp_access_usage(self, domain: str) -> None:
        def _record(doc: dict[str, Any]) -> None:
            self._stats_for(doc, domain)["tempAccessUsed"] += 1

        await self.transact(_record)

    async def get_block_stats(self, domain: str) -> BlockStatsModel:
        stats = await self.get("blockStats", {}) or {}
        return stats.get(
            domain,
            {"totalBlocks": 0, "lastBlocked": None, "tempAccessUsed": 0},
        )

    async def close(self) -> None:
        logger.info("Storage closed after %s writes", self.write_count)
