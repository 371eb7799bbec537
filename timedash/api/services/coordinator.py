"""Owner of all TimeDash state and the single browser-event dispatch loop."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from timedash.api.services.aggregator import UsageAggregator
from timedash.api.services.grants import GrantManager
from timedash.api.services.maintenance import MaintenanceJobs
from timedash.api.services.rules import (
    AccessDecision,
    BlockedRule,
    RestrictedRule,
    RuleEngine,
    make_rule,
)
from timedash.api.services.scheduler import Scheduler
from timedash.api.services.storage import StorageManager, local_date_string, today_seconds_from
from timedash.config import AppConfig
from timedash.errors import TimeDashError, ValidationError
from timedash.model.models import TabInfo
from timedash.ui.notifications import NotificationService
from timedash.watchers.browser import BrowserBridge, HttpBrowserBridge, build_block_page_url
from timedash.watchers.domain import extract_domain, is_valid_domain, normalize_domain
from timedash.watchers.logger import logger
from timedash.watchers.tracker import TabActivityTracker

AVERAGE_DAYS = 7
MAX_PLAYBACK_SPEED = 16.0

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


def average_daily_seconds(record: dict[str, Any], today: datetime, days: int = AVERAGE_DAYS) -> int:
    """Mean over the active days among the last ``days`` local dates."""
    total, active = 0, 0
    for offset in range(days):
        day = (today.date() - timedelta(days=offset)).strftime("%Y-%m-%d")
        seconds = int(record.get(day, 0) or 0)
        if seconds:
            total += seconds
            active += 1
    return round(total / active) if active else 0


class Coordinator:
    """Wires the tracker, aggregator, rules, grants and scheduler together.

    Construction is side-effect free; :meth:`start` loads persisted rules,
    starts the dispatch loop and the scheduler, :meth:`stop` closes every
    session and performs a final flush.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        browser: BrowserBridge | None = None,
        storage: StorageManager | None = None,
        notifications: NotificationService | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or AppConfig()
        self.clock = clock
        self.storage = storage or StorageManager(self.config.data_path, clock=clock)
        self.browser = browser or HttpBrowserBridge(
            self.config.bridge_url, timeout=self.config.bridge_timeout
        )
        self.notifications = notifications or NotificationService()
        self.grants = GrantManager(clock=clock)
        self.rules = RuleEngine(self.storage, self.grants)
        self.aggregator = UsageAggregator(self.storage, self.rules, clock=clock)
        self.tracker = TabActivityTracker(
            self.browser, self.aggregator, clock=clock, on_enter=self.enforce_access
        )
        self.maintenance = MaintenanceJobs(
            self.storage,
            self.aggregator,
            self.grants,
            self.notifications,
            self.config,
            clock=clock,
        )
        self.scheduler = Scheduler(now=lambda: datetime.fromtimestamp(self.clock()), clock=clock)
        self.events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._dispatch_task: asyncio.Task[None] | None = None
        self._handlers: dict[str, Handler] = {
            "GET_USAGE_DATA": self._get_usage_data,
            "CHECK_ACCESS": self._check_access,
            "ADD_SITE_RULE": self._add_site_rule,
            "REMOVE_SITE_RULE": self._remove_site_rule,
            "GET_SITE_RULES": self._get_site_rules,
            "REQUEST_TEMP_ACCESS": self._request_temp_access,
            "CHECK_TEMP_ACCESS": self._check_temp_access,
            "REVOKE_TEMP_ACCESS": self._revoke_temp_access,
            "GET_SETTINGS": self._get_settings,
            "UPDATE_SETTINGS": self._update_settings,
            "GET_TAB_INFO": self._get_tab_info,
            "TOGGLE_BLOCK": self._toggle_block,
            "TOGGLE_TRACKING": self._toggle_tracking,
            "LOG_TEMP_ACCESS": self._log_temp_access,
            "UPDATE_VIDEO_SPEED": self._update_video_speed,
            "GET_VIDEO_SPEED": self._get_video_speed,
            "RESET_SETTINGS": self._reset_settings,
            "CLEAR_ALL_DATA": self._clear_all_data,
        }

    # ------------------------------------------------------------------
    # Lifecycle

    def _register_triggers(self) -> None:
        cfg = self.config
        self.scheduler.every("flush", cfg.flush_interval, self.aggregator.flush)
        self.scheduler.every("liveness", cfg.liveness_interval, self.tracker.check_liveness)
        self.scheduler.every(
            "quota-check",
            cfg.quota_interval,
            self.maintenance.quota_check,
            initial_delay=cfg.quota_initial_delay,
        )
        self.scheduler.every(
            "cleanup",
            cfg.cleanup_interval,
            self.maintenance.cleanup,
            initial_delay=cfg.cleanup_initial_delay,
        )
        self.scheduler.daily("daily-reset", cfg.daily_reset_at, self.maintenance.daily_reset)
        self.scheduler.daily("backup", cfg.backup_at, self.maintenance.backup)

    async def start(self) -> None:
        settings = await self.storage.get_settings()
        self.tracker.enabled = bool(settings.get("trackingEnabled", True))
        await self.rules.load()
        self._register_triggers()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name="timedash-dispatch")
        self.scheduler.start()
        logger.info("Coordinator started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None
        self.tracker.stop_all()
        try:
            await self.aggregator.flush()
        except TimeDashError:
            logger.exception("Final flush failed; %s unsaved", self.aggregator.pending)
        await self.storage.close()
        logger.info("Coordinator stopped")

    # ------------------------------------------------------------------
    # Browser events

    async def submit_event(self, event: dict[str, Any]) -> None:
        await self.events.put(event)

    async def handle_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        match kind:
            case "tab_activated":
                await self.tracker.handle_tab_activated(event["tabId"])
            case "tab_updated":
                await self.tracker.handle_tab_updated(
                    event["tabId"], event.get("url"), event.get("status", "complete")
                )
            case "tab_removed":
                await self.tracker.handle_tab_removed(event["tabId"])
            case "window_focus_changed":
                await self.tracker.handle_window_focus_changed(event.get("windowId"))
            case _:
                logger.warning("Ignoring unknown browser event: %r", kind)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("Browser event %r failed", event.get("type"))
            finally:
                self.events.task_done()

    # ------------------------------------------------------------------
    # Access enforcement

    async def today_seconds(self, domain: str) -> int:
        return await self.aggregator.today_seconds(domain)

    async def check_access(self, url: str) -> AccessDecision:
        """Flush buffered time, then evaluate ``url`` against rules and grants."""
        domain = extract_domain(url)
        if self.rules.get_rule(domain) is None:
            return AccessDecision(False, None, domain)
        try:
            await self.aggregator.flush()
        except TimeDashError:
            logger.warning("Flush before access check failed; using persisted usage")
        return self.rules.evaluate_access(url, await self.today_seconds(domain))

    async def enforce_access(self, tab: TabInfo, domain: str) -> None:
        url = tab.get("url") or ""
        decision = await self.check_access(url)
        if not decision.should_block:
            return
        self.tracker.stop_session(tab["id"])
        await self.storage.increment_block_count(decision.domain)
        await self.storage.record_block_event(decision.domain)
        target = build_block_page_url(
            self.config.block_page_url, decision.domain, url, decision.reason
        )
        await self.browser.redirect(tab["id"], target)

    # ------------------------------------------------------------------
    # Request/response contract

    async def handle_message(self, message: dict[str, Any]) -> Any:
        handler = self._handlers.get(str(message.get("type")))
        if handler is None:
            return {"error": "Unknown message type"}
        try:
            return await handler(message)
        except ValidationError as exc:
            return {"success": False, "error": str(exc)}
        except TimeDashError as exc:
            logger.warning("Message %s failed: %s", message.get("type"), exc)
            return {"success": False, "error": str(exc)}

    async def _get_usage_data(self, _message: dict[str, Any]) -> dict[str, Any]:
        usage = await self.storage.get_all_usage()
        settings = await self.storage.get_settings()
        now = datetime.fromtimestamp(self.clock())
        today = local_date_string(self.clock())

        domains = []
        for domain, record in usage.items():
            rule = self.rules.get_rule(domain)
            domains.append(
                {
                    "domain": domain,
                    "todayTime": today_seconds_from(record, today),
                    "totalTime": int(record.get("cumulative", 0) or 0),
                    "averageTime": average_daily_seconds(record, now),
                    "todayGeneral": int(record.get(f"{today}_general", 0) or 0),
                    "todayRestricted": int(record.get(f"{today}_restricted", 0) or 0),
                    "isBlocked": isinstance(rule, BlockedRule),
                    "isRestricted": isinstance(rule, RestrictedRule),
                }
            )
        domains.sort(key=lambda d: d["todayTime"], reverse=True)
        return {
            "domains": domains,
            "settings": settings,
            "totalToday": sum(d["todayTime"] for d in domains),
            "totalOverall": sum(d["totalTime"] for d in domains),
        }

    async def _check_access(self, message: dict[str, Any]) -> dict[str, Any]:
        url = message.get("url") or message.get("domain") or ""
        if "://" not in url and url:
            url = f"https://{url}"
        decision = await self.check_access(url)
        return dict(decision.to_response())

    async def _add_site_rule(self, message: dict[str, Any]) -> dict[str, Any]:
        rule = make_rule(
            message.get("domain", ""),
            message.get("ruleType", ""),
            message.get("timeLimitMinutes"),
        )
        await self.rules.add_rule(rule)
        return {"success": True}

    async def _remove_site_rule(self, message: dict[str, Any]) -> dict[str, Any]:
        removed = await self.rules.remove_rule(message.get("domain", ""))
        if not removed:
            return {"success": False, "error": "No rule for domain"}
        return {"success": True}

    async def _get_site_rules(self, _message: dict[str, Any]) -> dict[str, Any]:
        return {
            "blocked": self.rules.blocked_domains(),
            "restricted": self.rules.restricted_domains(),
        }

    async def _request_temp_access(self, message: dict[str, Any]) -> dict[str, Any]:
        minutes = message.get("duration")
        if minutes is None:
            minutes = self.config.temp_access_minutes
        if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
            msg = f"duration must be a number of minutes, got {minutes!r}"
            raise ValidationError(msg)
        domain = self.grants.validate(message.get("domain", ""), minutes * 60 * 1000)
        # a failed counter write must not leave a live grant behind
        await self.storage.increment_temp_access_count(domain)
        self.grants.grant(domain, minutes * 60 * 1000)
        return {
            "success": True,
            "hasAccess": self.grants.has_access(domain),
            "remainingTime": self.grants.remaining(domain),
        }

    async def _log_temp_access(self, message: dict[str, Any]) -> dict[str, Any]:
        domain = normalize_domain(message.get("domain", ""))
        if not is_valid_domain(domain):
            msg = f"invalid domain: {message.get('domain')!r}"
            raise ValidationError(msg)
        await self.storage.record_temp_access_usage(domain)
        return {"success": True}

    async def _check_temp_access(self, message: dict[str, Any]) -> dict[str, Any]:
        domain = message.get("domain", "")
        return {
            "hasAccess": self.grants.has_access(domain),
            "remainingTime": self.grants.remaining(domain),
        }

    async def _revoke_temp_access(self, message: dict[str, Any]) -> dict[str, Any]:
        return {"success": self.grants.revoke(message.get("domain", ""))}

    def _apply_tracking(self, settings: dict[str, Any]) -> bool:
        tracking = bool(settings.get("trackingEnabled", True))
        if self.tracker.enabled and not tracking:
            self.tracker.stop_all()
        self.tracker.enabled = tracking
        return tracking

    async def _get_settings(self, _message: dict[str, Any]) -> dict[str, Any]:
        return dict(await self.storage.get_settings())

    async def _update_settings(self, message: dict[str, Any]) -> dict[str, Any]:
        changes = message.get("settings")
        if not isinstance(changes, dict):
            msg = "settings must be an object"
            raise ValidationError(msg)
        self._apply_tracking(await self.storage.update_settings(changes))
        return {"success": True}

    async def _reset_settings(self, _message: dict[str, Any]) -> dict[str, Any]:
        self._apply_tracking(await self.storage.reset_settings())
        return {"success": True}

    async def _toggle_tracking(self, _message: dict[str, Any]) -> dict[str, Any]:
        settings = await self.storage.get_settings()
        changed = {"trackingEnabled": not settings.get("trackingEnabled", True)}
        tracking = self._apply_tracking(await self.storage.update_settings(changed))
        logger.info("Tracking toggled | enabled=%s", tracking)
        return {"success": True, "trackingEnabled": tracking}

    async def _clear_all_data(self, _message: dict[str, Any]) -> dict[str, Any]:
        """Wipe the document and every in-memory mirror of it."""
        self.tracker.stop_all()
        dropped = self.aggregator.discard_pending()
        await self.storage.clear_all()
        self.grants.clear()
        await self.rules.load()
        self.tracker.enabled = True
        logger.warning("All data cleared; %s unflushed domains dropped", len(dropped))
        return {"success": True}

    async def _update_video_speed(self, message: dict[str, Any]) -> dict[str, Any]:
        domain = normalize_domain(message.get("domain", ""))
        if not is_valid_domain(domain):
            msg = f"invalid domain: {message.get('domain')!r}"
            raise ValidationError(msg)
        speed = message.get("speed")
        settings = await self.storage.get_settings()
        max_speed = float(settings.get("maxPlaybackSpeed") or MAX_PLAYBACK_SPEED)
        if isinstance(speed, bool) or not isinstance(speed, (int, float)):
            msg = f"speed must be a number, got {speed!r}"
            raise ValidationError(msg)
        if not 0 < speed <= max_speed:
            msg = f"speed must be above 0 and at most {max_speed:g}"
            raise ValidationError(msg)
        await self.storage.set_video_speed(domain, float(speed))
        return {"success": True}

    async def _get_video_speed(self, message: dict[str, Any]) -> dict[str, Any]:
        domain = normalize_domain(message.get("domain", ""))
        return {"speed": await self.storage.get_video_speed(domain)}

    async def _get_tab_info(self, message: dict[str, Any]) -> dict[str, Any] | None:
        info = self.tracker.tab_info(message.get("tabId"))  # type: ignore[arg-type]
        if info is None:
            return None
        record = await self.storage.get_domain_usage(info["domain"])
        return {
            "domain": info["domain"],
            "todayTime": today_seconds_from(record, local_date_string(self.clock())),
            "totalTime": int(record.get("cumulative", 0) or 0),
            "isTracking": info["is_tracking"],
        }

    async def _toggle_block(self, message: dict[str, Any]) -> dict[str, Any]:
        blocked = await self.rules.toggle_block(message.get("domain", ""))
        return {"success": True, "blocked": blocked}

    def status(self) -> dict[str, Any]:
        return {
            "sessions": self.tracker.describe(),
            "pending": self.aggregator.pending,
            "grants": self.grants.active_grants(),
            "trackingEnabled": self.tracker.enabled,
            "triggers": self.scheduler.status(),
        }
