import asyncio
import time
from datetime import datetime
from urllib.parse import parse_qs, urlparse

import pytest

from timedash.api.services.coordinator import average_daily_seconds
from timedash.api.services.rules import BlockedRule, RestrictedRule

DAY = 24 * 60 * 60


def test_average_daily_seconds_over_active_days():
    record = {"2026-10-18": 600, "2026-10-16": 300, "2026-10-01": 9999}
    assert average_daily_seconds(record, datetime(2026, 10, 18, 12)) == 450
    assert average_daily_seconds({}, datetime(2026, 10, 18, 12)) == 0


@pytest.fixture
def berlin_tz(monkeypatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available")
    monkeypatch.setenv("TZ", "Europe/Berlin")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def test_average_daily_seconds_across_dst_change(berlin_tz):
    # Given: 2026-03-29 has 23 hours in Europe/Berlin
    record = {f"2026-03-{day}": 100 for day in range(24, 31)}
    record["2026-03-23"] = 10_000

    # Then: the window is the 7 calendar dates ending today
    assert average_daily_seconds(record, datetime(2026, 3, 30, 0, 30)) == 100


class TestEnforcement:
    """ブロック・制限の適用"""

    @pytest.mark.asyncio
    async def test_restricted_site_blocks_once_limit_reached(self, coordinator, browser, clock, storage):
        await coordinator.rules.add_rule(RestrictedRule("example.com", 1))

        # Given: the user spends 61 seconds on example.com
        browser.open(1, "https://example.com/feed")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 1})
        assert browser.redirects == []
        clock.advance(61)
        browser.open(2, "https://docs.python.org")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 2})

        # When: they go back to the site
        browser.activate(1)
        await coordinator.handle_event({"type": "tab_activated", "tabId": 1})

        # Then: the tab is sent to the block page and nothing accrues
        assert len(browser.redirects) == 1
        tab_id, target = browser.redirects[0]
        assert tab_id == 1
        query = parse_qs(urlparse(target).query)
        assert query["domain"] == ["example.com"]
        assert query["reason"] == ["restricted"]
        assert query["url"] == ["https://example.com/feed"]
        assert coordinator.tracker.session(1) is None
        assert (await storage.get_domain_usage("example.com"))["blockedToday"] == 1
        assert (await storage.get_block_stats("example.com"))["totalBlocks"] == 1

    @pytest.mark.asyncio
    async def test_temp_access_lets_blocked_site_through_until_expiry(self, coordinator, browser, clock):
        await coordinator.rules.add_rule(BlockedRule("reddit.com"))
        response = await coordinator.handle_message(
            {"type": "REQUEST_TEMP_ACCESS", "domain": "reddit.com", "duration": 1}
        )
        assert response == {"success": True, "hasAccess": True, "remainingTime": 60_000}

        browser.open(1, "https://www.reddit.com/r/python")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 1})
        assert browser.redirects == []
        assert coordinator.tracker.session(1) is not None

        clock.advance(61)
        await coordinator.handle_event(
            {"type": "tab_updated", "tabId": 1, "url": "https://www.reddit.com/r/rust", "status": "complete"}
        )
        assert [t for t, _ in browser.redirects] == [1]

    @pytest.mark.asyncio
    async def test_check_access_counts_buffered_time(self, coordinator, clock):
        await coordinator.rules.add_rule(RestrictedRule("youtube.com", 1))
        coordinator.aggregator.add_pending("youtube.com", 60)

        decision = await coordinator.check_access("https://youtube.com/watch?v=1")

        assert decision.should_block is True
        assert coordinator.aggregator.pending == {}

    @pytest.mark.asyncio
    async def test_unruled_domain_skips_flush(self, coordinator, storage):
        coordinator.aggregator.add_pending("example.com", 10)
        decision = await coordinator.check_access("https://news.example.org")
        assert decision.should_block is False
        assert storage.write_count == 0

    @pytest.mark.asyncio
    async def test_failed_flush_falls_back_to_persisted_usage(self, coordinator, storage):
        await coordinator.rules.add_rule(RestrictedRule("youtube.com", 1))
        coordinator.aggregator.add_pending("youtube.com", 120)
        storage.fail_writes = True

        decision = await coordinator.check_access("https://youtube.com")

        assert decision.should_block is False
        assert coordinator.aggregator.pending == {"youtube.com": 120}


class TestMessages:
    @pytest.mark.asyncio
    async def test_unknown_type(self, coordinator):
        assert await coordinator.handle_message({"type": "NOPE"}) == {"error": "Unknown message type"}

    @pytest.mark.asyncio
    async def test_site_rule_round_trip(self, coordinator):
        assert await coordinator.handle_message(
            {"type": "ADD_SITE_RULE", "domain": "www.YouTube.com", "ruleType": "restricted", "timeLimitMinutes": 20}
        ) == {"success": True}
        assert await coordinator.handle_message(
            {"type": "ADD_SITE_RULE", "domain": "reddit.com", "ruleType": "blocked"}
        ) == {"success": True}

        rules = await coordinator.handle_message({"type": "GET_SITE_RULES"})
        assert rules == {
            "blocked": ["reddit.com"],
            "restricted": [{"domain": "youtube.com", "timeLimitMinutes": 20}],
        }

        assert await coordinator.handle_message(
            {"type": "REMOVE_SITE_RULE", "domain": "reddit.com"}
        ) == {"success": True}
        missing = await coordinator.handle_message({"type": "REMOVE_SITE_RULE", "domain": "reddit.com"})
        assert missing["success"] is False

    @pytest.mark.asyncio
    async def test_invalid_rule_is_rejected(self, coordinator):
        response = await coordinator.handle_message(
            {"type": "ADD_SITE_RULE", "domain": "not a domain", "ruleType": "blocked"}
        )
        assert response["success"] is False
        assert "invalid domain" in response["error"]
        assert coordinator.rules.rules() == {}

    @pytest.mark.asyncio
    async def test_storage_failure_is_reported(self, coordinator, storage):
        storage.fail_writes = True
        response = await coordinator.handle_message(
            {"type": "ADD_SITE_RULE", "domain": "reddit.com", "ruleType": "blocked"}
        )
        assert response["success"] is False

    @pytest.mark.asyncio
    async def test_check_access_message(self, coordinator):
        await coordinator.rules.add_rule(BlockedRule("reddit.com"))
        assert await coordinator.handle_message({"type": "CHECK_ACCESS", "url": "https://reddit.com/r/all"}) == {
            "shouldBlock": True,
            "reason": "blocked",
            "domain": "reddit.com",
        }
        allowed = await coordinator.handle_message({"type": "CHECK_ACCESS", "domain": "python.org"})
        assert allowed == {"shouldBlock": False, "reason": None, "domain": "python.org"}

    @pytest.mark.asyncio
    async def test_temp_access_messages(self, coordinator, clock):
        await coordinator.handle_message({"type": "REQUEST_TEMP_ACCESS", "domain": "reddit.com"})
        check = await coordinator.handle_message({"type": "CHECK_TEMP_ACCESS", "domain": "reddit.com"})
        assert check == {"hasAccess": True, "remainingTime": 5 * 60 * 1000}

        assert await coordinator.handle_message(
            {"type": "REVOKE_TEMP_ACCESS", "domain": "reddit.com"}
        ) == {"success": True}
        check = await coordinator.handle_message({"type": "CHECK_TEMP_ACCESS", "domain": "reddit.com"})
        assert check == {"hasAccess": False, "remainingTime": 0}

        bad = await coordinator.handle_message(
            {"type": "REQUEST_TEMP_ACCESS", "domain": "reddit.com", "duration": "soon"}
        )
        assert bad["success"] is False

    @pytest.mark.asyncio
    async def test_failed_counter_write_grants_nothing(self, coordinator, storage):
        storage.fail_writes = True

        response = await coordinator.handle_message(
            {"type": "REQUEST_TEMP_ACCESS", "domain": "reddit.com", "duration": 5}
        )

        assert response["success"] is False
        assert coordinator.grants.has_access("reddit.com") is False
        assert coordinator.grants.active_grants() == {}

    @pytest.mark.asyncio
    async def test_temp_access_counters(self, coordinator, storage):
        await coordinator.handle_message({"type": "REQUEST_TEMP_ACCESS", "domain": "reddit.com"})
        assert (await storage.get_domain_usage("reddit.com"))["tempAccessCount"] == 1
        assert (await storage.get_block_stats("reddit.com"))["tempAccessUsed"] == 0

        logged = await coordinator.handle_message({"type": "LOG_TEMP_ACCESS", "domain": "reddit.com"})

        assert logged == {"success": True}
        assert (await storage.get_block_stats("reddit.com"))["tempAccessUsed"] == 1
        bad = await coordinator.handle_message({"type": "LOG_TEMP_ACCESS", "domain": "not a domain"})
        assert bad["success"] is False

    @pytest.mark.asyncio
    async def test_usage_data(self, coordinator, storage, clock):
        await coordinator.rules.add_rule(RestrictedRule("youtube.com", 30))
        coordinator.aggregator.add_pending("youtube.com", 120)
        coordinator.aggregator.add_pending("example.com", 600)
        await coordinator.aggregator.flush()

        data = await coordinator.handle_message({"type": "GET_USAGE_DATA"})

        assert [d["domain"] for d in data["domains"]] == ["example.com", "youtube.com"]
        youtube = data["domains"][1]
        assert youtube["todayTime"] == 120
        assert youtube["todayRestricted"] == 120
        assert youtube["isRestricted"] is True
        assert youtube["isBlocked"] is False
        assert data["totalToday"] == 720
        assert data["settings"]["trackingEnabled"] is True

    @pytest.mark.asyncio
    async def test_disabling_tracking_stops_sessions(self, coordinator, browser, clock):
        browser.open(1, "https://example.com")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 1})
        clock.advance(30)

        response = await coordinator.handle_message(
            {"type": "UPDATE_SETTINGS", "settings": {"trackingEnabled": False}}
        )

        assert response == {"success": True}
        assert coordinator.tracker.sessions() == []
        assert coordinator.aggregator.pending == {"example.com": 30}
        settings = await coordinator.handle_message({"type": "GET_SETTINGS"})
        assert settings["trackingEnabled"] is False

        bad = await coordinator.handle_message({"type": "UPDATE_SETTINGS", "settings": [1]})
        assert bad["success"] is False

    @pytest.mark.asyncio
    async def test_tab_info(self, coordinator, browser):
        browser.open(3, "https://example.com")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 3})
        info = await coordinator.handle_message({"type": "GET_TAB_INFO", "tabId": 3})
        assert info == {"domain": "example.com", "todayTime": 0, "totalTime": 0, "isTracking": True}
        assert await coordinator.handle_message({"type": "GET_TAB_INFO", "tabId": 4}) is None

    @pytest.mark.asyncio
    async def test_toggle_block(self, coordinator):
        first = await coordinator.handle_message({"type": "TOGGLE_BLOCK", "domain": "x.com"})
        second = await coordinator.handle_message({"type": "TOGGLE_BLOCK", "domain": "x.com"})
        assert first == {"success": True, "blocked": True}
        assert second == {"success": True, "blocked": False}
        assert coordinator.rules.rules() == {}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_dispatch_and_stop_flushes(self, coordinator, browser, clock, storage):
        await storage.set("blockedSites", ["reddit.com"])
        await coordinator.start()
        assert isinstance(coordinator.rules.get_rule("reddit.com"), BlockedRule)

        browser.open(1, "https://example.com")
        await coordinator.submit_event({"type": "tab_activated", "tabId": 1})
        await asyncio.wait_for(coordinator.events.join(), timeout=1)
        assert coordinator.tracker.session(1) is not None

        clock.advance(42)
        await coordinator.stop()

        assert coordinator.tracker.sessions() == []
        assert (await storage.get_domain_usage("example.com"))["cumulative"] == 42
        assert set(coordinator.status()["triggers"]) == {
            "flush",
            "liveness",
            "quota-check",
            "cleanup",
            "daily-reset",
            "backup",
        }

    @pytest.mark.asyncio
    async def test_failing_event_does_not_stop_dispatch(self, coordinator, browser):
        await coordinator.start()
        browser.open(1, "https://example.com")
        await coordinator.submit_event({"type": "tab_removed"})
        await coordinator.submit_event({"type": "tab_activated", "tabId": 1})
        await asyncio.wait_for(coordinator.events.join(), timeout=1)
        assert coordinator.tracker.session(1) is not None
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_start_respects_disabled_tracking(self, coordinator, storage):
        await storage.update_settings({"trackingEnabled": False})
        await coordinator.start()
        assert coordinator.tracker.enabled is False
        await coordinator.stop()


class TestSettingsAndData:
    """設定・動画速度・データ消去"""

    @pytest.mark.asyncio
    async def test_video_speed_messages(self, coordinator):
        # Given: nothing stored, the default speed applies
        assert await coordinator.handle_message(
            {"type": "GET_VIDEO_SPEED", "domain": "youtube.com"}
        ) == {"speed": 1.0}

        # When
        response = await coordinator.handle_message(
            {"type": "UPDATE_VIDEO_SPEED", "domain": "www.YouTube.com", "speed": 2.5}
        )

        # Then
        assert response == {"success": True}
        assert await coordinator.handle_message(
            {"type": "GET_VIDEO_SPEED", "domain": "youtube.com"}
        ) == {"speed": 2.5}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("speed", [0, -1, 16.5, "fast", True, None])
    async def test_invalid_video_speed_is_rejected(self, coordinator, storage, speed):
        response = await coordinator.handle_message(
            {"type": "UPDATE_VIDEO_SPEED", "domain": "youtube.com", "speed": speed}
        )
        assert response["success"] is False
        assert await storage.get_video_speeds() == {}

    @pytest.mark.asyncio
    async def test_toggle_tracking(self, coordinator, browser, clock):
        browser.open(1, "https://example.com")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 1})
        clock.advance(20)

        off = await coordinator.handle_message({"type": "TOGGLE_TRACKING"})

        assert off == {"success": True, "trackingEnabled": False}
        assert coordinator.tracker.sessions() == []
        assert coordinator.aggregator.pending == {"example.com": 20}

        on = await coordinator.handle_message({"type": "TOGGLE_TRACKING"})
        assert on == {"success": True, "trackingEnabled": True}
        assert coordinator.tracker.enabled is True

    @pytest.mark.asyncio
    async def test_reset_settings(self, coordinator, storage):
        await coordinator.handle_message(
            {"type": "UPDATE_SETTINGS", "settings": {"trackingEnabled": False, "dailyTimeLimitMinutes": 45}}
        )

        assert await coordinator.handle_message({"type": "RESET_SETTINGS"}) == {"success": True}

        settings = await coordinator.handle_message({"type": "GET_SETTINGS"})
        assert settings["dailyTimeLimitMinutes"] == 0
        assert settings["trackingEnabled"] is True
        assert coordinator.tracker.enabled is True

    @pytest.mark.asyncio
    async def test_clear_all_data(self, coordinator, browser, storage, clock):
        # Given: rules, usage, a grant, a running session and buffered seconds
        await coordinator.rules.add_rule(BlockedRule("reddit.com"))
        coordinator.aggregator.add_pending("example.com", 40)
        await coordinator.aggregator.flush()
        await coordinator.handle_message({"type": "REQUEST_TEMP_ACCESS", "domain": "reddit.com"})
        browser.open(1, "https://example.com")
        await coordinator.handle_event({"type": "tab_activated", "tabId": 1})
        clock.advance(15)

        # When
        response = await coordinator.handle_message({"type": "CLEAR_ALL_DATA"})

        # Then
        assert response == {"success": True}
        assert await storage.snapshot() == {}
        assert coordinator.rules.rules() == {}
        assert coordinator.grants.active_grants() == {}
        assert coordinator.aggregator.pending == {}
        assert coordinator.tracker.sessions() == []
        await coordinator.aggregator.flush()
        assert await storage.get_all_usage() == {}
