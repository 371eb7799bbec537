import asyncio

import pytest

from timedash.api.services.grants import DEFAULT_GRANT_MS, GrantManager
from timedash.errors import ValidationError


class TestGrantManager:
    """一時アクセス許可のテスト"""

    def test_grant_and_expire(self, grants, clock):
        grants.grant("example.com", 60_000)
        assert grants.has_access("example.com")
        assert grants.remaining("example.com") == 60_000

        clock.advance(59.5)
        assert grants.has_access("www.example.com")

        clock.advance(0.5)
        assert not grants.has_access("example.com")
        assert grants.remaining("example.com") == 0
        assert grants.active_grants() == {}

    def test_default_duration_is_five_minutes(self, grants):
        grants.grant("example.com")
        assert grants.remaining("example.com") == DEFAULT_GRANT_MS

    def test_regrant_replaces_expiry(self, grants, clock):
        grants.grant("example.com", 10_000)
        clock.advance(5)
        grants.grant("example.com", 10_000)
        clock.advance(8)
        assert grants.has_access("example.com")

    def test_revoke(self, grants):
        grants.grant("example.com", 10_000)
        assert grants.revoke("example.com") is True
        assert grants.revoke("example.com") is False
        assert not grants.has_access("example.com")

    @pytest.mark.parametrize(("domain", "ms"), [("bad domain", 1000), ("ok.com", 0), ("ok.com", -5)])
    def test_rejects_bad_input(self, grants, domain, ms):
        with pytest.raises(ValidationError):
            grants.grant(domain, ms)

    def test_cleanup_expired_counts_removed(self, grants, clock):
        grants.grant("a.com", 1_000)
        grants.grant("b.com", 10_000)
        clock.advance(2)
        assert grants.cleanup_expired() == 1
        assert list(grants.active_grants()) == ["b.com"]

    @pytest.mark.asyncio
    async def test_scheduled_sweep_removes_entry(self):
        # Given: a grant under the real clock with a short duration
        grants = GrantManager()
        grants.grant("example.com", 20)

        # When: the cleanup callback fires
        await asyncio.sleep(0.1)

        # Then: the entry is gone without any lookup
        assert "example.com" not in grants._expires_at

    def test_stale_sweep_does_not_remove_regranted_entry(self, grants, clock):
        first = grants.grant("example.com", 1_000)
        second = grants.grant("example.com", 60_000)
        clock.advance(2)

        # When: the sweep scheduled for the first grant runs late
        grants._expire("example.com", first)

        assert grants._expires_at["example.com"] == second
        assert grants.has_access("example.com")

    def test_validate_installs_nothing(self, grants):
        assert grants.validate("www.Reddit.com", 1000) == "reddit.com"
        assert grants.has_access("reddit.com") is False
        with pytest.raises(ValidationError):
            grants.validate("reddit.com", 0)

    def test_clear_drops_all_grants(self, grants):
        grants.grant("a.com", 60_000)
        grants.grant("b.com", 60_000)
        grants.clear()
        assert grants.active_grants() == {}
