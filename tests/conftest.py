from datetime import datetime
from typing import Any

import pytest

from timedash.api.services.aggregator import UsageAggregator
from timedash.api.services.coordinator import Coordinator
from timedash.api.services.grants import GrantManager
from timedash.api.services.rules import RuleEngine
from timedash.api.services.storage import StorageManager
from timedash.config import AppConfig
from timedash.errors import GoneTargetError
from timedash.model.models import TabInfo
from timedash.ui.notifications import NotificationConfig, NotificationService

START = datetime(2026, 10, 18, 12, 0, 0).timestamp()


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBrowser:
    """In-memory browser bridge: tabs, visibility and redirects."""

    def __init__(self) -> None:
        self.tabs: dict[int, TabInfo] = {}
        self.hidden: set[int] = set()
        self.redirects: list[tuple[int, str]] = []
        self.fail_with: Exception | None = None

    def open(self, tab_id: int, url: str, window_id: int = 1, *, active: bool = True) -> None:
        if active:
            for tab in self.tabs.values():
                if tab["window_id"] == window_id:
                    tab["active"] = False
        self.tabs[tab_id] = {"id": tab_id, "window_id": window_id, "url": url, "active": active}

    def activate(self, tab_id: int) -> None:
        self.open(tab_id, self.tabs[tab_id]["url"] or "", self.tabs[tab_id]["window_id"] or 1)

    def close(self, tab_id: int) -> None:
        self.tabs.pop(tab_id, None)

    def _tab(self, tab_id: int) -> TabInfo:
        if self.fail_with is not None:
            raise self.fail_with
        if tab_id not in self.tabs:
            raise GoneTargetError(tab_id)
        return self.tabs[tab_id]

    async def get_tab(self, tab_id: int) -> TabInfo:
        return dict(self._tab(tab_id))  # type: ignore[return-value]

    async def query_active_tab(self, window_id: int) -> TabInfo | None:
        for tab in self.tabs.values():
            if tab["window_id"] == window_id and tab["active"]:
                return dict(tab)  # type: ignore[return-value]
        return None

    async def check_visibility(self, tab_id: int) -> bool:
        self._tab(tab_id)
        return tab_id not in self.hidden

    async def redirect(self, tab_id: int, url: str) -> None:
        self._tab(tab_id)["url"] = url
        self.redirects.append((tab_id, url))


class FlakyStorage(StorageManager):
    """Memory-only storage whose writes can be made to fail."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(None, **kwargs)
        self.fail_writes = False

    def _write_file(self, doc: dict[str, Any]) -> None:
        if self.fail_writes:
            msg = "disk full"
            raise OSError(msg)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def storage(clock: FakeClock) -> FlakyStorage:
    return FlakyStorage(clock=clock)


@pytest.fixture
def grants(clock: FakeClock) -> GrantManager:
    return GrantManager(clock=clock)


@pytest.fixture
def rules(storage: FlakyStorage, grants: GrantManager) -> RuleEngine:
    return RuleEngine(storage, grants)


@pytest.fixture
def aggregator(storage: FlakyStorage, rules: RuleEngine, clock: FakeClock) -> UsageAggregator:
    return UsageAggregator(storage, rules, clock=clock)


@pytest.fixture
def notifications() -> NotificationService:
    service = NotificationService(NotificationConfig(enabled=False))
    service.platform = "Linux"
    return service


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(data_path=None)


@pytest.fixture
def coordinator(
    config: AppConfig,
    browser: FakeBrowser,
    storage: FlakyStorage,
    notifications: NotificationService,
    clock: FakeClock,
) -> Coordinator:
    """Coordinator wired to fakes; not started (no scheduler tasks)."""
    return Coordinator(
        config,
        browser=browser,
        storage=storage,
        notifications=notifications,
        clock=clock,
    )
