"""Tab activity tracker: decides which domain is accruing time right now.

The tracker owns every :class:`TrackingSession`.  Elapsed time is computed
exactly once, when a session stops, from its ``start_time``; nothing is
accumulated incrementally, so repeated or out-of-order events cannot count a
second twice.

All session mutations (:meth:`TabActivityTracker.start_session`,
:meth:`~TabActivityTracker.stop_session`, :meth:`~TabActivityTracker.stop_all`)
are synchronous.  The async event handlers only await the browser bridge
*before* or *after* those mutations, never in the middle of one, which keeps
"at most one accruing session" true for every interleaving of events.
"""

from __future__ import annotations

import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from timedash.errors import GoneTargetError, InvariantViolation, TransientIOError
from timedash.model.models import TabInfo
from timedash.watchers.browser import BrowserBridge
from timedash.watchers.domain import extract_domain, should_track
from timedash.watchers.logger import logger

# chrome.windows.WINDOW_ID_NONE
WINDOW_ID_NONE = -1


class PendingSink(Protocol):
    def add_pending(self, domain: str, seconds: int) -> None: ...


EnterHook = Callable[[TabInfo, str], Awaitable[None]]


@dataclass
class TrackingSession:
    """An open measurement interval for one tab."""

    tab_id: int
    domain: str
    start_time: float
    is_active: bool = True
    paused_at: float | None = None

    def elapsed(self, now: float) -> int:
        """Whole seconds accrued; a paused session stopped accruing at ``paused_at``."""
        end = self.paused_at if self.paused_at is not None else now
        return max(0, math.floor(end - self.start_time))


class TabActivityTracker:
    """State machine fed by raw browser events."""

    def __init__(
        self,
        browser: BrowserBridge,
        sink: PendingSink,
        clock: Callable[[], float] = time.time,
        on_enter: EnterHook | None = None,
    ) -> None:
        self.browser = browser
        self.sink = sink
        self.clock = clock
        self.on_enter = on_enter
        self.enabled = True
        self.browser_focused = True
        self.focused_window_id: int | None = None
        self._sessions: dict[int, TrackingSession] = {}

    # ------------------------------------------------------------------
    # Synchronous session bookkeeping

    def start_session(self, tab_id: int, domain: str) -> TrackingSession | None:
        """Stop every session, then open one for ``tab_id``."""
        self.stop_all()
        if not self.enabled:
            return None
        session = TrackingSession(tab_id=tab_id, domain=domain, start_time=self.clock())
        self._sessions[tab_id] = session
        self._check_invariant()
        logger.info("Tracking started | tab=%s domain=%s", tab_id, domain)
        return session

    def stop_session(self, tab_id: int) -> int:
        """Close the session for ``tab_id`` and hand its time to the sink."""
        session = self._sessions.pop(tab_id, None)
        if session is None:
            return 0
        elapsed = session.elapsed(self.clock())
        if elapsed > 0:
            self.sink.add_pending(session.domain, elapsed)
        logger.info(
            "Tracking stopped | tab=%s domain=%s seconds=%s", tab_id, session.domain, elapsed
        )
        return elapsed

    def stop_all(self) -> int:
        return sum(self.stop_session(tab_id) for tab_id in list(self._sessions))

    def pause_session(self, tab_id: int) -> None:
        session = self._sessions.get(tab_id)
        if session is None or not session.is_active:
            return
        session.is_active = False
        session.paused_at = self.clock()
        logger.info("Tracking paused | tab=%s domain=%s", tab_id, session.domain)

    def _check_invariant(self) -> None:
        active = [s for s in self._sessions.values() if s.is_active]
        if len(active) > 1:
            logger.critical(
                "%s",
                InvariantViolation(
                    f"{len(active)} sessions accruing at once: "
                    f"{[(s.tab_id, s.domain) for s in active]}"
                ),
            )

    def session(self, tab_id: int) -> TrackingSession | None:
        return self._sessions.get(tab_id)

    def sessions(self) -> list[TrackingSession]:
        return list(self._sessions.values())

    def active_sessions(self) -> list[TrackingSession]:
        return [s for s in self._sessions.values() if s.is_active]

    def tab_info(self, tab_id: int) -> dict[str, Any] | None:
        session = self._sessions.get(tab_id)
        if session is None:
            return None
        return {"domain": session.domain, "is_tracking": session.is_active}

    def describe(self) -> list[dict[str, Any]]:
        now = self.clock()
        return [
            {
                "tabId": s.tab_id,
                "domain": s.domain,
                "isActive": s.is_active,
                "elapsed": s.elapsed(now),
            }
            for s in self._sessions.values()
        ]

    # ------------------------------------------------------------------
    # Browser events

    async def _track_tab(self, tab: TabInfo) -> None:
        url = tab.get("url")
        if not should_track(url):
            return
        if not self.browser_focused:
            return
        window_id = tab.get("window_id")
        if (
            self.focused_window_id is not None
            and window_id is not None
            and window_id != self.focused_window_id
        ):
            return
        domain = extract_domain(url)
        if self.start_session(tab["id"], domain) is None:
            return
        if self.on_enter is not None:
            await self.on_enter(tab, domain)

    async def handle_tab_activated(self, tab_id: int) -> None:
        self.stop_all()
        try:
            tab = await self.browser.get_tab(tab_id)
        except GoneTargetError:
            return
        if not tab.get("active", True):
            return
        await self._track_tab(tab)

    async def handle_tab_updated(
        self, tab_id: int, url: str | None, status: str | None = "complete"
    ) -> None:
        if status != "complete" or not url:
            return
        if not should_track(url):
            self.stop_session(tab_id)
            return
        try:
            tab = await self.browser.get_tab(tab_id)
        except GoneTargetError:
            self.stop_session(tab_id)
            return
        if tab.get("active"):
            await self._track_tab({**tab, "url": url})

    async def handle_tab_removed(self, tab_id: int) -> None:
        self.stop_session(tab_id)

    async def handle_window_focus_changed(self, window_id: int | None) -> None:
        if window_id is None or window_id == WINDOW_ID_NONE:
            self.browser_focused = False
            self.focused_window_id = None
            self.stop_all()
            return

        self.browser_focused = True
        self.focused_window_id = window_id
        self.stop_all()
        tab = await self.browser.query_active_tab(window_id)
        if tab is not None:
            await self._track_tab(tab)

    async def check_liveness(self) -> None:
        """Pause sessions whose tab is no longer foregrounded and visible."""
        for tab_id, session in list(self._sessions.items()):
            if not session.is_active:
                continue
            try:
                tab = await self.browser.get_tab(tab_id)
                visible = bool(tab.get("active")) and await self.browser.check_visibility(tab_id)
            except GoneTargetError:
                if self._sessions.get(tab_id) is session:
                    self.stop_session(tab_id)
                continue
            except TransientIOError as exc:
                logger.warning("Liveness check skipped for tab %s: %s", tab_id, exc)
                continue
            # the session may have been superseded while we were waiting
            if not visible and self._sessions.get(tab_id) is session:
                self.pause_session(tab_id)
