"""Independent periodic triggers running on the event loop.

Each trigger gets its own asyncio task.  A trigger's exception is logged and
swallowed at the trigger boundary, so one failing job never stops itself or
any other job from firing again.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from datetime import time as dtime
from typing import Any

from timedash.watchers.logger import logger

Job = Callable[[], Awaitable[Any]]


@dataclass
class Trigger:
    name: str
    job: Job
    interval: float | None = None
    initial_delay: float = 0.0
    at: dtime | None = None
    runs: int = 0
    failures: int = 0
    last_error: str | None = None
    last_run: float | None = None
    next_at: datetime | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    def next_delay(self, now: datetime, first: bool) -> float:
        if self.at is not None:
            if first or self.next_at is None:
                target = datetime.combine(now.date(), self.at)
            else:
                # at least one day after the previous target, even on an early wake-up
                target = datetime.combine(self.next_at.date() + timedelta(days=1), self.at)
            while target <= now:
                target = datetime.combine(target.date() + timedelta(days=1), self.at)
            self.next_at = target
            return (target - now).total_seconds()
        if first:
            return self.initial_delay
        return self.interval or 0.0


class Scheduler:
    """Registry of named triggers with start/stop lifecycle."""

    def __init__(
        self,
        now: Callable[[], datetime] = datetime.now,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.now = now
        self.clock = clock
        self._triggers: dict[str, Trigger] = {}
        self.running = False

    def every(self, name: str, interval: float, job: Job, initial_delay: float | None = None) -> Trigger:
        if interval <= 0:
            msg = f"interval for {name} must be positive"
            raise ValueError(msg)
        trigger = Trigger(
            name=name,
            job=job,
            interval=interval,
            initial_delay=interval if initial_delay is None else initial_delay,
        )
        return self._register(trigger)

    def daily(self, name: str, at: dtime, job: Job) -> Trigger:
        return self._register(Trigger(name=name, job=job, at=at))

    def _register(self, trigger: Trigger) -> Trigger:
        if trigger.name in self._triggers:
            msg = f"trigger {trigger.name!r} already registered"
            raise ValueError(msg)
        self._triggers[trigger.name] = trigger
        if self.running:
            trigger.task = asyncio.create_task(self._loop(trigger), name=f"timedash-{trigger.name}")
        return trigger

    async def _fire(self, trigger: Trigger) -> bool:
        trigger.last_run = self.clock()
        trigger.runs += 1
        try:
            await trigger.job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            trigger.failures += 1
            trigger.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Trigger %s failed", trigger.name)
            return False
        return True

    async def _loop(self, trigger: Trigger) -> None:
        first = True
        while True:
            await asyncio.sleep(trigger.next_delay(self.now(), first))
            first = False
            await self._fire(trigger)

    async def run_now(self, name: str) -> bool:
        """Fire ``name`` once, with the same failure isolation as the loop."""
        return await self._fire(self._triggers[name])

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        for trigger in self._triggers.values():
            trigger.task = asyncio.create_task(self._loop(trigger), name=f"timedash-{trigger.name}")
        logger.info("Scheduler started | triggers=%s", list(self._triggers))

    async def stop(self) -> None:
        self.running = False
        tasks = [t.task for t in self._triggers.values() if t.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for trigger in self._triggers.values():
            trigger.task = None
        logger.info("Scheduler stopped")

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            t.name: {
                "runs": t.runs,
                "failures": t.failures,
                "lastError": t.last_error,
                "lastRun": t.last_run,
            }
            for t in self._triggers.values()
        }
