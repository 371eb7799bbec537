import asyncio
import time
from collections.abc import Callable

from timedash.api.services.rules import RestrictedRule, RuleEngine
from timedash.api.services.storage import (
    USAGE_GENERAL,
    USAGE_RESTRICTED,
    StorageManager,
    local_date_string,
    today_seconds_from,
)
from timedash.watchers.logger import logger


class UsageAggregator:
    """Buffers measured seconds per domain and flushes them into storage.

    The buffer is swapped out in one synchronous step before any await, so
    seconds added while a flush is writing land in the fresh buffer and are
    picked up by the next flush.  The whole batch is one storage transaction;
    if it fails the snapshot is merged back and nothing was persisted.  A
    cancelled flush still lets its batch finish, so a cancellation never
    loses or duplicates seconds.
    """

    def __init__(
        self,
        storage: StorageManager,
        rules: RuleEngine,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.rules = rules
        self.clock = clock
        self._pending: dict[str, int] = {}

    def add_pending(self, domain: str, seconds: int) -> None:
        if seconds <= 0:
            return
        self._pending[domain] = self._pending.get(domain, 0) + int(seconds)

    @property
    def pending(self) -> dict[str, int]:
        return dict(self._pending)

    def discard_pending(self) -> dict[str, int]:
        dropped, self._pending = self._pending, {}
        return dropped

    def _classify(self, domain: str) -> str:
        rule = self.rules.get_rule(domain)
        return USAGE_RESTRICTED if isinstance(rule, RestrictedRule) else USAGE_GENERAL

    async def flush(self) -> int:
        """Persist the buffered seconds; returns the number of domains written."""
        if not self._pending:
            return 0
        snapshot, self._pending = self._pending, {}

        batch = {domain: (seconds, self._classify(domain)) for domain, seconds in snapshot.items()}
        write = asyncio.ensure_future(
            self.storage.add_usage(batch, local_date_string(self.clock()))
        )
        try:
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                # the batch lands (or fails) before the cancellation goes up
                await write
                raise
        except Exception:
            for domain, seconds in snapshot.items():
                self.add_pending(domain, seconds)
            logger.warning("Flush failed, %s domains kept for retry", len(snapshot))
            raise
        logger.debug("Flushed %s", snapshot)
        return len(snapshot)

    async def today_seconds(self, domain: str) -> int:
        record = await self.storage.get_domain_usage(domain)
        return today_seconds_from(record, local_date_string(self.clock()))
