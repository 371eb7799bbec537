import asyncio
import time
from collections.abc import Callable

from timedash.errors import ValidationError
from timedash.watchers.domain import is_valid_domain, normalize_domain
from timedash.watchers.logger import logger

DEFAULT_GRANT_MS = 5 * 60 * 1000


class GrantManager:
    """Memory-only, time-boxed overrides of the rule engine's decision.

    Expiry is checked lazily on every lookup; the cleanup callback scheduled
    by :meth:`grant` is only a sweep and may fire late, or after the entry
    was revoked or re-granted, without effect.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._expires_at: dict[str, float] = {}

    def validate(self, domain: str, duration_ms: float = DEFAULT_GRANT_MS) -> str:
        """Check a grant request without installing it; returns the domain key."""
        key = normalize_domain(domain)
        if not is_valid_domain(key):
            msg = f"invalid domain: {domain!r}"
            raise ValidationError(msg)
        if duration_ms <= 0:
            msg = "grant duration must be positive"
            raise ValidationError(msg)
        return key

    def grant(self, domain: str, duration_ms: float = DEFAULT_GRANT_MS) -> float:
        """Allow ``domain`` for ``duration_ms``; returns the expiry timestamp."""
        key = self.validate(domain, duration_ms)
        expires_at = self.clock() + duration_ms / 1000
        self._expires_at[key] = expires_at
        self._schedule_cleanup(key, expires_at, duration_ms / 1000)
        logger.info("Temporary access granted | domain=%s ms=%s", key, int(duration_ms))
        return expires_at

    def _schedule_cleanup(self, domain: str, expires_at: float, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop (synchronous caller): lazy expiry in has_access covers it
            return
        loop.call_later(delay, self._expire, domain, expires_at)

    def _expire(self, domain: str, expires_at: float) -> None:
        if self._expires_at.get(domain) != expires_at:
            return  # revoked or re-granted since
        if self.clock() >= expires_at:
            del self._expires_at[domain]

    def has_access(self, domain: str) -> bool:
        key = normalize_domain(domain)
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return False
        if self.clock() >= expires_at:
            del self._expires_at[key]
            return False
        return True

    def remaining(self, domain: str) -> int:
        """Milliseconds of access left (0 if none or expired)."""
        expires_at = self._expires_at.get(normalize_domain(domain))
        if expires_at is None:
            return 0
        return max(0, int((expires_at - self.clock()) * 1000))

    def revoke(self, domain: str) -> bool:
        return self._expires_at.pop(normalize_domain(domain), None) is not None

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [d for d, exp in self._expires_at.items() if now >= exp]
        for domain in expired:
            del self._expires_at[domain]
        return len(expired)

    def active_grants(self) -> dict[str, int]:
        self.cleanup_expired()
        return {d: self.remaining(d) for d in self._expires_at}

    def clear(self) -> None:
        self._expires_at.clear()
