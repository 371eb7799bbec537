"""Error taxonomy shared by the tracker, services and HTTP surface."""


class TimeDashError(Exception):
    """Base class for all TimeDash errors."""


class TransientIOError(TimeDashError):
    """Storage or messaging failure; retried by the next scheduled trigger."""


class GoneTargetError(TimeDashError):
    """The tab or page being queried no longer exists."""

    def __init__(self, tab_id: int | None = None, message: str | None = None) -> None:
        self.tab_id = tab_id
        super().__init__(message or f"tab {tab_id} no longer exists")


class ValidationError(TimeDashError):
    """Malformed domain, rule or grant input."""


class InvariantViolation(TimeDashError):
    """State that should be unreachable by construction."""
