"""
Injectable clock for the inventory core.

All timestamps are UTC-naive, matching the DateTime columns in db.models.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return utcnow()


class FrozenClock:
    """Manually advanced clock for tests and replay."""

    def __init__(self, start: datetime | None = None):
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
