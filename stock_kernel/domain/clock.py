"""
Clock -- injectable time source.

Ledger rows are timestamped from a Clock rather than the database server so
that point-in-time reconstruction (stocktaking, valuation) can be exercised
deterministically.  Services receive a Clock through their constructor and
never call ``datetime.now()`` themselves.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC time."""
        ...


class SystemClock(Clock):
    """Wall-clock time.  The production default."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` keeps returning the same instant until ``advance()``,
    ``tick()`` or ``set_time()`` moves it.
    """

    DEFAULT_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __init__(self, start: datetime | None = None):
        self._current = (start or self.DEFAULT_TIME).astimezone(UTC)

    def now(self) -> datetime:
        return self._current

    def set_time(self, value: datetime) -> None:
        self._current = value.astimezone(UTC)

    def advance(self, seconds: float = 1, **delta: float) -> datetime:
        """Move forward by ``seconds`` (plus any timedelta keyword) and return the new time."""
        self._current = self._current + timedelta(seconds=seconds, **delta)
        return self._current

    def tick(self) -> datetime:
        return self.advance(1)
