"""
Clock -- injected time source.

Services never read the system clock themselves: journal ``occurred_at``,
packaging dates (and therefore lot codes and expiration dates), batch code
years and reconciliation timestamps all come from the Clock they were
constructed with.
"""

from abc import ABC, abstractmethod
from datetime import UTC, date, datetime


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware current instant."""

    def today(self) -> date:
        """UTC calendar date of ``now()``."""
        return self.now().astimezone(UTC).date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """Frozen at ``fixed_time`` (naive values are taken as UTC)."""

    def __init__(self, fixed_time: datetime):
        if fixed_time.tzinfo is None:
            fixed_time = fixed_time.replace(tzinfo=UTC)
        self._now = fixed_time

    def now(self) -> datetime:
        return self._now
