"""
Clock abstraction.

Every service takes a clock so tests can pin and advance time.
"""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current UTC instant."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
