"""
auth/clock.py -- Injectable time source.

Token expiry and record timestamps read time through a Clock so tests can
advance time deterministically instead of sleeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
