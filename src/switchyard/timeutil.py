"""Clock helpers.

All persisted timestamps are naive UTC so comparisons behave the same on
PostgreSQL ``timestamp`` columns and on SQLite.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
