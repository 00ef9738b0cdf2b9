"""Time source for rotations.

Timestamps are naive UTC to match the DateTime columns. Engines take a
``Clock`` so tests can move time.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
