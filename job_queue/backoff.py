"""
Backoff policy for failed actions.

    retry_count=1 → 2 min, =2 → 4 min, =3 → 8 min, =4 → 16 min, =5 → 32 min,
    capped at 60 min from the 6th retry on.

`retry_count` is the count *after* the failed attempt was recorded.
"""
from __future__ import annotations

from datetime import timedelta

BASE_MINUTES = 2
MAX_DELAY_MINUTES = 60


def delay_minutes(retry_count: int) -> int:
    # Clamp the exponent; anything past 2**6 is already over the cap
    exponent = max(0, min(retry_count, 16))
    return min(BASE_MINUTES ** exponent, MAX_DELAY_MINUTES)


def delay_for(retry_count: int) -> timedelta:
    """Wait before the next attempt. Pure and deterministic."""
    return timedelta(minutes=delay_minutes(retry_count))
