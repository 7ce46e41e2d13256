"""
Rate Limit Signal — destination → throttled-until map.

Consulted by the scanner before each dispatch. Only touched from the
single sequential scan flow, so there is no locking.
"""
from __future__ import annotations

import structlog
import time
from typing import Callable, Optional

logger = structlog.get_logger()


class RateLimitSignal:
    def __init__(self, default_cooldown: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.default_cooldown = default_cooldown
        self._clock = clock
        self._limited_until: dict[str, float] = {}

    def mark_limited(self, destination_id: str, cooldown_seconds: Optional[int] = None) -> None:
        """Set or extend the cooldown. An existing longer cooldown is kept."""
        cooldown = cooldown_seconds if cooldown_seconds else self.default_cooldown
        until = self._clock() + cooldown
        current = self._limited_until.get(destination_id, 0.0)
        self._limited_until[destination_id] = max(current, until)
        logger.warning("destination_rate_limited",
                       destination_id=destination_id,
                       cooldown_seconds=cooldown)

    def is_limited(self, destination_id: str) -> bool:
        until = self._limited_until.get(destination_id)
        if until is None:
            return False
        if self._clock() >= until:
            del self._limited_until[destination_id]
            return False
        return True

    def clear(self, destination_id: Optional[str] = None) -> None:
        if destination_id is None:
            self._limited_until.clear()
        else:
            self._limited_until.pop(destination_id, None)

    def snapshot(self) -> dict[str, float]:
        """Seconds remaining per currently limited destination."""
        now = self._clock()
        return {
            dest: round(until - now, 1)
            for dest, until in self._limited_until.items()
            if until > now
        }
