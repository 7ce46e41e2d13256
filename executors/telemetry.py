"""
Telemetry sink — best-effort audit trail for queue outcomes.

Events:
    action_sent               terminal success
    action_failed_permanent   job dead-lettered
    credentials_need_refresh  auth failure for a destination
    jobs_stuck_processing     rows left at processing past the threshold
"""
from __future__ import annotations

import abc
import structlog
from typing import Any

logger = structlog.get_logger()


class TelemetrySink(abc.ABC):
    @abc.abstractmethod
    async def record(self, event: str, outcome: str, details: dict[str, Any]) -> None:
        ...


class LogTelemetrySink(TelemetrySink):
    """Writes telemetry events to the structured log."""

    async def record(self, event: str, outcome: str, details: dict[str, Any]) -> None:
        logger.info("telemetry", telemetry_event=event, outcome=outcome, **details)


class MemoryTelemetrySink(TelemetrySink):
    """Keeps events in a list (tests, local inspection)."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def record(self, event: str, outcome: str, details: dict[str, Any]) -> None:
        self.events.append({"event": event, "outcome": outcome, "details": dict(details)})

    def named(self, event: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event"] == event]
