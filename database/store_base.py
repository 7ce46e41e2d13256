"""
Abstract Job Store — Interface for all action-queue storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)

Every transition is a conditional update: it only applies when the row is
in the expected state, and the boolean result says whether it applied.
Re-invoking a transition that already applied (same arguments) returns
True without changing anything, so callers may safely repeat them.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

from models.schemas import ActionJob, ErrorCategory, JobStatus


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Creation / lookup ─────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: ActionJob) -> ActionJob:
        """
        Insert a new pending job. When `job.idempotency_key` matches a job
        that is not yet sent/dead, that existing job is returned instead.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[ActionJob]:
        ...

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[ActionJob]:
        ...

    # ── Scanning ──────────────────────────────────────────────

    @abstractmethod
    async def select_eligible(self, limit: int, now: Optional[datetime] = None) -> list[ActionJob]:
        """Pending/failed jobs whose next_retry_at is unset or due, oldest first."""
        ...

    # ── Transitions ───────────────────────────────────────────

    @abstractmethod
    async def mark_processing(self, job_id: str) -> bool:
        """pending|failed → processing. Exactly one concurrent caller wins."""
        ...

    @abstractmethod
    async def mark_sent(self, job_id: str, external_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_failed(
        self, job_id: str, retry_count: int, error: str,
        category: ErrorCategory, next_retry_at: datetime,
    ) -> bool:
        ...

    @abstractmethod
    async def mark_dead(
        self, job_id: str, retry_count: int, error: str, category: ErrorCategory,
    ) -> bool:
        ...

    @abstractmethod
    async def mutate_payload(self, job_id: str, patch: dict[str, Any]) -> bool:
        """Shallow-merge `patch` into the job's payload."""
        ...

    @abstractmethod
    async def reset_for_retry(self, job_id: str) -> Optional[ActionJob]:
        """Operator path: dead|failed → pending, retry_count kept."""
        ...

    # ── Inspection ────────────────────────────────────────────

    @abstractmethod
    async def status_summary(self) -> dict[str, int]:
        """Counts keyed "<action_kind>::<status>"."""
        ...

    @abstractmethod
    async def dead_letters(self, limit: int = 50) -> list[ActionJob]:
        ...

    @abstractmethod
    async def find_stuck_processing(self, older_than: timedelta, now: Optional[datetime] = None) -> list[ActionJob]:
        ...
