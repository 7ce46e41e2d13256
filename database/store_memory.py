"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Same transition semantics as SqlJobStore
  - Each transition runs without an await between check and write, so it
    is atomic with respect to other coroutines on the same event loop
  - All data lost on process restart

Best for: local development, unit tests.
"""
from __future__ import annotations

import structlog
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from database.store_base import BaseJobStore
from models.schemas import (
    ActionJob, ErrorCategory, JobStatus,
    ELIGIBLE_STATUSES, RETRYABLE_BY_OPERATOR, TERMINAL_STATUSES,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore(BaseJobStore):
    """
    Full-featured in-memory store with the same interface as SqlJobStore.
    Hands out copies so callers never alias stored state.
    """

    def __init__(self):
        self._jobs: dict[str, ActionJob] = {}            # id → job
        self._active_keys: dict[str, str] = {}           # idempotency_key → id (non-terminal only)
        logger.info("inmemory_job_store_initialized")

    # ── Creation / lookup ─────────────────────────────────

    async def create_job(self, job: ActionJob) -> ActionJob:
        key = job.idempotency_key
        if key:
            existing_id = self._active_keys.get(key)
            existing = self._jobs.get(existing_id) if existing_id else None
            if existing and not existing.is_terminal:
                logger.info("job_deduplicated", job_id=existing.id, idempotency_key=key)
                return existing.model_copy(deep=True)

        stored = job.model_copy(deep=True)
        stored.status = JobStatus.PENDING
        self._jobs[stored.id] = stored
        if key:
            self._active_keys[key] = stored.id
        return stored.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[ActionJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[ActionJob]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    # ── Scanning ──────────────────────────────────────────

    async def select_eligible(self, limit: int, now: Optional[datetime] = None) -> list[ActionJob]:
        now = now or _utcnow()
        eligible = [j for j in self._jobs.values() if j.is_eligible(now)]
        eligible.sort(key=lambda j: j.created_at)
        return [j.model_copy(deep=True) for j in eligible[:limit]]

    # ── Transitions ───────────────────────────────────────

    async def mark_processing(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status not in ELIGIBLE_STATUSES:
            return False
        job.status = JobStatus.PROCESSING
        self._touch(job)
        return True

    async def mark_sent(self, job_id: str, external_id: str) -> bool:
        job = self._jobs.get(job_id)
        if not job:
            return False
        if job.status == JobStatus.SENT:
            return job.external_id == external_id
        if job.status != JobStatus.PROCESSING:
            return False
        job.status = JobStatus.SENT
        job.external_id = external_id
        job.next_retry_at = None
        self._release_key(job)
        self._touch(job)
        return True

    async def mark_failed(
        self, job_id: str, retry_count: int, error: str,
        category: ErrorCategory, next_retry_at: datetime,
    ) -> bool:
        job = self._jobs.get(job_id)
        if not job:
            return False
        if job.status == JobStatus.FAILED:
            return job.retry_count == retry_count
        if job.status != JobStatus.PROCESSING or retry_count <= job.retry_count:
            return False
        job.status = JobStatus.FAILED
        job.retry_count = retry_count
        job.last_error = error
        job.error_category = ErrorCategory(category)
        job.next_retry_at = next_retry_at
        self._touch(job)
        return True

    async def mark_dead(
        self, job_id: str, retry_count: int, error: str, category: ErrorCategory,
    ) -> bool:
        job = self._jobs.get(job_id)
        if not job:
            return False
        if job.status == JobStatus.DEAD:
            return job.retry_count == retry_count
        if job.status != JobStatus.PROCESSING or retry_count <= job.retry_count:
            return False
        job.status = JobStatus.DEAD
        job.retry_count = retry_count
        job.last_error = error
        job.error_category = ErrorCategory(category)
        job.next_retry_at = None
        self._release_key(job)
        self._touch(job)
        return True

    async def mutate_payload(self, job_id: str, patch: dict[str, Any]) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status in TERMINAL_STATUSES:
            return False
        job.payload = {**job.payload, **patch}
        self._touch(job)
        return True

    async def reset_for_retry(self, job_id: str) -> Optional[ActionJob]:
        job = self._jobs.get(job_id)
        if not job or job.status not in RETRYABLE_BY_OPERATOR:
            return None
        holder_id = self._active_keys.get(job.idempotency_key) if job.idempotency_key else None
        holder = self._jobs.get(holder_id) if holder_id else None
        if holder is not None and holder.id != job.id and not holder.is_terminal:
            logger.warning("retry_blocked_by_active_duplicate", job_id=job_id)
            return None
        job.status = JobStatus.PENDING
        job.next_retry_at = None
        job.last_error = None
        job.error_category = None
        if job.idempotency_key:
            self._active_keys[job.idempotency_key] = job.id
        self._touch(job)
        return job.model_copy(deep=True)

    # ── Inspection ────────────────────────────────────────

    async def status_summary(self) -> dict[str, int]:
        counts = Counter(
            f"{j.action_kind.value}::{j.status.value}" for j in self._jobs.values()
        )
        return dict(counts)

    async def dead_letters(self, limit: int = 50) -> list[ActionJob]:
        dead = [j for j in self._jobs.values() if j.status == JobStatus.DEAD]
        dead.sort(key=lambda j: j.updated_at, reverse=True)
        return [j.model_copy(deep=True) for j in dead[:limit]]

    async def find_stuck_processing(self, older_than: timedelta, now: Optional[datetime] = None) -> list[ActionJob]:
        cutoff = (now or _utcnow()) - older_than
        stuck = [
            j for j in self._jobs.values()
            if j.status == JobStatus.PROCESSING and j.updated_at < cutoff
        ]
        return [j.model_copy(deep=True) for j in stuck]

    # ── Helpers ───────────────────────────────────────────

    def _release_key(self, job: ActionJob) -> None:
        if job.idempotency_key and self._active_keys.get(job.idempotency_key) == job.id:
            del self._active_keys[job.idempotency_key]

    @staticmethod
    def _touch(job: ActionJob) -> None:
        job.updated_at = _utcnow()
