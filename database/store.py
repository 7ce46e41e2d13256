"""
SqlJobStore — Portable SQL queries for PostgreSQL and SQLite.

Every transition is a single conditional UPDATE (`WHERE id = :id AND
status IN (...)`); the affected row count decides the outcome. That is
what keeps two processes sharing one table from both claiming a job.
When the conditional update misses, a follow-up read distinguishes an
idempotent repeat (already in the requested state) from a real conflict.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError

from database.models import ActionJobRow
from database.session import get_session
from database.store_base import BaseJobStore
from models.schemas import (
    ActionJob, ErrorCategory, JobStatus,
    ELIGIBLE_STATUSES, RETRYABLE_BY_OPERATOR, TERMINAL_STATUSES,
)

logger = structlog.get_logger()

_ELIGIBLE = [s.value for s in ELIGIBLE_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_STATUSES]
_OPERATOR_RETRYABLE = [s.value for s in RETRYABLE_BY_OPERATOR]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self, session_scope=None):
        self._session = session_scope or get_session

    # ── Creation / lookup ──────────────────────────────────

    async def create_job(self, job: ActionJob) -> ActionJob:
        try:
            async with self._session() as db:
                if job.idempotency_key:
                    existing = await self._find_active(db, job.idempotency_key)
                    if existing:
                        logger.info("job_deduplicated",
                                    job_id=existing.id,
                                    idempotency_key=job.idempotency_key)
                        return self._row_to_job(existing)

                row = ActionJobRow(
                    id=job.id,
                    destination_id=job.destination_id,
                    action_kind=job.action_kind.value,
                    payload=dict(job.payload),
                    idempotency_key=job.idempotency_key,
                    status=JobStatus.PENDING.value,
                    retry_count=job.retry_count,
                    created_at=_as_utc(job.created_at),
                    updated_at=_as_utc(job.created_at),
                )
                db.add(row)
                await db.flush()
                return self._row_to_job(row)
        except IntegrityError:
            # A concurrent enqueue inserted the active row for this key first
            if not job.idempotency_key:
                raise
            async with self._session() as db:
                existing = await self._find_active(db, job.idempotency_key)
            if existing is None:
                raise
            logger.info("job_deduplicated_on_conflict",
                        job_id=existing.id,
                        idempotency_key=job.idempotency_key)
            return self._row_to_job(existing)

    async def get_job(self, job_id: str) -> Optional[ActionJob]:
        async with self._session() as db:
            row = await db.get(ActionJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[ActionJob]:
        async with self._session() as db:
            stmt = select(ActionJobRow).order_by(ActionJobRow.created_at).limit(limit)
            if status is not None:
                stmt = stmt.where(ActionJobRow.status == JobStatus(status).value)
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    # ── Scanning ───────────────────────────────────────────

    async def select_eligible(self, limit: int, now: Optional[datetime] = None) -> list[ActionJob]:
        now = _as_utc(now) or _utcnow()
        async with self._session() as db:
            stmt = (
                select(ActionJobRow)
                .where(and_(
                    ActionJobRow.status.in_(_ELIGIBLE),
                    (ActionJobRow.next_retry_at.is_(None)) | (ActionJobRow.next_retry_at <= now),
                ))
                .order_by(ActionJobRow.created_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    # ── Transitions ────────────────────────────────────────

    async def mark_processing(self, job_id: str) -> bool:
        return await self._conditional_update(
            and_(ActionJobRow.id == job_id, ActionJobRow.status.in_(_ELIGIBLE)),
            status=JobStatus.PROCESSING.value,
        )

    async def mark_sent(self, job_id: str, external_id: str) -> bool:
        applied = await self._conditional_update(
            and_(ActionJobRow.id == job_id,
                 ActionJobRow.status == JobStatus.PROCESSING.value),
            status=JobStatus.SENT.value,
            external_id=external_id,
            next_retry_at=None,
        )
        if applied:
            return True
        return await self._already(job_id, status=JobStatus.SENT.value, external_id=external_id)

    async def mark_failed(
        self, job_id: str, retry_count: int, error: str,
        category: ErrorCategory, next_retry_at: datetime,
    ) -> bool:
        applied = await self._conditional_update(
            and_(ActionJobRow.id == job_id,
                 ActionJobRow.status == JobStatus.PROCESSING.value,
                 ActionJobRow.retry_count < retry_count),
            status=JobStatus.FAILED.value,
            retry_count=retry_count,
            last_error=error,
            error_category=ErrorCategory(category).value,
            next_retry_at=_as_utc(next_retry_at),
        )
        if applied:
            return True
        return await self._already(job_id, status=JobStatus.FAILED.value, retry_count=retry_count)

    async def mark_dead(
        self, job_id: str, retry_count: int, error: str, category: ErrorCategory,
    ) -> bool:
        applied = await self._conditional_update(
            and_(ActionJobRow.id == job_id,
                 ActionJobRow.status == JobStatus.PROCESSING.value,
                 ActionJobRow.retry_count < retry_count),
            status=JobStatus.DEAD.value,
            retry_count=retry_count,
            last_error=error,
            error_category=ErrorCategory(category).value,
            next_retry_at=None,
        )
        if applied:
            return True
        return await self._already(job_id, status=JobStatus.DEAD.value, retry_count=retry_count)

    async def mutate_payload(self, job_id: str, patch: dict[str, Any]) -> bool:
        async with self._session() as db:
            row = await db.get(ActionJobRow, job_id)
            if not row or row.status in _TERMINAL:
                return False
            # Reassign rather than mutate so the JSON column is flagged dirty
            row.payload = {**(row.payload or {}), **patch}
            row.updated_at = _utcnow()
            return True

    async def reset_for_retry(self, job_id: str) -> Optional[ActionJob]:
        try:
            applied = await self._conditional_update(
                and_(ActionJobRow.id == job_id, ActionJobRow.status.in_(_OPERATOR_RETRYABLE)),
                status=JobStatus.PENDING.value,
                next_retry_at=None,
                last_error=None,
                error_category=None,
            )
        except IntegrityError:
            logger.warning("retry_blocked_by_active_duplicate", job_id=job_id)
            return None
        if not applied:
            return None
        return await self.get_job(job_id)

    # ── Inspection ─────────────────────────────────────────

    async def status_summary(self) -> dict[str, int]:
        async with self._session() as db:
            stmt = (
                select(ActionJobRow.action_kind, ActionJobRow.status, func.count())
                .group_by(ActionJobRow.action_kind, ActionJobRow.status)
            )
            result = await db.execute(stmt)
            return {f"{kind}::{status}": int(n) for kind, status, n in result.all()}

    async def dead_letters(self, limit: int = 50) -> list[ActionJob]:
        async with self._session() as db:
            stmt = (
                select(ActionJobRow)
                .where(ActionJobRow.status == JobStatus.DEAD.value)
                .order_by(ActionJobRow.updated_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    async def find_stuck_processing(self, older_than: timedelta, now: Optional[datetime] = None) -> list[ActionJob]:
        cutoff = (_as_utc(now) or _utcnow()) - older_than
        async with self._session() as db:
            stmt = select(ActionJobRow).where(and_(
                ActionJobRow.status == JobStatus.PROCESSING.value,
                ActionJobRow.updated_at < cutoff,
            ))
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    # ── Helpers ────────────────────────────────────────────

    async def _conditional_update(self, condition, **values) -> bool:
        async with self._session() as db:
            stmt = (
                update(ActionJobRow)
                .where(condition)
                .values(**values, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    @staticmethod
    async def _find_active(db, key: str) -> Optional[ActionJobRow]:
        stmt = (
            select(ActionJobRow)
            .where(and_(
                ActionJobRow.idempotency_key == key,
                ActionJobRow.status.not_in(_TERMINAL),
            ))
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _already(self, job_id: str, **expected) -> bool:
        async with self._session() as db:
            row = await db.get(ActionJobRow, job_id)
            if not row:
                return False
            return all(getattr(row, k) == v for k, v in expected.items())

    @staticmethod
    def _row_to_job(row: ActionJobRow) -> ActionJob:
        return ActionJob(
            id=row.id,
            destination_id=row.destination_id,
            action_kind=row.action_kind,
            payload=dict(row.payload or {}),
            idempotency_key=row.idempotency_key,
            status=row.status,
            retry_count=row.retry_count,
            last_error=row.last_error,
            error_category=row.error_category,
            next_retry_at=_as_utc(row.next_retry_at),
            external_id=row.external_id,
            created_at=_as_utc(row.created_at) or _utcnow(),
            updated_at=_as_utc(row.updated_at) or _utcnow(),
        )
