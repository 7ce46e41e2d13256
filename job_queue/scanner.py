"""
Queue Scanner — one tick of the outbound action queue.

Flow per tick:
    stuck-processing alarm
    → select eligible jobs (oldest first, up to batch_size)
    → for each job, sequentially:
        destination rate-limited?     → skip, re-evaluated next tick
        mark_processing lost the race → skip
        resolve credentials → dispatch to executor
        success → mark_sent → secondary update (best-effort)
        failure → classify → mark_failed with backoff | mark_dead

Each job's failure is contained at its own boundary; one job never
aborts the tick or affects its siblings.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from database.store_base import BaseJobStore
from executors.base import ExecutorRegistry
from executors.credentials import CredentialResolver
from executors.telemetry import LogTelemetrySink, TelemetrySink
from job_queue.backoff import delay_for
from job_queue.classifier import classify
from job_queue.rate_limit import RateLimitSignal
from models.schemas import ActionJob, ErrorCategory, JobStatus

logger = structlog.get_logger()

MAX_RETRIES = 5
MAX_ERROR_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueScanner:
    """
    Runs ticks against the job store.

    Usage:
        scanner = QueueScanner(store, registry, resolver)
        stats = await scanner.tick()
    """

    def __init__(
        self,
        store: BaseJobStore,
        registry: ExecutorRegistry,
        resolve_credentials: CredentialResolver,
        rate_limits: Optional[RateLimitSignal] = None,
        telemetry: Optional[TelemetrySink] = None,
        batch_size: int = 20,
        max_retries: int = MAX_RETRIES,
        stuck_after: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.registry = registry
        self.resolve_credentials = resolve_credentials
        self.rate_limits = rate_limits or RateLimitSignal()
        self.telemetry = telemetry or LogTelemetrySink()
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.stuck_after = stuck_after
        self._clock = clock

    async def tick(self) -> dict[str, int]:
        """
        Single scan cycle.

        Returns counts: {"selected", "sent", "failed", "dead", "rate_limited",
                         "claimed_elsewhere", "not_applied", "errors", "stuck"}
        """
        stats = {
            "selected": 0, "sent": 0, "failed": 0, "dead": 0,
            "rate_limited": 0, "claimed_elsewhere": 0, "not_applied": 0,
            "errors": 0, "stuck": 0,
        }

        stats["stuck"] = await self._check_stuck()

        try:
            jobs = await self.store.select_eligible(self.batch_size, now=self._clock())
        except Exception as e:
            logger.error("select_eligible_failed", error=str(e))
            stats["errors"] += 1
            return stats

        stats["selected"] = len(jobs)
        if not jobs:
            return stats

        for job in jobs:
            try:
                outcome = await self._run_job(job)
            except Exception as e:
                # Store failure while recording an outcome
                logger.error("job_processing_error",
                             job_id=job.id,
                             kind=job.action_kind.value,
                             error=str(e))
                outcome = "errors"
            stats[outcome] += 1

        logger.info("queue_tick_completed", **stats)
        return stats

    # ── Per-job flow ──────────────────────────────────────

    async def _run_job(self, job: ActionJob) -> str:
        if self.rate_limits.is_limited(job.destination_id):
            logger.info("job_skipped_rate_limited",
                        job_id=job.id,
                        destination_id=job.destination_id)
            return "rate_limited"

        if not await self.store.mark_processing(job.id):
            logger.info("job_claimed_elsewhere", job_id=job.id)
            return "claimed_elsewhere"

        try:
            credentials = await self.resolve_credentials(job.destination_id)
            result = await self.registry.dispatch(job, credentials)
        except Exception as e:
            return await self._handle_failure(job, e)

        if not await self.store.mark_sent(job.id, result.external_id):
            return self._not_applied(job, JobStatus.SENT, external_id=result.external_id)
        logger.info("job_sent",
                    job_id=job.id,
                    kind=job.action_kind.value,
                    destination_id=job.destination_id,
                    external_id=result.external_id,
                    attempts=job.retry_count + 1)

        await self.registry.after_success(job, result)
        await self._record("action_sent", "success", {
            "job_id": job.id,
            "action_kind": job.action_kind.value,
            "destination_id": job.destination_id,
            "external_id": result.external_id,
        })
        return "sent"

    async def _handle_failure(self, job: ActionJob, exc: Exception) -> str:
        classification = classify(exc)
        retry_count = job.retry_count + 1
        error = (str(exc) or exc.__class__.__name__)[:MAX_ERROR_LENGTH]
        category = classification.category

        if category == ErrorCategory.RATE_LIMIT:
            self.rate_limits.mark_limited(job.destination_id, classification.cooldown_seconds)

        if category == ErrorCategory.AUTH:
            await self._record("credentials_need_refresh", "failure", {
                "job_id": job.id,
                "destination_id": job.destination_id,
                "error": error,
            })

        if not classification.retryable or retry_count >= self.max_retries:
            if not await self.store.mark_dead(job.id, retry_count, error, category):
                return self._not_applied(job, JobStatus.DEAD, category=category.value, error=error)
            logger.error("job_dead",
                         job_id=job.id,
                         kind=job.action_kind.value,
                         destination_id=job.destination_id,
                         category=category.value,
                         retryable=classification.retryable,
                         retry_count=retry_count,
                         error=error)
            await self._record("action_failed_permanent", "failure", {
                "job_id": job.id,
                "action_kind": job.action_kind.value,
                "destination_id": job.destination_id,
                "category": category.value,
                "retry_count": retry_count,
                "error": error,
            })
            return "dead"

        next_retry_at = self._clock() + delay_for(retry_count)
        if not await self.store.mark_failed(job.id, retry_count, error, category, next_retry_at):
            return self._not_applied(job, JobStatus.FAILED, category=category.value, error=error)
        logger.warning("job_failed",
                       job_id=job.id,
                       kind=job.action_kind.value,
                       destination_id=job.destination_id,
                       category=category.value,
                       retry_count=retry_count,
                       next_retry_at=next_retry_at.isoformat(),
                       error=error)
        return "failed"

    @staticmethod
    def _not_applied(job: ActionJob, target: JobStatus, **context) -> str:
        # The row left processing underneath us; record nothing for it
        logger.error("transition_not_applied",
                     job_id=job.id,
                     kind=job.action_kind.value,
                     target=target.value,
                     **context)
        return "not_applied"

    # ── Alarms & telemetry ────────────────────────────────

    async def _check_stuck(self) -> int:
        """Report processing rows past the threshold. No reclaim."""
        try:
            stuck = await self.store.find_stuck_processing(self.stuck_after, now=self._clock())
        except Exception as e:
            logger.error("stuck_check_failed", error=str(e))
            return 0

        if stuck:
            job_ids = [j.id for j in stuck]
            logger.error("jobs_stuck_processing",
                         count=len(stuck),
                         job_ids=job_ids,
                         threshold_minutes=int(self.stuck_after.total_seconds() // 60))
            await self._record("jobs_stuck_processing", "alarm", {
                "count": len(stuck),
                "job_ids": job_ids,
            })
        return len(stuck)

    async def _record(self, event: str, outcome: str, details: dict[str, Any]) -> None:
        try:
            await self.telemetry.record(event, outcome, details)
        except Exception as e:
            logger.warning("telemetry_record_failed", telemetry_event=event, error=str(e))
