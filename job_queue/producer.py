"""
Action Queue — producer and operator facade over the job store.

    enqueue       validate payload, dedupe on idempotency key, insert pending
    retry         operator recovery: dead/failed → pending
    status_summary / dead_letters / stuck_jobs / get   inspection
"""
from __future__ import annotations

import hashlib
import structlog
from datetime import timedelta
from typing import Any, Optional

from pydantic import ValidationError

from database.store_base import BaseJobStore
from executors.base import PayloadValidationError
from models.schemas import ActionJob, ActionKind, PAYLOAD_MODELS

logger = structlog.get_logger()

DEAD_LETTER_DEFAULT_LIMIT = 50
DEAD_LETTER_MAX_LIMIT = 200


def build_idempotency_key(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def default_seed(destination_id: str, kind: ActionKind, payload: dict[str, Any]) -> str:
    """Identity of an action when the producer supplies no seed of its own."""
    if kind == ActionKind.REPLY_TO_COMMENT:
        return f"{kind.value}:{payload['parent_comment_id']}"
    if kind in (ActionKind.REPLY_TO_MESSAGE, ActionKind.SEND_MESSAGE):
        return f"{kind.value}:{destination_id}:{payload['recipient_ref']}:{payload['message_text']}"
    if kind == ActionKind.PUBLISH_CONTENT:
        item_id = payload.get("related_scheduled_item_id")
        if item_id:
            return f"{kind.value}:{item_id}"
        return f"{kind.value}:{destination_id}:{payload['media_url']}:{payload.get('caption', '')}"
    if kind == ActionKind.REPOST_CONTENT:
        return f"{kind.value}:{payload['permission_record_id']}"
    return f"{kind.value}:{destination_id}"


class ActionQueue:
    def __init__(self, store: BaseJobStore, stuck_after: timedelta = timedelta(minutes=30)):
        self.store = store
        self.stuck_after = stuck_after

    async def enqueue(
        self,
        destination_id: str,
        action_kind: ActionKind,
        payload: dict[str, Any],
        idempotency_seed: Optional[str] = None,
    ) -> ActionJob:
        """
        Queue an outbound action.

        Returns the existing job instead when a non-terminal job with the
        same idempotency key is already queued.
        Raises PayloadValidationError for a payload the kind cannot run.
        """
        action_kind = ActionKind(action_kind)
        try:
            model = PAYLOAD_MODELS[action_kind].model_validate(payload)
        except ValidationError as e:
            raise PayloadValidationError(
                f"Invalid {action_kind.value} payload: {e.errors()}"
            ) from e
        clean = model.model_dump(exclude_none=True)

        seed = idempotency_seed or default_seed(destination_id, action_kind, clean)
        job = ActionJob(
            destination_id=destination_id,
            action_kind=action_kind,
            payload=clean,
            idempotency_key=build_idempotency_key(seed),
        )
        stored = await self.store.create_job(job)
        if stored.id == job.id:
            logger.info("job_enqueued",
                        job_id=stored.id,
                        kind=action_kind.value,
                        destination_id=destination_id)
        return stored

    async def retry(self, job_id: str) -> Optional[ActionJob]:
        """Reset a dead or failed job to pending. None when not retryable."""
        job = await self.store.reset_for_retry(job_id)
        if job is None:
            logger.warning("manual_retry_rejected", job_id=job_id)
            return None
        logger.info("manual_retry_queued",
                    job_id=job.id,
                    kind=job.action_kind.value,
                    retry_count=job.retry_count)
        return job

    async def get(self, job_id: str) -> Optional[ActionJob]:
        return await self.store.get_job(job_id)

    async def status_summary(self) -> dict[str, Any]:
        counts = await self.store.status_summary()
        return {"counts": counts, "total": sum(counts.values())}

    async def dead_letters(self, limit: int = DEAD_LETTER_DEFAULT_LIMIT) -> list[ActionJob]:
        limit = max(1, min(limit, DEAD_LETTER_MAX_LIMIT))
        return await self.store.dead_letters(limit)

    async def stuck_jobs(self) -> list[ActionJob]:
        return await self.store.find_stuck_processing(self.stuck_after)
