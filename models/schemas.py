"""
Core data models for the outbound action queue.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ActionKind(str, Enum):
    REPLY_TO_COMMENT = "reply_to_comment"
    REPLY_TO_MESSAGE = "reply_to_message"
    SEND_MESSAGE = "send_message"
    PUBLISH_CONTENT = "publish_content"
    REPOST_CONTENT = "repost_content"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    DEAD = "dead"


ELIGIBLE_STATUSES = (JobStatus.PENDING, JobStatus.FAILED)
TERMINAL_STATUSES = (JobStatus.SENT, JobStatus.DEAD)
RETRYABLE_BY_OPERATOR = (JobStatus.DEAD, JobStatus.FAILED)


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


# ──────────────────────────────────────────────────────────────
#  Job — one queued outbound action
# ──────────────────────────────────────────────────────────────

class ActionJob(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    destination_id: str                       # external account; rate-limit grouping unit
    action_kind: ActionKind
    payload: dict[str, Any] = {}              # kind-specific; holds resumption state
    idempotency_key: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    next_retry_at: Optional[datetime] = None
    external_id: Optional[str] = None         # platform-assigned id, set on success
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_eligible(self, now: datetime) -> bool:
        if self.status not in ELIGIBLE_STATUSES:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now


# ──────────────────────────────────────────────────────────────
#  Payloads — one shape per action kind
# ──────────────────────────────────────────────────────────────

class ReplyToCommentPayload(BaseModel):
    parent_comment_id: str = Field(min_length=1)
    reply_text: str = Field(min_length=1)


class MessagePayload(BaseModel):
    """Shared by reply_to_message (thread ref) and send_message (user ref)."""
    recipient_ref: str = Field(min_length=1)
    message_text: str = Field(min_length=1)


class PublishContentPayload(BaseModel):
    media_url: str = Field(min_length=1)
    caption: str = ""
    media_type: str = "IMAGE"                 # IMAGE | VIDEO | REELS
    creation_ref: Optional[str] = None        # resumption key, set after step 1
    related_scheduled_item_id: Optional[str] = None


class RepostContentPayload(BaseModel):
    permission_record_id: str = Field(min_length=1)
    creation_ref: Optional[str] = None        # resumption key, set after step 1


PAYLOAD_MODELS: dict[ActionKind, type[BaseModel]] = {
    ActionKind.REPLY_TO_COMMENT: ReplyToCommentPayload,
    ActionKind.REPLY_TO_MESSAGE: MessagePayload,
    ActionKind.SEND_MESSAGE: MessagePayload,
    ActionKind.PUBLISH_CONTENT: PublishContentPayload,
    ActionKind.REPOST_CONTENT: RepostContentPayload,
}


# ──────────────────────────────────────────────────────────────
#  Execution collaborators
# ──────────────────────────────────────────────────────────────

class Credentials(BaseModel):
    account_ref: str                          # platform user/account id for the destination
    access_token: str


class ExecutionResult(BaseModel):
    external_id: str


class RepostSource(BaseModel):
    """Source media for a repost, re-resolved at execution time."""
    permission_record_id: str
    media_url: str
    username: str = ""
    caption: str = ""
