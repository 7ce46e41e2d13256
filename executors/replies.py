"""
Single-step executors — one platform call, the response id is the result.
"""
from __future__ import annotations

import structlog

from executors.base import ActionExecutor
from models.schemas import ActionJob, ActionKind, Credentials, ExecutionResult

logger = structlog.get_logger()


class ReplyToCommentExecutor(ActionExecutor):
    action_kind = ActionKind.REPLY_TO_COMMENT

    async def execute(self, job: ActionJob, credentials: Credentials) -> ExecutionResult:
        payload = self.parse_payload(job)
        response = await self.client.post(
            f"{payload.parent_comment_id}/replies",
            access_token=credentials.access_token,
            params={"message": payload.reply_text},
            timeout=self.timeout,
        )
        return ExecutionResult(external_id=self.require_id(response))


class ReplyToMessageExecutor(ActionExecutor):
    """Replies inside an existing conversation thread."""

    action_kind = ActionKind.REPLY_TO_MESSAGE

    async def execute(self, job: ActionJob, credentials: Credentials) -> ExecutionResult:
        payload = self.parse_payload(job)
        response = await self.client.post(
            f"{payload.recipient_ref}/messages",
            access_token=credentials.access_token,
            params={"message": payload.message_text},
            timeout=self.timeout,
        )
        return ExecutionResult(external_id=self.require_id(response, "message_id", "id"))


class SendMessageExecutor(ActionExecutor):
    """Direct message to a user, sent from the destination account."""

    action_kind = ActionKind.SEND_MESSAGE

    async def execute(self, job: ActionJob, credentials: Credentials) -> ExecutionResult:
        payload = self.parse_payload(job)
        response = await self.client.post(
            f"{credentials.account_ref}/messages",
            access_token=credentials.access_token,
            json={
                "recipient": {"id": payload.recipient_ref},
                "message": {"text": payload.message_text},
            },
            timeout=self.timeout,
        )
        external_id = self.require_id(response, "message_id", "id")
        logger.debug("message_sent", job_id=job.id, external_id=external_id)
        return ExecutionResult(external_id=external_id)
