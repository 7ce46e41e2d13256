"""
Multi-step executors — create a media container, then publish it.

The container id is the resumption key (`creation_ref`). Once stored in the
job payload, later attempts skip straight to the publish call.
"""
from __future__ import annotations

import structlog
from typing import Any

from executors.base import MultiStepExecutor, PayloadWriter, SourceRecordMissingError
from executors.records import ContentRecords
from models.schemas import (
    ActionJob, ActionKind, Credentials, ExecutionResult, RepostSource,
)

logger = structlog.get_logger()

VIDEO_MEDIA_TYPES = ("VIDEO", "REELS")


def media_container_params(media_url: str, caption: str, media_type: str = "IMAGE") -> dict[str, Any]:
    media_type = (media_type or "IMAGE").upper()
    params: dict[str, Any] = {"caption": caption}
    if media_type in VIDEO_MEDIA_TYPES:
        params["video_url"] = media_url
        params["media_type"] = media_type
    else:
        params["image_url"] = media_url
    return params


def repost_caption(source: RepostSource) -> str:
    if source.caption:
        return f"📸 @{source.username}: {source.caption}\n\n#repost"
    return f"📸 @{source.username}\n\n#repost"


class _ContainerPublisher(MultiStepExecutor):
    def __init__(self, client, payload_writer: PayloadWriter, records: ContentRecords):
        super().__init__(client, payload_writer)
        self.records = records

    async def _create_container(self, credentials: Credentials, params: dict[str, Any]) -> str:
        response = await self.client.post(
            f"{credentials.account_ref}/media",
            access_token=credentials.access_token,
            params=params,
            timeout=self.timeout,
        )
        return self.require_id(response)

    async def publish_resource(self, job: ActionJob, creation_ref: str, credentials: Credentials) -> str:
        response = await self.client.post(
            f"{credentials.account_ref}/media_publish",
            access_token=credentials.access_token,
            params={"creation_id": creation_ref},
            timeout=self.timeout,
        )
        return self.require_id(response)


class PublishContentExecutor(_ContainerPublisher):
    action_kind = ActionKind.PUBLISH_CONTENT

    async def create_resource(self, job: ActionJob, credentials: Credentials) -> str:
        payload = self.parse_payload(job)
        return await self._create_container(
            credentials,
            media_container_params(payload.media_url, payload.caption, payload.media_type),
        )

    async def on_success(self, job: ActionJob, result: ExecutionResult) -> None:
        item_id = job.payload.get("related_scheduled_item_id")
        if item_id:
            await self.records.mark_scheduled_item_published(item_id, result.external_id)


class RepostContentExecutor(_ContainerPublisher):
    """
    Reposts user content under a granted permission.

    The source media is looked up on every attempt, so a job that waited
    in backoff still reposts the media as it exists now.
    """

    action_kind = ActionKind.REPOST_CONTENT

    async def create_resource(self, job: ActionJob, credentials: Credentials) -> str:
        payload = self.parse_payload(job)
        source = await self.records.get_repost_source(payload.permission_record_id)
        if source is None:
            raise SourceRecordMissingError(
                f"Repost source not found for permission {payload.permission_record_id}"
            )
        return await self._create_container(
            credentials,
            media_container_params(source.media_url, repost_caption(source)),
        )

    async def on_success(self, job: ActionJob, result: ExecutionResult) -> None:
        await self.records.mark_reposted(job.payload["permission_record_id"], result.external_id)
