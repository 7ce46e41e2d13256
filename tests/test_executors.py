"""
Tests for the action executors and the executor registry.
"""
import pytest
from unittest.mock import AsyncMock

from executors.base import (
    ExecutionError, PayloadValidationError, PlatformApiError,
    SourceRecordMissingError, UnknownActionKindError,
)
from executors.publishing import media_container_params, repost_caption
from models.schemas import ActionKind, Credentials, ExecutionResult, RepostSource

from tests.support import make_job

CREDS = Credentials(account_ref="acct-a", access_token="token-a")


# ──────────────────────────────────────────────────────────────
#  Single-step kinds
# ──────────────────────────────────────────────────────────────

class TestSingleStepExecutors:
    @pytest.mark.asyncio
    async def test_reply_to_comment(self, registry, platform):
        result = await registry.dispatch(make_job(ActionKind.REPLY_TO_COMMENT), CREDS)
        assert result.external_id == "ext-1"
        call = platform.calls[0]
        assert call["path"] == "c-1/replies"
        assert call["params"] == {"message": "thanks!"}
        assert call["access_token"] == "token-a"
        assert call["timeout"] == 10.0

    @pytest.mark.asyncio
    async def test_reply_to_message_prefers_message_id(self, registry, platform):
        platform.script("/messages", {"message_id": "m.77", "id": "ignored"})
        result = await registry.dispatch(make_job(ActionKind.REPLY_TO_MESSAGE), CREDS)
        assert result.external_id == "m.77"
        assert platform.calls[0]["path"] == "thread-1/messages"

    @pytest.mark.asyncio
    async def test_send_message_posts_from_account(self, registry, platform):
        platform.script("/messages", {"recipient_id": "r1", "message_id": "m.1"})
        result = await registry.dispatch(make_job(ActionKind.SEND_MESSAGE), CREDS)
        assert result.external_id == "m.1"
        call = platform.calls[0]
        assert call["path"] == "acct-a/messages"
        assert call["json"] == {"recipient": {"id": "r1"}, "message": {"text": "hi"}}

    @pytest.mark.asyncio
    async def test_invalid_payload_raises_validation(self, registry, platform):
        job = make_job(ActionKind.REPLY_TO_COMMENT, payload={"parent_comment_id": "c-1"})
        with pytest.raises(PayloadValidationError):
            await registry.dispatch(job, CREDS)
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_response_without_id_is_an_error(self, registry, platform):
        platform.script("/replies", {"success": True})
        with pytest.raises(ExecutionError):
            await registry.dispatch(make_job(ActionKind.REPLY_TO_COMMENT), CREDS)

    @pytest.mark.asyncio
    async def test_platform_errors_propagate(self, registry, platform):
        platform.script("/replies", PlatformApiError("server", status_code=500))
        with pytest.raises(PlatformApiError):
            await registry.dispatch(make_job(ActionKind.REPLY_TO_COMMENT), CREDS)


# ──────────────────────────────────────────────────────────────
#  Multi-step kinds
# ──────────────────────────────────────────────────────────────

class TestPublishContent:
    @pytest.mark.asyncio
    async def test_create_then_publish(self, registry, platform, store):
        platform.script("/media", {"id": "container-1"})
        platform.script("/media_publish", {"id": "post-1"})
        job = await store.create_job(make_job(ActionKind.PUBLISH_CONTENT))

        result = await registry.dispatch(job, CREDS)

        assert result.external_id == "post-1"
        assert platform.paths() == ["acct-a/media", "acct-a/media_publish"]
        assert platform.calls[0]["params"] == {
            "caption": "launch day",
            "image_url": "https://cdn.example.com/p.jpg",
        }
        assert platform.calls[1]["params"] == {"creation_id": "container-1"}
        assert platform.calls[0]["timeout"] == 15.0
        stored = await store.get_job(job.id)
        assert stored.payload["creation_ref"] == "container-1"

    @pytest.mark.asyncio
    async def test_step_one_runs_once_across_attempts(self, registry, platform, store):
        platform.script("/media", {"id": "container-1"})
        platform.script("/media_publish", PlatformApiError("server", status_code=502), {"id": "post-1"})
        job = await store.create_job(make_job(ActionKind.PUBLISH_CONTENT))

        with pytest.raises(PlatformApiError):
            await registry.dispatch(job, CREDS)
        after_first = await store.get_job(job.id)
        assert after_first.payload["creation_ref"] == "container-1"

        result = await registry.dispatch(after_first, CREDS)
        assert result.external_id == "post-1"
        assert platform.count("/media") == 1
        assert platform.count("/media_publish") == 2

    @pytest.mark.asyncio
    async def test_existing_creation_ref_skips_step_one(self, registry, platform, store):
        job = make_job(ActionKind.PUBLISH_CONTENT)
        job.payload["creation_ref"] = "container-existing"
        job = await store.create_job(job)

        await registry.dispatch(job, CREDS)
        assert platform.paths() == ["acct-a/media_publish"]
        assert platform.calls[0]["params"] == {"creation_id": "container-existing"}

    @pytest.mark.asyncio
    async def test_failed_persist_stops_before_publish(self, platform, records):
        from executors.publishing import PublishContentExecutor
        writer = AsyncMock()
        writer.mutate_payload.return_value = False
        executor = PublishContentExecutor(platform, writer, records)

        with pytest.raises(ExecutionError):
            await executor.execute(make_job(ActionKind.PUBLISH_CONTENT), CREDS)
        assert platform.paths() == ["acct-a/media"]

    @pytest.mark.asyncio
    async def test_on_success_marks_scheduled_item(self, registry, records, store):
        job = await store.create_job(make_job(ActionKind.PUBLISH_CONTENT))
        result = await registry.dispatch(job, CREDS)
        assert await registry.after_success(job, result) is True
        assert records.scheduled_items["sched-1"]["status"] == "published"
        assert records.scheduled_items["sched-1"]["external_id"] == result.external_id

    @pytest.mark.parametrize("media_type", ["VIDEO", "REELS", "reels"])
    def test_video_container_params(self, media_type):
        params = media_container_params("https://cdn.example.com/v.mp4", "clip", media_type)
        assert params == {
            "caption": "clip",
            "video_url": "https://cdn.example.com/v.mp4",
            "media_type": media_type.upper(),
        }

    def test_image_container_params(self):
        params = media_container_params("https://cdn.example.com/p.jpg", "", "IMAGE")
        assert params == {"caption": "", "image_url": "https://cdn.example.com/p.jpg"}


class TestRepostContent:
    @pytest.mark.asyncio
    async def test_repost_uses_current_source(self, registry, platform, records, store):
        job = await store.create_job(make_job(ActionKind.REPOST_CONTENT))
        # Source media changed after enqueue
        records.add_repost_source(RepostSource(
            permission_record_id="perm-1",
            media_url="https://cdn.example.com/ugc-v2.jpg",
            username="maria",
            caption="",
        ))

        result = await registry.dispatch(job, CREDS)

        assert platform.calls[0]["params"] == {
            "caption": "📸 @maria\n\n#repost",
            "image_url": "https://cdn.example.com/ugc-v2.jpg",
        }
        await registry.after_success(job, result)
        assert records.permissions["perm-1"]["status"] == "reposted"

    @pytest.mark.asyncio
    async def test_missing_source_is_validation_failure(self, registry, platform, store):
        job = await store.create_job(make_job(ActionKind.REPOST_CONTENT, payload={"permission_record_id": "gone"}))
        with pytest.raises(SourceRecordMissingError):
            await registry.dispatch(job, CREDS)
        assert platform.calls == []

    def test_caption_with_text(self):
        source = RepostSource(permission_record_id="p", media_url="u", username="maria", caption="sunset")
        assert repost_caption(source) == "📸 @maria: sunset\n\n#repost"


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class TestExecutorRegistry:
    def test_all_kinds_registered(self, registry):
        assert set(registry.kinds()) == set(ActionKind)

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        from executors.base import ExecutorRegistry
        with pytest.raises(UnknownActionKindError):
            await ExecutorRegistry().dispatch(make_job(ActionKind.SEND_MESSAGE), CREDS)

    @pytest.mark.asyncio
    async def test_secondary_update_failure_is_swallowed(self, registry, records, store):
        records.mark_scheduled_item_published = AsyncMock(side_effect=RuntimeError("records down"))
        job = await store.create_job(make_job(ActionKind.PUBLISH_CONTENT))
        assert await registry.after_success(job, ExecutionResult(external_id="post-1")) is False

    @pytest.mark.asyncio
    async def test_configured_timeouts(self, platform, store, records):
        from config.settings import PlatformConfig
        from executors import build_registry
        reg = build_registry(platform, store, records, PlatformConfig(single_step_timeout=3, multi_step_timeout=7))
        assert reg.get(ActionKind.SEND_MESSAGE).timeout == 3
        assert reg.get(ActionKind.REPOST_CONTENT).timeout == 7
