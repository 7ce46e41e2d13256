"""
Tests for the queue scanner (one tick of the action queue).
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from database.store_memory import InMemoryJobStore
from executors.base import PlatformApiError, RateLimitedError
from job_queue.scanner import QueueScanner
from models.schemas import ActionKind, ErrorCategory, JobStatus

from tests.support import make_job


class TestScannerSuccess:
    @pytest.mark.asyncio
    async def test_send_message_ends_sent(self, scanner, store, platform, telemetry, clock):
        job = await store.create_job(make_job(ActionKind.SEND_MESSAGE))

        stats = await scanner.tick()

        assert stats["selected"] == 1
        assert stats["sent"] == 1
        sent = await store.get_job(job.id)
        assert sent.status == JobStatus.SENT
        assert sent.external_id == "ext-1"
        assert await store.select_eligible(10, now=clock.advance(days=1)) == []
        assert telemetry.named("action_sent")[0]["details"]["external_id"] == "ext-1"

    @pytest.mark.asyncio
    async def test_empty_queue(self, scanner, platform):
        stats = await scanner.tick()
        assert stats["selected"] == 0
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_jobs_run_oldest_first(self, scanner, store, platform, clock):
        base = clock() - timedelta(minutes=5)
        await store.create_job(make_job(ActionKind.REPLY_TO_COMMENT, created_at=base + timedelta(minutes=1)))
        await store.create_job(make_job(ActionKind.SEND_MESSAGE, created_at=base))

        await scanner.tick()
        assert platform.paths() == ["acct-a/messages", "c-1/replies"]

    @pytest.mark.asyncio
    async def test_publish_marks_scheduled_item(self, scanner, store, records):
        job = await store.create_job(make_job(ActionKind.PUBLISH_CONTENT))
        await scanner.tick()
        sent = await store.get_job(job.id)
        assert sent.status == JobStatus.SENT
        assert records.scheduled_items["sched-1"]["external_id"] == sent.external_id

    @pytest.mark.asyncio
    async def test_secondary_update_failure_keeps_job_sent(self, scanner, store, records):
        records.mark_reposted = AsyncMock(side_effect=RuntimeError("records down"))
        job = await store.create_job(make_job(ActionKind.REPOST_CONTENT))

        stats = await scanner.tick()

        assert stats["sent"] == 1
        assert (await store.get_job(job.id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_telemetry_failure_keeps_job_sent(self, scanner, store, telemetry):
        telemetry.record = AsyncMock(side_effect=RuntimeError("sink down"))
        job = await store.create_job(make_job())

        stats = await scanner.tick()

        assert stats["sent"] == 1
        assert (await store.get_job(job.id)).status == JobStatus.SENT


class TestScannerFailures:
    @pytest.mark.asyncio
    async def test_step_two_transient_failure_schedules_retry(self, scanner, store, platform, clock):
        platform.script("/media_publish", PlatformApiError("upstream", status_code=503))
        job = await store.create_job(make_job(ActionKind.PUBLISH_CONTENT))
        now = clock()

        stats = await scanner.tick()

        assert stats["failed"] == 1
        failed = await store.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.retry_count == 1
        assert failed.error_category == ErrorCategory.TRANSIENT
        assert failed.next_retry_at == now + timedelta(minutes=2)
        assert failed.payload["creation_ref"] == "ext-1"
        assert await store.select_eligible(10, now=now + timedelta(minutes=1)) == []

        clock.advance(minutes=2)
        stats = await scanner.tick()

        assert stats["sent"] == 1
        assert platform.count("/media") == 1
        assert platform.count("/media_publish") == 2
        assert (await store.get_job(job.id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_non_retryable_goes_dead_immediately(self, scanner, store, platform, telemetry):
        job = await store.create_job(make_job(
            ActionKind.REPLY_TO_COMMENT, payload={"parent_comment_id": "c-1", "reply_text": ""},
        ))

        stats = await scanner.tick()

        assert stats["dead"] == 1
        dead = await store.get_job(job.id)
        assert dead.status == JobStatus.DEAD
        assert dead.retry_count == 1
        assert dead.error_category == ErrorCategory.VALIDATION
        assert platform.calls == []
        assert telemetry.named("action_failed_permanent")[0]["details"]["category"] == "validation"

    @pytest.mark.asyncio
    async def test_non_retryable_ignores_retry_budget(self, scanner, store, platform):
        platform.script("/replies", PlatformApiError("bad param", status_code=400, error_code=100))
        job = await store.create_job(make_job(ActionKind.REPLY_TO_COMMENT, retry_count=0))
        await scanner.tick()
        assert (await store.get_job(job.id)).status == JobStatus.DEAD

    @pytest.mark.asyncio
    async def test_dead_exactly_at_max_retries(self, scanner, store, platform, clock):
        for _ in range(5):
            platform.script("/replies", httpx.ConnectError("refused"))
        job = await store.create_job(make_job(ActionKind.REPLY_TO_COMMENT))

        for attempt in range(1, 5):
            await scanner.tick()
            current = await store.get_job(job.id)
            assert current.status == JobStatus.FAILED
            assert current.retry_count == attempt
            clock.advance(hours=2)

        await scanner.tick()
        dead = await store.get_job(job.id)
        assert dead.status == JobStatus.DEAD
        assert dead.retry_count == 5
        assert platform.count("/replies") == 5

    @pytest.mark.asyncio
    async def test_missing_credentials_signal_refresh(self, scanner, store, telemetry, platform):
        job = await store.create_job(make_job(destination_id="dest-unknown"))

        await scanner.tick()

        dead = await store.get_job(job.id)
        assert dead.status == JobStatus.DEAD
        assert dead.error_category == ErrorCategory.AUTH
        assert platform.calls == []
        refresh = telemetry.named("credentials_need_refresh")
        assert refresh[0]["details"]["destination_id"] == "dest-unknown"

    @pytest.mark.asyncio
    async def test_rate_limit_error_marks_destination(self, scanner, store, platform, rate_limits):
        platform.script("/messages", RateLimitedError("limit", status_code=429, retry_after=90))
        a1 = await store.create_job(make_job(ActionKind.SEND_MESSAGE))
        a2 = await store.create_job(make_job(ActionKind.REPLY_TO_COMMENT))

        stats = await scanner.tick()

        assert stats["failed"] == 1
        assert stats["rate_limited"] == 1
        assert (await store.get_job(a1.id)).error_category == ErrorCategory.RATE_LIMIT
        assert (await store.get_job(a2.id)).status == JobStatus.PENDING
        assert rate_limits.is_limited("dest-a")

    @pytest.mark.asyncio
    async def test_unknown_error_is_retried(self, scanner, store, platform):
        platform.script("/messages", RuntimeError("surprise"))
        job = await store.create_job(make_job())
        await scanner.tick()
        failed = await store.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_category == ErrorCategory.UNKNOWN
        assert failed.last_error == "surprise"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_siblings(self, scanner, store, platform):
        platform.script("/replies", PlatformApiError("server", status_code=500))
        bad = await store.create_job(make_job(ActionKind.REPLY_TO_COMMENT))
        good = await store.create_job(make_job(ActionKind.SEND_MESSAGE))

        stats = await scanner.tick()

        assert stats["failed"] == 1
        assert stats["sent"] == 1
        assert (await store.get_job(bad.id)).status == JobStatus.FAILED
        assert (await store.get_job(good.id)).status == JobStatus.SENT


class TestScannerGuards:
    @pytest.mark.asyncio
    async def test_rate_limited_destination_skipped(self, scanner, store, platform, rate_limits):
        rate_limits.mark_limited("dest-a", 60)
        limited = await store.create_job(make_job(destination_id="dest-a"))
        other = await store.create_job(make_job(destination_id="dest-b"))

        stats = await scanner.tick()

        assert stats["rate_limited"] == 1
        assert stats["sent"] == 1
        assert all(c["access_token"] == "token-b" for c in platform.calls)
        assert (await store.get_job(limited.id)).status == JobStatus.PENDING
        assert (await store.get_job(other.id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_rate_limit_expiry_resumes_dispatch(self, scanner, store, rate_limits, monotonic):
        rate_limits.mark_limited("dest-a", 60)
        job = await store.create_job(make_job(destination_id="dest-a"))
        await scanner.tick()
        monotonic.advance(61)
        await scanner.tick()
        assert (await store.get_job(job.id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_job_claimed_elsewhere_is_skipped(self, registry, resolver, platform, clock):
        class RacingStore(InMemoryJobStore):
            # Another worker claims every row between select and claim
            async def select_eligible(self, limit, now=None):
                jobs = await super().select_eligible(limit, now)
                for job in jobs:
                    await self.mark_processing(job.id)
                return jobs

        store = RacingStore()
        scanner = QueueScanner(store, registry, resolver, clock=clock)
        await store.create_job(make_job())

        stats = await scanner.tick()

        assert stats["claimed_elsewhere"] == 1
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_store_error_contained_per_job(self, registry, resolver, platform, clock):
        class FlakyStore(InMemoryJobStore):
            async def mark_sent(self, job_id, external_id):
                raise RuntimeError("connection reset")

        store = FlakyStore()
        scanner = QueueScanner(store, registry, resolver, clock=clock)
        await store.create_job(make_job())
        await store.create_job(make_job(ActionKind.REPLY_TO_COMMENT))

        stats = await scanner.tick()

        assert stats["errors"] == 2
        assert platform.count("/messages") == 1
        assert platform.count("/replies") == 1

    @pytest.mark.asyncio
    async def test_sent_transition_not_applied(self, registry, resolver, platform, telemetry, clock):
        class DetachedStore(InMemoryJobStore):
            # The row is moved out of processing before the outcome lands
            async def mark_sent(self, job_id, external_id):
                return False

        store = DetachedStore()
        scanner = QueueScanner(store, registry, resolver, telemetry=telemetry, clock=clock)
        job = await store.create_job(make_job())

        stats = await scanner.tick()

        assert stats["sent"] == 0
        assert stats["not_applied"] == 1
        assert telemetry.named("action_sent") == []
        assert (await store.get_job(job.id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,method", [
        (RuntimeError("surprise"), "mark_failed"),
        (PlatformApiError("invalid parameter", status_code=400, error_code=100), "mark_dead"),
    ])
    async def test_failure_transition_not_applied(self, registry, resolver, platform, telemetry, clock,
                                                  error, method):
        store = InMemoryJobStore()
        setattr(store, method, AsyncMock(return_value=False))
        scanner = QueueScanner(store, registry, resolver, telemetry=telemetry, clock=clock)
        platform.script("/messages", error)
        await store.create_job(make_job())

        stats = await scanner.tick()

        assert stats["not_applied"] == 1
        assert stats["failed"] == 0
        assert stats["dead"] == 0
        assert telemetry.named("action_failed_permanent") == []

    @pytest.mark.asyncio
    async def test_stuck_processing_alarm(self, scanner, store, telemetry, clock):
        job = await store.create_job(make_job())
        await store.mark_processing(job.id)
        clock.advance(minutes=31)

        stats = await scanner.tick()

        assert stats["stuck"] == 1
        alarm = telemetry.named("jobs_stuck_processing")[0]
        assert alarm["details"]["job_ids"] == [job.id]
        # Alarm only; the row is left as it was
        assert (await store.get_job(job.id)).status == JobStatus.PROCESSING
