"""
Queue Service — wires store, executors, scanner and scheduler from settings.

Usage:
    service = build_service(get_settings())
    await service.scheduler.start()
    ...
    await service.close()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx

from config.settings import Settings
from database.store_base import BaseJobStore
from database.store_factory import create_store
from executors import build_registry
from executors.base import ExecutorRegistry
from executors.credentials import CredentialResolver, StaticCredentialResolver
from executors.platform_client import PlatformClient
from executors.records import ContentRecords, create_records
from executors.telemetry import LogTelemetrySink, TelemetrySink
from job_queue.producer import ActionQueue
from job_queue.rate_limit import RateLimitSignal
from job_queue.scanner import QueueScanner
from job_queue.scheduler import TickScheduler

logger = structlog.get_logger()


@dataclass
class QueueService:
    store: BaseJobStore
    client: PlatformClient
    records: ContentRecords
    registry: ExecutorRegistry
    rate_limits: RateLimitSignal
    scanner: QueueScanner
    scheduler: TickScheduler
    queue: ActionQueue

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.client.close()
        close_records = getattr(self.records, "close", None)
        if close_records:
            await close_records()


def build_service(
    settings: Settings,
    store: Optional[BaseJobStore] = None,
    records: Optional[ContentRecords] = None,
    resolve_credentials: Optional[CredentialResolver] = None,
    telemetry: Optional[TelemetrySink] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> QueueService:
    store = store or create_store(settings.database)
    records = records or create_records(settings.records)
    client = PlatformClient(
        base_url=settings.platform.base_url,
        default_timeout=settings.platform.single_step_timeout,
        transport=transport,
    )
    registry = build_registry(client, store, records, settings.platform)
    rate_limits = RateLimitSignal(default_cooldown=settings.queue.default_rate_limit_cooldown)
    stuck_after = timedelta(minutes=settings.queue.stuck_after_minutes)

    scanner = QueueScanner(
        store=store,
        registry=registry,
        resolve_credentials=resolve_credentials or StaticCredentialResolver(settings.credentials),
        rate_limits=rate_limits,
        telemetry=telemetry or LogTelemetrySink(),
        batch_size=settings.queue.batch_size,
        max_retries=settings.queue.max_retries,
        stuck_after=stuck_after,
    )
    scheduler = TickScheduler(
        scanner.tick,
        interval_seconds=settings.queue.interval_seconds,
        enabled=settings.queue.enabled,
    )
    logger.info("queue_service_built",
                store=type(store).__name__,
                kinds=[k.value for k in registry.kinds()],
                scheduler_enabled=settings.queue.enabled)
    return QueueService(
        store=store,
        client=client,
        records=records,
        registry=registry,
        rate_limits=rate_limits,
        scanner=scanner,
        scheduler=scheduler,
        queue=ActionQueue(store, stuck_after=stuck_after),
    )
