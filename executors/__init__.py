"""
Action executors — one implementation per action kind.

Quick start:
  from executors import build_registry
  registry = build_registry(client, store, records)
  result = await registry.dispatch(job, credentials)
"""
from __future__ import annotations

from config.settings import PlatformConfig
from executors.base import (
    ActionExecutor, CredentialError, ExecutionError, ExecutorRegistry,
    MultiStepExecutor, PayloadValidationError, PlatformApiError, RateLimitedError,
    SourceRecordMissingError, UnknownActionKindError, UnreadableResponseError,
)
from executors.credentials import CredentialResolver, StaticCredentialResolver
from executors.platform_client import PlatformClient
from executors.publishing import PublishContentExecutor, RepostContentExecutor
from executors.records import (
    ContentRecords, InMemoryContentRecords, RESTContentRecords, create_records,
)
from executors.replies import (
    ReplyToCommentExecutor, ReplyToMessageExecutor, SendMessageExecutor,
)
from executors.telemetry import LogTelemetrySink, MemoryTelemetrySink, TelemetrySink


def build_registry(client, store, records: ContentRecords, platform: PlatformConfig = None) -> ExecutorRegistry:
    """Register every action kind. `store` receives resumption-state writes."""
    platform = platform or PlatformConfig()
    registry = ExecutorRegistry()

    for cls in (ReplyToCommentExecutor, ReplyToMessageExecutor, SendMessageExecutor):
        executor = cls(client)
        executor.timeout = platform.single_step_timeout
        registry.register(executor)

    for cls in (PublishContentExecutor, RepostContentExecutor):
        executor = cls(client, store, records)
        executor.timeout = platform.multi_step_timeout
        registry.register(executor)

    return registry


__all__ = [
    "ActionExecutor", "MultiStepExecutor", "ExecutorRegistry", "build_registry",
    "ExecutionError", "PlatformApiError", "RateLimitedError", "CredentialError",
    "PayloadValidationError", "SourceRecordMissingError", "UnknownActionKindError",
    "UnreadableResponseError",
    "PlatformClient",
    "ReplyToCommentExecutor", "ReplyToMessageExecutor", "SendMessageExecutor",
    "PublishContentExecutor", "RepostContentExecutor",
    "ContentRecords", "InMemoryContentRecords", "RESTContentRecords", "create_records",
    "CredentialResolver", "StaticCredentialResolver",
    "TelemetrySink", "LogTelemetrySink", "MemoryTelemetrySink",
]
