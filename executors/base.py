"""
Action Executors — base infrastructure for every action kind.

Provides:
- ExecutionError: structured error hierarchy (facts only, no retry policy)
- ActionExecutor: abstract base, one subclass per action kind
- MultiStepExecutor: create-then-publish base with a persisted resumption key
- ExecutorRegistry: action kind → executor lookup and dispatch
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ValidationError

from models.schemas import (
    ActionJob, ActionKind, Credentials, ExecutionResult, PAYLOAD_MODELS,
)

logger = structlog.get_logger()

# Platform error codes: throttling (app / user / page / custom) and auth
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613})
AUTH_CODES = frozenset({190, 102, 104})


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ExecutionError(Exception):
    """Base exception for all action execution failures."""


class PlatformApiError(ExecutionError):
    """Non-2xx answer from the platform API."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: Optional[int] = None,
        error_subcode: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitedError(PlatformApiError):
    """The platform throttled the destination (HTTP 429 or a throttling code)."""


class CredentialError(ExecutionError):
    """Credentials for a destination could not be resolved."""


class PayloadValidationError(ExecutionError):
    """The job's payload cannot be executed as-is (upstream defect)."""


class UnknownActionKindError(PayloadValidationError):
    def __init__(self, kind: Any):
        super().__init__(f"No executor registered for action kind: {kind}")


class SourceRecordMissingError(PayloadValidationError):
    """An upstream record the action depends on no longer exists."""


class UnreadableResponseError(ExecutionError):
    """The platform accepted the call but its response body could not be read.

    The side effect may already have happened, so this is never retried.
    """


# ══════════════════════════════════════════════════════════════
#  COLLABORATOR PROTOCOLS
# ══════════════════════════════════════════════════════════════

class PayloadWriter(Protocol):
    async def mutate_payload(self, job_id: str, patch: dict[str, Any]) -> bool:
        ...


# ══════════════════════════════════════════════════════════════
#  ACTION EXECUTOR — Abstract Base
# ══════════════════════════════════════════════════════════════

class ActionExecutor(abc.ABC):
    """
    Base class for all action executors.

    Subclasses implement `execute`. Executors raise on failure and never
    decide whether a failure is retryable; that is the classifier's job.
    `on_success` is an optional secondary update run after the job's own
    success is final; the registry treats it as best-effort.
    """

    action_kind: ActionKind
    timeout: float = 10.0

    def __init__(self, client):
        self.client = client

    @abc.abstractmethod
    async def execute(self, job: ActionJob, credentials: Credentials) -> ExecutionResult:
        ...

    async def on_success(self, job: ActionJob, result: ExecutionResult) -> None:
        pass

    def parse_payload(self, job: ActionJob) -> BaseModel:
        model = PAYLOAD_MODELS[self.action_kind]
        try:
            return model.model_validate(job.payload)
        except ValidationError as e:
            raise PayloadValidationError(
                f"Invalid {self.action_kind.value} payload: {e.errors()}"
            ) from e

    @staticmethod
    def require_id(response: dict[str, Any], *keys: str) -> str:
        for key in keys or ("id",):
            value = response.get(key)
            if value:
                return str(value)
        raise ExecutionError(f"Platform response carried no id: {response}")


class MultiStepExecutor(ActionExecutor):
    """
    Two-step create/publish executor.

    Step 1 runs only when the resumption key is absent from the payload,
    and its result is written back through `payload_writer` before step 2
    is attempted. A retry after a step-2 failure therefore goes straight
    to step 2 with the stored reference.
    """

    resumption_key: str = "creation_ref"
    timeout: float = 15.0

    def __init__(self, client, payload_writer: PayloadWriter):
        super().__init__(client)
        self.payload_writer = payload_writer

    @abc.abstractmethod
    async def create_resource(self, job: ActionJob, credentials: Credentials) -> str:
        ...

    @abc.abstractmethod
    async def publish_resource(self, job: ActionJob, creation_ref: str, credentials: Credentials) -> str:
        ...

    async def execute(self, job: ActionJob, credentials: Credentials) -> ExecutionResult:
        self.parse_payload(job)
        creation_ref = job.payload.get(self.resumption_key)

        if creation_ref:
            logger.info("resuming_at_publish_step",
                        job_id=job.id,
                        kind=self.action_kind.value,
                        creation_ref=creation_ref)
        else:
            creation_ref = await self.create_resource(job, credentials)
            await self._persist_resumption(job, creation_ref)

        external_id = await self.publish_resource(job, creation_ref, credentials)
        return ExecutionResult(external_id=external_id)

    async def _persist_resumption(self, job: ActionJob, creation_ref: str) -> None:
        patch = {self.resumption_key: creation_ref}
        if not await self.payload_writer.mutate_payload(job.id, patch):
            raise ExecutionError(
                f"Could not persist {self.resumption_key} for job {job.id}"
            )
        job.payload = {**job.payload, **patch}
        logger.info("resumption_state_saved",
                    job_id=job.id,
                    kind=self.action_kind.value,
                    creation_ref=creation_ref)


# ══════════════════════════════════════════════════════════════
#  EXECUTOR REGISTRY
# ══════════════════════════════════════════════════════════════

class ExecutorRegistry:
    def __init__(self):
        self._executors: dict[ActionKind, ActionExecutor] = {}

    def register(self, executor: ActionExecutor):
        self._executors[executor.action_kind] = executor

    def get(self, kind: ActionKind) -> Optional[ActionExecutor]:
        return self._executors.get(kind)

    def kinds(self) -> list[ActionKind]:
        return list(self._executors.keys())

    async def dispatch(self, job: ActionJob, credentials: Credentials) -> ExecutionResult:
        executor = self.get(job.action_kind)
        if executor is None:
            raise UnknownActionKindError(job.action_kind)
        return await executor.execute(job, credentials)

    async def after_success(self, job: ActionJob, result: ExecutionResult) -> bool:
        """Run the kind's secondary update. Failures are logged, never raised."""
        executor = self.get(job.action_kind)
        if executor is None:
            return False
        try:
            await executor.on_success(job, result)
            return True
        except Exception as e:
            logger.warning("secondary_update_failed",
                           job_id=job.id,
                           kind=job.action_kind.value,
                           external_id=result.external_id,
                           error=str(e))
        return False
