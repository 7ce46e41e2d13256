"""
Error Classifier — the single place failure policy is decided.

    rate_limit  retryable, carries a cooldown for the rate-limit signal
    auth        not retryable, credentials need refresh
    validation  not retryable, upstream defect in the job, or an
                accepted call whose response could not be read
    transient   retryable, network / server side
    unknown     retryable, standard backoff
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from executors.base import (
    AUTH_CODES, RATE_LIMIT_CODES,
    CredentialError, PayloadValidationError, PlatformApiError, RateLimitedError,
    UnreadableResponseError,
)
from models.schemas import ErrorCategory


@dataclass(frozen=True)
class Classification:
    retryable: bool
    category: ErrorCategory
    cooldown_seconds: Optional[int] = None


def _classify_platform(exc: PlatformApiError) -> Classification:
    status = exc.status_code
    if isinstance(exc, RateLimitedError) or status == 429 or exc.error_code in RATE_LIMIT_CODES:
        return Classification(True, ErrorCategory.RATE_LIMIT, exc.retry_after)
    if status in (401, 403) or exc.error_code in AUTH_CODES:
        return Classification(False, ErrorCategory.AUTH)
    if status == 408 or status >= 500:
        return Classification(True, ErrorCategory.TRANSIENT)
    if 400 <= status < 500:
        return Classification(False, ErrorCategory.VALIDATION)
    return Classification(True, ErrorCategory.UNKNOWN)


def classify(exc: BaseException) -> Classification:
    """Map an execution failure to its retry policy. Pure."""
    if isinstance(exc, PlatformApiError):
        return _classify_platform(exc)
    if isinstance(exc, CredentialError):
        return Classification(False, ErrorCategory.AUTH)
    if isinstance(exc, UnreadableResponseError):
        return Classification(False, ErrorCategory.VALIDATION)
    if isinstance(exc, PayloadValidationError):
        return Classification(False, ErrorCategory.VALIDATION)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return Classification(True, ErrorCategory.TRANSIENT)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 408 or status >= 500:
            return Classification(True, ErrorCategory.TRANSIENT)
    return Classification(True, ErrorCategory.UNKNOWN)
