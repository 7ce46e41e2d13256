"""
Platform API Client — thin async wrapper over the Graph-style HTTP API.

Every write is a single POST with a per-call timeout and no in-client
retry; retry and backoff belong to the queue. Non-2xx responses become
PlatformApiError (RateLimitedError when throttled) carrying the HTTP
status and the platform error code. Transport problems surface as the
original httpx exceptions.

Error body shape:
    {"error": {"message": "...", "code": 190, "error_subcode": 463}}
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from executors.base import (
    RATE_LIMIT_CODES, PlatformApiError, RateLimitedError, UnreadableResponseError,
)

logger = structlog.get_logger()


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return max(0, int(float(value)))
    except ValueError:
        return None


class PlatformClient:
    """Graph API client used by every action executor."""

    def __init__(
        self,
        base_url: str = "https://graph.facebook.com/v23.0",
        default_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.default_timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    async def post(
        self,
        path: str,
        access_token: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        query = {**(params or {}), "access_token": access_token}
        resp = await client.post(
            f"/{path.lstrip('/')}",
            params=query,
            json=json,
            timeout=timeout or self.default_timeout,
        )
        if resp.status_code >= 400:
            raise self._to_error(resp, path)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            logger.error("platform_response_unreadable",
                         path=path,
                         status=resp.status_code,
                         body=resp.text[:300])
            raise UnreadableResponseError(
                f"HTTP {resp.status_code} from {path} with a non-JSON body; "
                "the action may have been applied"
            )

    @staticmethod
    def _to_error(resp: httpx.Response, path: str) -> PlatformApiError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        err = body.get("error") if isinstance(body, dict) else None
        if not isinstance(err, dict):
            # Gateways answer with {"error": "invalid_token"} and similar
            err = {"message": err} if isinstance(err, str) else {}
        message = err.get("message") or resp.text[:300] or f"HTTP {resp.status_code}"
        logger.warning("platform_api_error",
                       path=path,
                       status=resp.status_code,
                       code=err.get("code"),
                       message=message)
        throttled = resp.status_code == 429 or err.get("code") in RATE_LIMIT_CODES
        error_cls = RateLimitedError if throttled else PlatformApiError
        return error_cls(
            message,
            status_code=resp.status_code,
            error_code=err.get("code"),
            error_subcode=err.get("error_subcode"),
            retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
