"""
Content Records — upstream source-of-truth the executors read and update.

Repost jobs re-resolve their source media here at execution time, and
successful publish/repost jobs report back here (best-effort).

Backends:
  - InMemoryContentRecords: dict-based, for development and tests
  - RESTContentRecords: calls the content service over HTTP
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import RecordsConfig
from models.schemas import RepostSource

logger = structlog.get_logger()


class ContentRecords(abc.ABC):
    """Abstract base for upstream content records."""

    @abc.abstractmethod
    async def get_repost_source(self, permission_record_id: str) -> Optional[RepostSource]:
        """Current source media for a granted repost permission, or None."""
        ...

    @abc.abstractmethod
    async def mark_scheduled_item_published(self, item_id: str, external_id: str) -> None:
        ...

    @abc.abstractmethod
    async def mark_reposted(self, permission_record_id: str, external_id: str) -> None:
        ...


class InMemoryContentRecords(ContentRecords):
    def __init__(self):
        self.repost_sources: dict[str, RepostSource] = {}
        self.scheduled_items: dict[str, dict[str, Any]] = {}
        self.permissions: dict[str, dict[str, Any]] = {}

    def add_repost_source(self, source: RepostSource) -> None:
        self.repost_sources[source.permission_record_id] = source
        self.permissions.setdefault(source.permission_record_id, {"status": "granted"})

    async def get_repost_source(self, permission_record_id: str) -> Optional[RepostSource]:
        return self.repost_sources.get(permission_record_id)

    async def mark_scheduled_item_published(self, item_id: str, external_id: str) -> None:
        self.scheduled_items[item_id] = {
            "status": "published",
            "external_id": external_id,
            "published_at": datetime.now(timezone.utc),
        }

    async def mark_reposted(self, permission_record_id: str, external_id: str) -> None:
        self.permissions[permission_record_id] = {
            "status": "reposted",
            "external_id": external_id,
            "reposted_at": datetime.now(timezone.utc),
        }


class RESTContentRecords(ContentRecords):
    """
    REST content service client.

    Endpoints:
        GET   /repost-permissions/{id}      → {media_url, username, caption}
        PATCH /scheduled-items/{id}         ← {status, external_id}
        PATCH /repost-permissions/{id}      ← {status, external_id}
    """

    def __init__(self, config: RecordsConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=10.0,
                transport=self._transport,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, path, **kwargs)
        if response.status_code != 404:
            response.raise_for_status()
        return response

    async def get_repost_source(self, permission_record_id: str) -> Optional[RepostSource]:
        response = await self._request("GET", f"/repost-permissions/{permission_record_id}")
        if response.status_code == 404:
            return None
        data = response.json()
        if not data.get("media_url"):
            return None
        return RepostSource(
            permission_record_id=permission_record_id,
            media_url=data["media_url"],
            username=data.get("username") or "",
            caption=data.get("caption") or "",
        )

    async def mark_scheduled_item_published(self, item_id: str, external_id: str) -> None:
        await self._request(
            "PATCH", f"/scheduled-items/{item_id}",
            json={"status": "published", "external_id": external_id},
        )
        logger.info("scheduled_item_marked_published", item_id=item_id, external_id=external_id)

    async def mark_reposted(self, permission_record_id: str, external_id: str) -> None:
        await self._request(
            "PATCH", f"/repost-permissions/{permission_record_id}",
            json={"status": "reposted", "external_id": external_id},
        )
        logger.info("permission_marked_reposted",
                    permission_record_id=permission_record_id,
                    external_id=external_id)

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_records(config: RecordsConfig) -> ContentRecords:
    if config.backend == "rest":
        return RESTContentRecords(config)
    return InMemoryContentRecords()
