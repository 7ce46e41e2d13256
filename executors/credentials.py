"""
Credential resolution — destination id → account ref + access token.
"""
from __future__ import annotations

import structlog
from typing import Awaitable, Callable, Optional

from executors.base import CredentialError
from models.schemas import Credentials

logger = structlog.get_logger()

CredentialResolver = Callable[[str], Awaitable[Credentials]]


class StaticCredentialResolver:
    """Resolves credentials from the `credentials:` map in settings."""

    def __init__(self, credentials: Optional[dict[str, dict[str, str]]] = None):
        self._credentials = dict(credentials or {})

    def set(self, destination_id: str, account_ref: str, access_token: str) -> None:
        self._credentials[destination_id] = {
            "account_ref": account_ref,
            "access_token": access_token,
        }

    async def __call__(self, destination_id: str) -> Credentials:
        entry = self._credentials.get(destination_id)
        if not entry or not entry.get("access_token") or not entry.get("account_ref"):
            raise CredentialError(f"No credentials configured for destination {destination_id}")
        return Credentials(**entry)
