# utils/mojang_client.py
from __future__ import annotations

import logging

import httpx

from utils.config import settings

log = logging.getLogger(__name__)


class MojangClient:
    """Username -> UUID lookup; best effort, None when unknown or unreachable."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None,
                 client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or settings.MOJANG_API_BASE).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def lookup_uuid(self, username: str) -> str | None:
        try:
            resp = await self._client.get(f"{self.base_url}/users/profiles/minecraft/{username}")
            if resp.status_code != 200:
                return None
            return resp.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            log.info("[whitelist] could not fetch UUID for %s: %s", username, e)
            return None
