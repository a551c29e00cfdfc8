# utils/dns_client.py
from __future__ import annotations

import logging
from typing import Any

import httpx

from exceptions import NotConfiguredError, UpstreamError
from utils.config import settings

log = logging.getLogger(__name__)


class CloudflareDns:
    """Keeps the game's A record pointed at whichever VM is current."""

    def __init__(
        self,
        token: str | None = None,
        zone_id: str | None = None,
        record_id: str | None = None,
        record_name: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = settings.CF_API_TOKEN if token is None else token
        self.zone_id = settings.CF_ZONE_ID if zone_id is None else zone_id
        self.record_id = settings.CF_MC_RECORD_ID if record_id is None else record_id
        self.record_name = record_name or settings.MC_RECORD_NAME
        self.base_url = (base_url or settings.CF_API_BASE).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _record_path(self) -> str:
        return f"/zones/{self.zone_id}/dns_records/{self.record_id}"

    async def _call(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        if not (self.token and self.zone_id and self.record_id):
            raise NotConfiguredError("Cloudflare DNS credentials are not set")
        try:
            resp = await self._client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers={"Authorization": f"Bearer {self.token}"},
                **kwargs,
            )
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamError(f"Cloudflare API unreachable: {e}") from e
        if not data.get("success"):
            msg = ", ".join(err.get("message", "") for err in data.get("errors") or []) or f"HTTP {resp.status_code}"
            raise UpstreamError(f"Cloudflare API error: {msg}")
        return data.get("result")

    async def update_record(self, ip: str) -> None:
        await self._call(
            "PATCH",
            self._record_path,
            json={
                "type": "A",
                "name": self.record_name,
                "content": ip,
                "ttl": 60,
                "proxied": False,  # game traffic can't go through the HTTP proxy
            },
        )
        log.info("[dns] %s -> %s", self.record_name, ip)

    async def get_record_ip(self) -> str | None:
        try:
            result = await self._call("GET", self._record_path)
        except (UpstreamError, NotConfiguredError):
            return None
        return (result or {}).get("content")
