# utils/hetzner_client.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from exceptions import NotConfiguredError, UpstreamError
from utils.clock import utcnow
from utils.config import settings
from utils.cost import region_config

log = logging.getLogger(__name__)

PROJECT_LABEL = "grovemc"

# provider statuses after which the VM will never serve players again
POWERED_OFF = "off"
DELETING = "deleting"


@dataclass(frozen=True)
class ProviderServer:
    id: str
    name: str
    status: str
    ip: str | None
    server_type: str | None

    @classmethod
    def from_api(cls, d: dict[str, Any]) -> "ProviderServer":
        ipv4 = ((d.get("public_net") or {}).get("ipv4") or {}).get("ip")
        return cls(
            id=str(d["id"]),
            name=d.get("name", ""),
            status=d.get("status", "unknown"),
            ip=ipv4,
            server_type=(d.get("server_type") or {}).get("name"),
        )


@dataclass(frozen=True)
class CreatedServer:
    id: str
    ip: str
    server_type: str


@dataclass(frozen=True)
class ServerMetrics:
    cpu: float
    disk_read: float
    disk_write: float
    network_in: float
    network_out: float


def _latest(series: dict[str, Any] | None) -> float:
    values = (series or {}).get("values") or []
    return float(values[-1][1]) if values else 0.0


class HetznerClient:
    """Thin typed wrapper over the Hetzner Cloud servers API."""

    def __init__(
        self,
        token: str | None = None,
        ssh_key_id: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = settings.HETZNER_API_TOKEN if token is None else token
        self.ssh_key_id = settings.HETZNER_SSH_KEY_ID if ssh_key_id is None else ssh_key_id
        self.base_url = (base_url or settings.HETZNER_API_BASE).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        if not self.token:
            raise NotConfiguredError("HETZNER_API_TOKEN is not set")
        try:
            resp = await self._client.request(
                method,
                f"{self.base_url}{endpoint}",
                headers={"Authorization": f"Bearer {self.token}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Hetzner API unreachable: {e}") from e
        return resp

    async def _call(self, method: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        resp = await self._request(method, endpoint, **kwargs)
        if resp.is_error:
            raise UpstreamError(f"Hetzner API error: {resp.status_code} {self._error_message(resp)}")
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            return resp.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return resp.reason_phrase

    # ---- servers --------------------------------------------------------

    async def create_server(self, region: str, user_data: str) -> CreatedServer:
        cfg = region_config(region)
        name = f"{PROJECT_LABEL}-{region}-{int(time.time() * 1000)}"
        body: dict[str, Any] = {
            "name": name,
            "server_type": cfg.server_type,
            "location": cfg.location,
            "image": settings.HETZNER_IMAGE,
            "user_data": user_data,
            "labels": {"project": PROJECT_LABEL, "region": region, "managed": "true"},
            "start_after_create": True,
        }
        if self.ssh_key_id:
            body["ssh_keys"] = [self.ssh_key_id]
        data = await self._call("POST", "/servers", json=body)
        server = ProviderServer.from_api(data["server"])
        log.info("[hetzner] created %s (%s) in %s", server.id, name, cfg.location)
        return CreatedServer(id=server.id, ip=server.ip or "", server_type=cfg.server_type)

    async def get_server(self, server_id: str) -> ProviderServer | None:
        resp = await self._request("GET", f"/servers/{server_id}")
        if resp.status_code == 404:
            return None
        if resp.is_error:
            raise UpstreamError(f"Hetzner API error: {resp.status_code} {self._error_message(resp)}")
        return ProviderServer.from_api(resp.json()["server"])

    async def list_servers(self) -> list[ProviderServer]:
        data = await self._call("GET", "/servers", params={"label_selector": f"project={PROJECT_LABEL}"})
        return [ProviderServer.from_api(s) for s in data.get("servers", [])]

    async def delete_server(self, server_id: str) -> None:
        await self._call("DELETE", f"/servers/{server_id}")
        log.info("[hetzner] delete requested for %s", server_id)

    async def shutdown_server(self, server_id: str) -> None:
        """Graceful ACPI shutdown; returns once the action is accepted."""
        await self._call("POST", f"/servers/{server_id}/actions/shutdown")

    async def power_on_server(self, server_id: str) -> None:
        await self._call("POST", f"/servers/{server_id}/actions/poweron")

    async def power_off_server(self, server_id: str) -> None:
        await self._call("POST", f"/servers/{server_id}/actions/poweroff")

    async def get_metrics(self, server_id: str) -> ServerMetrics | None:
        end = utcnow()
        start = end - timedelta(minutes=5)
        try:
            data = await self._call(
                "GET",
                f"/servers/{server_id}/metrics",
                params={"type": "cpu,disk,network", "start": start.isoformat(), "end": end.isoformat()},
            )
            ts = data["metrics"]["time_series"]
            return ServerMetrics(
                cpu=_latest(ts.get("cpu")),
                disk_read=_latest(ts.get("disk_read")),
                disk_write=_latest(ts.get("disk_write")),
                network_in=_latest(ts.get("network_in")),
                network_out=_latest(ts.get("network_out")),
            )
        except Exception as e:
            log.debug("[hetzner] metrics for %s unavailable: %s", server_id, e)
            return None
