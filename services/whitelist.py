# services/whitelist.py
from __future__ import annotations

import logging
import re
from typing import Any

from exceptions import NotFoundError, ValidationError
from services.orchestrator import LifecycleOrchestrator, boundary
from services.state_store import StateStore
from utils.clock import isoformat
from utils.mojang_client import MojangClient

log = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,16}$")


def _validate(username: str) -> str:
    name = (username or "").strip()
    if not USERNAME_RE.match(name):
        raise ValidationError(
            "Username must be 3-16 characters, alphanumeric and underscores only",
            error="invalid_username",
        )
    return name


class WhitelistService:
    """Keeps the local whitelist cache and mirrors changes onto a live server."""

    def __init__(self, store: StateStore, orchestrator: LifecycleOrchestrator, mojang: MojangClient):
        self.store = store
        self.orchestrator = orchestrator
        self.mojang = mojang

    @boundary("whitelist")
    async def list_entries(self) -> dict[str, Any]:
        entries = await self.store.list_whitelist()
        return {
            "whitelist": [
                {"name": e.username, "uuid": e.uuid, "added_at": isoformat(e.added_at), "added_by": e.added_by}
                for e in entries
            ]
        }

    @boundary("whitelist")
    async def add(self, username: str, added_by: str | None = None) -> dict[str, Any]:
        name = _validate(username)
        uuid = await self.mojang.lookup_uuid(name)
        await self.store.upsert_whitelist(name, uuid, added_by)
        relayed = await self.orchestrator.relay_console(f"whitelist add {name}")
        log.info("[whitelist] added %s (uuid=%s, relayed=%s)", name, uuid, relayed is not None)
        return await self._result(f"Added {name} to whitelist", relayed)

    @boundary("whitelist")
    async def remove(self, username: str) -> dict[str, Any]:
        name = _validate(username)
        if not await self.store.remove_whitelist(name):
            raise NotFoundError(f"{name} is not on the whitelist")
        relayed = await self.orchestrator.relay_console(f"whitelist remove {name}")
        log.info("[whitelist] removed %s (relayed=%s)", name, relayed is not None)
        return await self._result(f"Removed {name} from whitelist", relayed)

    async def _result(self, message: str, relayed: str | None) -> dict[str, Any]:
        entries = await self.store.list_whitelist()
        return {
            "success": True,
            "message": message,
            "relayed": relayed is not None,
            "whitelist": [e.username for e in entries],
        }
