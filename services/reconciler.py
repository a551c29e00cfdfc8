# services/reconciler.py
"""Periodic repair of cached lifecycle state against the provider's view."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from models.server import LifecycleState
from services.state_store import StateStore
from utils.hetzner_client import DELETING, POWERED_OFF, HetznerClient

log = logging.getLogger(__name__)

HealthStatus = Literal["ok", "fixed", "error"]


@dataclass
class HealthReport:
    status: HealthStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)


async def run_health_check(store: StateStore, provider: HetznerClient) -> HealthReport:
    """One reconciliation pass. Never raises; failures come back as ``error``."""
    try:
        return await _reconcile(store, provider)
    except Exception as e:
        log.exception("[health] reconciliation failed")
        return HealthReport("error", str(e) or type(e).__name__)


async def _reconcile(store: StateStore, provider: HetznerClient) -> HealthReport:
    state = await store.get_server_state()

    if state.state == LifecycleState.OFFLINE:
        return HealthReport("ok", "Server is offline, no health check needed")

    if not state.vps_id:
        log.warning("[health] state %s but no VPS id; resetting to OFFLINE", state.state.value)
        await _reset(store)
        return HealthReport(
            "fixed",
            f"Inconsistent state ({state.state.value} with no VPS ID) reset to OFFLINE",
            {"previousState": state.state.value},
        )

    server = await provider.get_server(state.vps_id)
    if server is None:
        log.warning("[health] VPS %s not found; resetting to OFFLINE", state.vps_id)
        await _reset(store)
        return HealthReport(
            "fixed",
            f"Orphaned state detected and fixed. VPS {state.vps_id} was deleted externally.",
            {"previousState": state.state.value, "vpsId": state.vps_id},
        )

    if server.status in (POWERED_OFF, DELETING):
        log.warning("[health] VPS %s is %s; resetting to OFFLINE", state.vps_id, server.status)
        if server.status == POWERED_OFF:
            try:
                await provider.delete_server(state.vps_id)
            except Exception as e:
                log.error("[health] failed to delete powered-off VPS %s: %s", state.vps_id, e)
        await _reset(store)
        return HealthReport(
            "fixed",
            f"VPS was {server.status}, state reset to OFFLINE",
            {"vpsStatus": server.status, "vpsId": state.vps_id},
        )

    return HealthReport(
        "ok",
        f"VPS {state.vps_id} is {server.status}",
        {"state": state.state.value, "vpsStatus": server.status},
    )


async def _reset(store: StateStore) -> None:
    # no session settlement here: the VM is already gone, cost is left unsettled
    session = await store.get_current_session()
    if session:
        log.warning("[health] session %s stays open (VM %s vanished outside a stop)", session.id, session.vps_id)
    await store.reset_to_offline()


async def health_check_loop(
    store: StateStore,
    provider: HetznerClient,
    interval: float,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    log.info("[health] reconciler started (every %ss)", interval)
    while True:
        report = await run_health_check(store, provider)
        if report.status == "ok":
            log.debug("[health] %s", report.message)
        else:
            log.info("[health] %s: %s", report.status, report.message)
        await sleep(interval)
