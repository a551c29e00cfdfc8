from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query

from api.deps import get_orchestrator, get_whitelist, require_admin
from api.schemas import CommandRequest, StartRequest, StopRequest, WhitelistRequest
from services.orchestrator import LifecycleOrchestrator
from services.whitelist import WhitelistService

router = APIRouter(prefix="/api/mc", tags=["mc"])


@router.get("/status/public")
async def public_status(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.public_status()


@router.get("/status", dependencies=[Depends(require_admin)])
async def status(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.status()


@router.post("/start", dependencies=[Depends(require_admin)])
async def start(body: StartRequest, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.start(body.region)


@router.post("/stop", dependencies=[Depends(require_admin)])
async def stop(
    body: StopRequest | None = Body(default=None),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    # empty body is fine: graceful stop
    return await orch.stop(force=body.force if body else False)


@router.post("/command", dependencies=[Depends(require_admin)])
async def command(body: CommandRequest, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.send_command(body.command)


@router.post("/sync", dependencies=[Depends(require_admin)])
async def sync(orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.sync()


@router.get("/history", dependencies=[Depends(require_admin)])
async def history(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    months: int = Query(12, ge=1),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    return await orch.history(limit=limit, offset=offset, months=months)


@router.get("/whitelist", dependencies=[Depends(require_admin)])
async def whitelist(wl: WhitelistService = Depends(get_whitelist)):
    return await wl.list_entries()


@router.post("/whitelist")
async def whitelist_change(
    body: WhitelistRequest,
    admin: str = Depends(require_admin),
    wl: WhitelistService = Depends(get_whitelist),
):
    if body.action == "add":
        return await wl.add(body.username, added_by=admin)
    return await wl.remove(body.username)
