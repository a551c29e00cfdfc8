from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import get_orchestrator, require_webhook
from models.webhooks import BackupCompleteEvent, HeartbeatEvent, ReadyEvent, StateChangeEvent
from services.orchestrator import LifecycleOrchestrator

# shared-secret auth, separate from the admin token
router = APIRouter(prefix="/api/mc/webhook", tags=["webhook"], dependencies=[Depends(require_webhook)])


@router.post("/ready")
async def ready(event: ReadyEvent, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.handle_webhook(event)


@router.post("/heartbeat")
async def heartbeat(event: HeartbeatEvent, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.handle_webhook(event)


@router.post("/state-change")
async def state_change(event: StateChangeEvent, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.handle_webhook(event)


@router.post("/backup-complete")
async def backup_complete(event: BackupCompleteEvent, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return await orch.handle_webhook(event)
