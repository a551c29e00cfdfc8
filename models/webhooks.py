"""Inbound webhook bodies, one closed model per kind.

The VM agent posts camelCase JSON; unknown keys are ignored, wrong types are
rejected before anything reaches the orchestrator.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from models.server import LifecycleState


class _Webhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class ReadyEvent(_Webhook):
    kind: Literal["ready"] = "ready"
    server_id: str = Field(alias="serverId", min_length=1)
    ip: str = Field(min_length=1)
    region: str | None = None


class HeartbeatEvent(_Webhook):
    kind: Literal["heartbeat"] = "heartbeat"
    state: LifecycleState | None = None
    players: int | None = Field(default=None, ge=0)
    idle_seconds: int | None = Field(default=None, alias="idleSeconds", ge=0)
    last_backup: str | None = Field(default=None, alias="lastBackup")


class StateChangeEvent(_Webhook):
    kind: Literal["state-change"] = "state-change"
    state: LifecycleState
    timestamp: datetime | None = None


class BackupCompleteEvent(_Webhook):
    kind: Literal["backup-complete"] = "backup-complete"
    timestamp: datetime | None = None
    size_bytes: int | None = Field(default=None, alias="sizeBytes", ge=0)


WebhookEvent = Annotated[
    Union[ReadyEvent, HeartbeatEvent, StateChangeEvent, BackupCompleteEvent],
    Field(discriminator="kind"),
]
