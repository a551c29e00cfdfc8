from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base

SERVER_STATE_ID = 1


class LifecycleState(str, enum.Enum):
    OFFLINE = "OFFLINE"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    IDLE = "IDLE"
    SUSPENDED = "SUSPENDED"
    TERMINATING = "TERMINATING"


ACTIVE_STATES = frozenset({LifecycleState.RUNNING, LifecycleState.IDLE})

# forward edges of the lifecycle; TERMINATING is reachable from anything but OFFLINE
LEGAL_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.OFFLINE: frozenset({LifecycleState.PROVISIONING}),
    LifecycleState.PROVISIONING: frozenset({LifecycleState.RUNNING, LifecycleState.TERMINATING, LifecycleState.OFFLINE}),
    LifecycleState.RUNNING: frozenset({LifecycleState.IDLE, LifecycleState.TERMINATING}),
    LifecycleState.IDLE: frozenset({LifecycleState.RUNNING, LifecycleState.SUSPENDED, LifecycleState.TERMINATING}),
    LifecycleState.SUSPENDED: frozenset({LifecycleState.IDLE, LifecycleState.RUNNING, LifecycleState.TERMINATING}),
    LifecycleState.TERMINATING: frozenset({LifecycleState.OFFLINE}),
}


def is_legal_transition(current: LifecycleState, new: LifecycleState) -> bool:
    return current == new or new in LEGAL_TRANSITIONS[current]


class ServerState(Base):
    """The one lifecycle row (id 1); updated in place, never deleted."""

    __tablename__ = "server_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    state: Mapped[LifecycleState] = mapped_column(
        Enum(LifecycleState, name="lifecycle_state", native_enum=False, length=16),
        default=LifecycleState.OFFLINE,
    )
    vps_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vps_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    region: Mapped[str | None] = mapped_column(String(8), nullable=True)
    server_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dns_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    player_count: Mapped[int] = mapped_column(Integer, default=0)
    idle_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # store secrets elsewhere ideally; the VM is ephemeral and so is this one
    rcon_password: Mapped[str | None] = mapped_column(String(128), nullable=True)
