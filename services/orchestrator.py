# services/orchestrator.py
"""VPS lifecycle: start, stop, webhook-driven transitions, console relay.

State machine::

    OFFLINE -> PROVISIONING -> RUNNING <-> IDLE <-> SUSPENDED
                     \\            \\         \\         \\
                      +------------+---------+---------+--> TERMINATING -> OFFLINE

Every ServerState write goes through ``StateStore`` as a narrow partial
update. Nothing here holds a lock; concurrent start/stop calls can interleave
and the provider calls are written to tolerate that (delete-if-exists,
re-query on failure).
"""
from __future__ import annotations

import asyncio
import functools
import logging
import secrets
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Awaitable, Callable

from exceptions import (
    AlreadyOfflineError,
    BlockedCommandError,
    ConflictError,
    ControlError,
    InternalError,
    NotConfiguredError,
    ServerNotRunningError,
    UpstreamError,
    ValidationError,
)
from models.server import ACTIVE_STATES, LifecycleState, ServerState, is_legal_transition
from models.webhooks import (
    BackupCompleteEvent,
    HeartbeatEvent,
    ReadyEvent,
    StateChangeEvent,
    WebhookEvent,
)
from services.state_store import StateStore
from utils.clock import as_utc, isoformat, seconds_since, utcnow
from utils.cloudinit import generate_cloud_init
from utils.config import settings
from utils.cost import calculate_cost, current_month, hourly_rate, region_config
from utils.dns_client import CloudflareDns
from utils.hetzner_client import HetznerClient
from utils.rcon_client import RconResult, send_rcon_command

log = logging.getLogger(__name__)

# verbs that would bypass our own stop / whitelist / sync paths -> where to go instead
BLOCKED_COMMANDS: dict[str, str | None] = {
    "stop": "/api/mc/stop",
    "restart": "/api/mc/stop",
    "shutdown": "/api/mc/stop",
    "whitelist": "/api/mc/whitelist",
    "save-all": "/api/mc/sync",
    "save-off": "/api/mc/sync",
    "save-on": "/api/mc/sync",
    "op": None,
    "deop": None,
    "ban": None,
    "ban-ip": None,
    "pardon": None,
    "pardon-ip": None,
}

IDLE_LIKE = frozenset({LifecycleState.IDLE, LifecycleState.SUSPENDED})

RconSender = Callable[..., Awaitable[RconResult]]


def boundary(op: str):
    """Outermost guard: anything that isn't already a ControlError becomes InternalError."""
    def deco(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except ControlError:
                raise
            except Exception as e:
                log.exception("[%s] unexpected failure", op)
                raise InternalError(str(e) or type(e).__name__) from e
        return wrapper
    return deco


def format_duration(seconds: int) -> str:
    hours, rem = divmod(int(seconds), 3600)
    minutes = rem // 60
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


def _note_transition(source: str, current: LifecycleState, new: LifecycleState) -> None:
    # the VM agent is trusted for these; we only flag edges the lifecycle never takes
    if not is_legal_transition(current, new):
        log.warning("[%s] transition %s -> %s is outside the lifecycle table; applying as reported",
                    source, current.value, new.value)


class LifecycleOrchestrator:
    def __init__(
        self,
        store: StateStore,
        provider: HetznerClient,
        dns: CloudflareDns,
        *,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        rcon_port: int | None = None,
        rcon_timeout: float | None = None,
        grace_period: float | None = None,
        ready_estimate: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rcon: RconSender = send_rcon_command,
    ):
        self.store = store
        self.provider = provider
        self.dns = dns
        self.webhook_url = webhook_url or settings.WEBHOOK_URL
        self.webhook_secret = settings.WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.rcon_port = rcon_port or settings.RCON_PORT
        self.rcon_timeout = rcon_timeout or settings.RCON_TIMEOUT_SECONDS
        self.grace_period = settings.SHUTDOWN_GRACE_SECONDS if grace_period is None else grace_period
        self.ready_estimate = settings.READY_ESTIMATE_SECONDS if ready_estimate is None else ready_estimate
        self._sleep = sleep
        self._rcon = rcon

    # ===================== START =====================================

    @boundary("start")
    async def start(self, region: str) -> dict[str, Any]:
        cfg = region_config(region)
        current = await self.store.get_server_state()
        if current.state != LifecycleState.OFFLINE:
            raise ConflictError(
                f"Server is currently {current.state.value}. Stop the server first.",
                error="server_not_offline",
                currentState=current.state.value,
            )
        if not self.webhook_secret:
            raise NotConfiguredError("WEBHOOK_SECRET is not set")

        now = utcnow()
        rcon_password = secrets.token_urlsafe(24)
        await self.store.set_state(
            LifecycleState.PROVISIONING,
            region=region,
            server_type=cfg.server_type,
            started_at=now,
            vps_id=None,
            vps_ip=None,
            player_count=0,
            idle_since=None,
            rcon_password=rcon_password,
        )

        user_data = generate_cloud_init(
            region,
            webhook_url=self.webhook_url,
            webhook_secret=self.webhook_secret,
            rcon_password=rcon_password,
            rcon_port=self.rcon_port,
        )
        try:
            server = await self.provider.create_server(region, user_data)
        except Exception as e:
            # never leave PROVISIONING behind without a VM
            log.error("[start] provisioning in %s failed: %s; rolling back to OFFLINE", region, e)
            await self.store.set_state(
                LifecycleState.OFFLINE, region=None, server_type=None, started_at=None, rcon_password=None
            )
            if isinstance(e, NotConfiguredError):
                raise
            detail = e.error_description if isinstance(e, ControlError) else str(e)
            raise UpstreamError(detail or type(e).__name__, error="provisioning_failed") from e

        await self.store.update_server_state(vps_id=server.id, vps_ip=server.ip or None)
        session_id = await self.store.create_session(region, server.server_type, server.id, started_at=now)
        log.info("[start] server %s in %s (%s), session %s", server.id, region, server.server_type, session_id)

        return {
            "status": "provisioning",
            "region": region,
            "serverType": server.server_type,
            "estimatedReadyTime": isoformat(now + timedelta(seconds=self.ready_estimate)),
            "serverId": server.id,
            "hourlyRate": cfg.hourly_rate,
            "sessionId": session_id,
        }

    # ===================== STOP ======================================

    @boundary("stop")
    async def stop(self, force: bool = False) -> dict[str, Any]:
        current = await self.store.get_server_state()
        if current.state == LifecycleState.OFFLINE:
            raise AlreadyOfflineError("Server is already offline")
        if current.state == LifecycleState.TERMINATING:
            raise ConflictError(
                "Server is already shutting down", error="already_stopping", currentState=current.state.value
            )

        vps_id = current.vps_id
        if not vps_id:
            log.warning("[stop] state %s without a VPS id; resetting to OFFLINE", current.state.value)
            await self.store.reset_to_offline()
            return {"status": "offline", "message": "Server state reset (no VPS was running)"}

        await self.store.set_state(LifecycleState.TERMINATING)
        log.info("[stop] stopping %s (force=%s)", vps_id, force)

        # accounting happens before the delete so a failed delete can't lose it
        try:
            session_id = await self._settle_session(current)
        except Exception as e:
            log.error("[stop] settling the session for %s failed, reverting to %s: %s", vps_id, current.state.value, e)
            await self.store.set_state(current.state)
            raise

        if not force:
            try:
                await self.provider.shutdown_server(vps_id)
                await self._sleep(self.grace_period)
            except Exception as e:
                log.warning("[stop] graceful shutdown of %s failed, deleting anyway: %s", vps_id, e)

        try:
            await self.provider.delete_server(vps_id)
        except Exception as e:
            if await self._vm_still_exists(vps_id):
                log.error("[stop] delete of %s failed, reverting to %s: %s", vps_id, current.state.value, e)
                await self.store.set_state(current.state)
                detail = e.error_description if isinstance(e, ControlError) else str(e)
                raise UpstreamError(detail or type(e).__name__, error="delete_failed") from e
            log.info("[stop] %s already gone", vps_id)

        await self.store.reset_to_offline()
        return {
            "status": "offline",
            "message": "Server force stopped" if force else "Server stopped gracefully",
            "sessionEnded": session_id,
        }

    async def _settle_session(self, current: ServerState) -> int | None:
        session = await self.store.get_current_session()
        if session is None:
            return None
        region = current.region or session.region
        started_at = as_utc(current.started_at) or as_utc(session.started_at)
        now = utcnow()
        duration = max(0, int((now - started_at).total_seconds()))
        cost = calculate_cost(duration, region)

        await self.store.settle_session(
            session.id, duration, cost, ended_at=now, month=current_month(now), region=region
        )
        log.info("[stop] session %s closed: %ss, $%.4f (%s)", session.id, duration, cost, region)
        return session.id

    async def _vm_still_exists(self, vps_id: str) -> bool:
        try:
            return await self.provider.get_server(vps_id) is not None
        except Exception as e:
            # can't prove it's gone; keep the state so the stop can be retried
            log.warning("[stop] could not re-query %s: %s", vps_id, e)
            return True

    # ===================== WEBHOOKS ==================================

    @boundary("webhook")
    async def handle_webhook(self, event: WebhookEvent) -> dict[str, Any]:
        if isinstance(event, ReadyEvent):
            return await self._on_ready(event)
        if isinstance(event, HeartbeatEvent):
            return await self._on_heartbeat(event)
        if isinstance(event, StateChangeEvent):
            return await self._on_state_change(event)
        if isinstance(event, BackupCompleteEvent):
            return await self._on_backup_complete(event)
        raise ValidationError(f"Unknown webhook type {type(event).__name__}")

    async def _on_ready(self, event: ReadyEvent) -> dict[str, Any]:
        if not event.server_id or not event.ip:
            raise ValidationError("Missing serverId or ip", error="missing_fields")
        current = await self.store.get_server_state()
        log.info("[webhook] ready: %s at %s (%s)", event.server_id, event.ip, event.region)
        if current.vps_id and current.vps_id != event.server_id:
            log.warning("[webhook] ready from %s but %s is recorded", event.server_id, current.vps_id)
        _note_transition("webhook", current.state, LifecycleState.RUNNING)

        # DNS first: if it fails we stay PROVISIONING
        await self.dns.update_record(event.ip)

        now = utcnow()
        await self.store.set_state(
            LifecycleState.RUNNING,
            vps_id=event.server_id,
            vps_ip=event.ip,
            dns_updated_at=now,
            last_heartbeat=now,
        )
        return {"success": True, "message": "Server registered and DNS updated"}

    async def _on_heartbeat(self, event: HeartbeatEvent) -> dict[str, Any]:
        current = await self.store.get_server_state()
        now = utcnow()
        updates: dict[str, Any] = {"last_heartbeat": now}

        if event.players is not None:
            updates["player_count"] = event.players
            session = await self.store.get_current_session()
            if session:
                await self.store.raise_session_max_players(session.id, event.players)

        new_state = current.state
        if event.state and event.state != current.state:
            _note_transition("webhook", current.state, event.state)
            new_state = updates["state"] = event.state
            if event.state in IDLE_LIKE:
                updates["idle_since"] = now
            elif event.state == LifecycleState.RUNNING:
                updates["idle_since"] = None

        await self.store.update_server_state(**updates)
        log.debug("[webhook] heartbeat state=%s players=%s idle=%ss",
                  new_state.value, event.players, event.idle_seconds)
        return {"success": True, "currentState": new_state.value}

    async def _on_state_change(self, event: StateChangeEvent) -> dict[str, Any]:
        current = await self.store.get_server_state()
        log.info("[webhook] state change %s -> %s at %s", current.state.value, event.state.value, event.timestamp)
        _note_transition("webhook", current.state, event.state)

        now = utcnow()
        updates: dict[str, Any] = {"state": event.state, "last_heartbeat": now}
        if event.state in IDLE_LIKE:
            updates["idle_since"] = as_utc(event.timestamp) or now
        elif event.state == LifecycleState.RUNNING:
            updates["idle_since"] = None
        await self.store.update_server_state(**updates)
        return {"success": True, "state": event.state.value}

    async def _on_backup_complete(self, event: BackupCompleteEvent) -> dict[str, Any]:
        session = await self.store.get_current_session()
        backup_id = await self.store.record_backup(event.size_bytes, session.id if session else None, "auto")
        log.info("[webhook] backup %s complete: %s bytes", backup_id, event.size_bytes)
        return {"success": True, "backupId": backup_id, "timestamp": isoformat(event.timestamp)}

    # ===================== CONSOLE ===================================

    @boundary("command")
    async def send_command(self, command: str) -> dict[str, Any]:
        cmd = (command or "").strip()
        if not cmd:
            raise ValidationError("Command must be a non-empty string", error="invalid_command")
        # "/minecraft:stop" is the same verb as "stop"
        verb = cmd.split()[0].lower().lstrip("/").split(":", 1)[-1]
        if verb in BLOCKED_COMMANDS:
            suggestion = BLOCKED_COMMANDS[verb]
            hint = f" Use {suggestion} instead." if suggestion else ""
            raise BlockedCommandError(f"Command '{verb}' is not allowed via the API.{hint}", suggestion=suggestion)

        current = await self._require_active("send commands")
        out = await self._rcon_call(current, cmd)
        return {"success": True, "command": cmd, "response": out}

    @boundary("sync")
    async def sync(self) -> dict[str, Any]:
        """Flush the world to disk and log a manual backup for the active session."""
        current = await self._require_active("sync")
        out = await self._rcon_call(current, "save-all")
        session = await self.store.get_current_session()
        backup_id = await self.store.record_backup(None, session.id if session else None, "manual")
        return {"success": True, "backupId": backup_id, "sessionId": session.id if session else None, "response": out}

    async def relay_console(self, command: str) -> str | None:
        """Best-effort console relay for collaborators; None when nothing was sent."""
        current = await self.store.get_server_state()
        if current.state not in ACTIVE_STATES or not current.vps_ip or not current.rcon_password:
            return None
        try:
            return await self._rcon_call(current, command)
        except UpstreamError as e:
            log.warning("[rcon] relay of %r failed: %s", command, e.error_description)
            return None

    async def _require_active(self, what: str) -> ServerState:
        current = await self.store.get_server_state()
        if current.state not in ACTIVE_STATES:
            raise ServerNotRunningError(
                f"Cannot {what} when server is {current.state.value}", currentState=current.state.value
            )
        return current

    async def _rcon_call(self, current: ServerState, command: str) -> str:
        if not current.vps_ip:
            raise NotConfiguredError("Server IP not available", error="no_server_ip")
        if not current.rcon_password:
            raise NotConfiguredError("RCON password not available", error="no_rcon_password")
        result = await self._rcon(
            current.vps_ip, self.rcon_port, current.rcon_password, command, timeout=self.rcon_timeout
        )
        if not result.success:
            raise UpstreamError(result.error or "RCON failed", error="rcon_failed")
        return result.response or ""

    # ===================== READ SIDE =================================

    @boundary("status")
    async def status(self) -> dict[str, Any]:
        current = await self.store.get_server_state()
        month = await self.store.get_monthly_summary(current_month())
        last_backup = await self.store.last_backup()
        now = utcnow()

        uptime = None
        session_cost = 0.0
        rate = 0.0
        if current.started_at and current.state != LifecycleState.OFFLINE:
            uptime = seconds_since(current.started_at, now)
            if current.region:
                rate = hourly_rate(current.region)
                session_cost = calculate_cost(uptime, current.region)

        idle = seconds_since(current.idle_since, now)
        ttl = None
        if idle is not None and current.state == LifecycleState.IDLE:
            ttl = max(0, settings.IDLE_TIMEOUT_SECONDS - idle)
        elif idle is not None and current.state == LifecycleState.SUSPENDED:
            ttl = max(0, settings.SUSPEND_TIMEOUT_SECONDS - idle)

        metrics = None
        if current.vps_id and current.state in ACTIVE_STATES:
            m = await self.provider.get_metrics(current.vps_id)
            metrics = asdict(m) if m else None

        return {
            "state": current.state.value,
            "region": current.region,
            "serverType": current.server_type,
            "serverId": current.vps_id,
            "serverIp": current.vps_ip,
            "players": {"online": current.player_count or 0, "max": settings.MC_MAX_PLAYERS},
            "uptime": uptime,
            "idleTime": idle,
            "ttl": ttl,
            "lastHeartbeat": isoformat(current.last_heartbeat),
            "lastWorldSync": isoformat(last_backup.timestamp) if last_backup else None,
            "metrics": metrics,
            "costs": {
                "currentSession": session_cost,
                "hourlyRate": rate,
                "thisMonth": month.total_cost if month else 0,
                "thisMonthByRegion": {
                    "eu": month.eu_cost if month else 0,
                    "us": month.us_cost if month else 0,
                },
            },
        }

    async def public_status(self) -> dict[str, Any]:
        state = LifecycleState.OFFLINE.value
        online = 0
        try:
            current = await self.store.get_server_state()
            state, online = current.state.value, current.player_count or 0
        except Exception:
            log.exception("[status] public status unavailable; reporting OFFLINE")
        return {
            "state": state,
            "players": {"online": online, "max": settings.MC_MAX_PLAYERS},
            "version": settings.MC_VERSION,
        }

    @boundary("history")
    async def history(self, limit: int = 50, offset: int = 0, months: int = 12) -> dict[str, Any]:
        limit = max(1, min(limit, 100))
        offset = max(0, offset)
        months = max(1, min(months, 24))

        sessions = await self.store.session_history(limit, offset)
        summaries = await self.store.recent_monthly_summaries(months)
        backups = await self.store.recent_backups(20)

        this_key = current_month()
        this = next((m for m in summaries if m.month == this_key), None)

        def _summary(m) -> dict[str, Any]:
            return {
                "month": m.month,
                "totalHours": m.total_hours,
                "totalCost": m.total_cost,
                "sessionCount": m.session_count,
                "byRegion": {
                    "eu": {"hours": m.eu_hours, "cost": m.eu_cost},
                    "us": {"hours": m.us_hours, "cost": m.us_cost},
                },
            }

        this_month = _summary(this) if this else {
            "month": this_key, "totalHours": 0, "totalCost": 0, "sessionCount": 0,
            "byRegion": {"eu": {"hours": 0, "cost": 0}, "us": {"hours": 0, "cost": 0}},
        }

        return {
            "sessions": [
                {
                    "id": s.id,
                    "startedAt": isoformat(s.started_at),
                    "endedAt": isoformat(s.ended_at),
                    "durationSeconds": s.duration_seconds,
                    "durationFormatted": format_duration(s.duration_seconds) if s.duration_seconds else None,
                    "costUsd": s.cost_usd,
                    "maxPlayers": s.max_players,
                    "region": s.region,
                    "serverType": s.server_type,
                }
                for s in sessions
            ],
            "thisMonth": this_month,
            "monthlySummaries": [_summary(m) for m in summaries],
            "backups": [
                {
                    "id": b.id,
                    "timestamp": isoformat(b.timestamp),
                    "sizeBytes": b.size_bytes,
                    "sizeMb": round(b.size_bytes / 1024 / 1024, 2) if b.size_bytes else None,
                    "triggeredBy": b.triggered_by,
                }
                for b in backups
            ],
            "totals": {
                "allTime": {
                    "hours": sum(m.total_hours for m in summaries),
                    "cost": sum(m.total_cost for m in summaries),
                    "sessions": sum(m.session_count for m in summaries),
                }
            },
            "pagination": {"limit": limit, "offset": offset, "hasMore": len(sessions) == limit},
        }
