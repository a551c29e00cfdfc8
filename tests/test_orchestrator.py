from datetime import datetime, timezone

import pytest

from exceptions import (
    AlreadyOfflineError,
    BlockedCommandError,
    ConflictError,
    InternalError,
    NotConfiguredError,
    ServerNotRunningError,
    UpstreamError,
    ValidationError,
)
from models.server import LifecycleState
from models.webhooks import BackupCompleteEvent, HeartbeatEvent, ReadyEvent, StateChangeEvent
from services.orchestrator import format_duration
from utils.clock import as_utc
from utils.rcon_client import RconResult

pytestmark = pytest.mark.asyncio

T0 = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


async def _running(orchestrator, region="eu"):
    """Start and deliver the ready webhook; returns the provider server id."""
    started = await orchestrator.start(region)
    await orchestrator.handle_webhook(ReadyEvent(serverId=started["serverId"], ip="203.0.113.7", region=region))
    return started["serverId"]


# ---------- start

async def test_start_provisions(orchestrator, store, provider):
    out = await orchestrator.start("eu")
    assert out["status"] == "provisioning"
    assert out["serverType"] == "cx33"
    assert out["hourlyRate"] == 0.0085
    assert out["estimatedReadyTime"].startswith("2026-03-14T12:03:00")

    state = await store.get_server_state()
    assert state.state == LifecycleState.PROVISIONING
    assert state.vps_id == out["serverId"]
    assert state.region == "eu"
    assert as_utc(state.started_at) == T0
    assert state.rcon_password

    session = await store.get_current_session()
    assert session.id == out["sessionId"]
    assert session.vps_id == out["serverId"]

    # the VM learns how to call back and the rcon secret it must use
    assert "https://control.test/api/mc/webhook/ready" in provider.user_data
    assert "hook-secret" in provider.user_data
    assert state.rcon_password in provider.user_data


async def test_start_rejects_unknown_region(orchestrator, provider):
    with pytest.raises(ValidationError):
        await orchestrator.start("ap")
    assert provider.calls == []


async def test_start_conflicts_when_not_offline(orchestrator, store, provider):
    await store.set_state(LifecycleState.RUNNING, vps_id="7")
    with pytest.raises(ConflictError) as ei:
        await orchestrator.start("eu")
    assert ei.value.extra["currentState"] == "RUNNING"
    assert provider.calls == []


async def test_start_without_webhook_secret(store, provider, dns, clock):
    from services.orchestrator import LifecycleOrchestrator

    orch = LifecycleOrchestrator(store, provider, dns, webhook_url="https://x", webhook_secret="")
    with pytest.raises(NotConfiguredError):
        await orch.start("eu")
    assert (await store.get_server_state()).state == LifecycleState.OFFLINE


async def test_start_failure_rolls_back(orchestrator, store, provider, upstream_down):
    provider.fail_create = upstream_down
    with pytest.raises(UpstreamError) as ei:
        await orchestrator.start("us")
    assert ei.value.error == "provisioning_failed"

    state = await store.get_server_state()
    assert state.state == LifecycleState.OFFLINE
    assert state.region is None and state.started_at is None
    assert await store.get_current_session() is None


# ---------- ready

async def test_ready_updates_dns_then_runs(orchestrator, store, dns):
    started = await orchestrator.start("eu")
    out = await orchestrator.handle_webhook(ReadyEvent(serverId=started["serverId"], ip="198.51.100.20"))
    assert out["success"] is True
    assert dns.ips == ["198.51.100.20"]

    state = await store.get_server_state()
    assert state.state == LifecycleState.RUNNING
    assert state.vps_ip == "198.51.100.20"
    assert state.dns_updated_at is not None


async def test_ready_with_dns_failure_stays_provisioning(orchestrator, store, dns):
    started = await orchestrator.start("eu")
    dns.fail = UpstreamError("Cloudflare API error: bad token")
    with pytest.raises(UpstreamError):
        await orchestrator.handle_webhook(ReadyEvent(serverId=started["serverId"], ip="198.51.100.20"))
    state = await store.get_server_state()
    assert state.state == LifecycleState.PROVISIONING
    assert state.dns_updated_at is None


# ---------- heartbeat / state change

async def test_heartbeat_tracks_players_and_peak(orchestrator, store, clock):
    await _running(orchestrator)
    for n in (3, 7, 2):
        clock.advance(60)
        out = await orchestrator.handle_webhook(HeartbeatEvent(players=n))
        assert out["currentState"] == "RUNNING"

    state = await store.get_server_state()
    assert state.player_count == 2
    assert as_utc(state.last_heartbeat) == clock.now
    assert (await store.get_current_session()).max_players == 7


async def test_heartbeat_idle_since(orchestrator, store, clock):
    await _running(orchestrator)

    clock.advance(120)
    await orchestrator.handle_webhook(HeartbeatEvent(state="IDLE", players=0))
    idle_at = clock.now
    state = await store.get_server_state()
    assert state.state == LifecycleState.IDLE
    assert as_utc(state.idle_since) == idle_at

    # repeating IDLE keeps the first mark
    clock.advance(60)
    await orchestrator.handle_webhook(HeartbeatEvent(state="IDLE", players=0))
    assert as_utc((await store.get_server_state()).idle_since) == idle_at

    clock.advance(60)
    await orchestrator.handle_webhook(HeartbeatEvent(state="RUNNING", players=1))
    state = await store.get_server_state()
    assert state.state == LifecycleState.RUNNING
    assert state.idle_since is None


async def test_heartbeat_into_suspended_restamps_idle_since(orchestrator, store, clock):
    await _running(orchestrator)
    await orchestrator.handle_webhook(HeartbeatEvent(state="IDLE", players=0))

    clock.advance(900)
    out = await orchestrator.handle_webhook(HeartbeatEvent(state="SUSPENDED", players=0))
    assert out["currentState"] == "SUSPENDED"
    state = await store.get_server_state()
    assert state.state == LifecycleState.SUSPENDED
    assert as_utc(state.idle_since) == clock.now


async def test_heartbeat_without_fields_only_refreshes(orchestrator, store, clock):
    await _running(orchestrator)
    await store.update_server_state(player_count=4)
    clock.advance(30)
    await orchestrator.handle_webhook(HeartbeatEvent())
    state = await store.get_server_state()
    assert state.player_count == 4
    assert as_utc(state.last_heartbeat) == clock.now


async def test_state_change_uses_reported_timestamp(orchestrator, store):
    await _running(orchestrator)
    stamp = datetime(2026, 3, 14, 12, 30, tzinfo=timezone.utc)
    await orchestrator.handle_webhook(StateChangeEvent(state="SUSPENDED", timestamp=stamp))
    state = await store.get_server_state()
    assert state.state == LifecycleState.SUSPENDED
    assert as_utc(state.idle_since) == stamp


async def test_backup_complete_records_auto_backup(orchestrator, store):
    await _running(orchestrator)
    out = await orchestrator.handle_webhook(BackupCompleteEvent(sizeBytes=5 * 1024 * 1024))
    backup = await store.last_backup()
    assert out["backupId"] == backup.id
    assert backup.triggered_by == "auto"
    assert backup.size_bytes == 5 * 1024 * 1024
    assert backup.session_id == (await store.get_current_session()).id


# ---------- stop

async def test_stop_when_offline(orchestrator, provider):
    with pytest.raises(AlreadyOfflineError):
        await orchestrator.stop()
    assert provider.calls == []


async def test_stop_when_terminating(orchestrator, store, provider):
    await store.set_state(LifecycleState.TERMINATING, vps_id="7")
    with pytest.raises(ConflictError) as ei:
        await orchestrator.stop()
    assert ei.value.error == "already_stopping"
    assert provider.calls == []


async def test_stop_without_vps_resets(orchestrator, store, provider):
    await store.set_state(LifecycleState.PROVISIONING, region="eu")
    out = await orchestrator.stop()
    assert out["status"] == "offline"
    assert (await store.get_server_state()).state == LifecycleState.OFFLINE
    assert provider.calls == []


async def test_graceful_stop_settles_cost(orchestrator, store, provider, sleeper, clock):
    vps_id = await _running(orchestrator, "eu")
    session = await store.get_current_session()
    clock.advance(3600)

    out = await orchestrator.stop()
    assert out["sessionEnded"] == session.id
    assert out["message"] == "Server stopped gracefully"
    assert provider.names()[-2:] == ["shutdown", "delete"]
    assert sleeper.waits == [30]
    assert vps_id not in provider.servers

    [closed] = await store.session_history()
    assert closed.ended_at is not None
    assert closed.duration_seconds == 3600
    assert closed.cost_usd == 0.0085

    month = await store.get_monthly_summary("2026-03")
    assert month.session_count == 1
    assert month.eu_hours == pytest.approx(1.0)
    assert month.total_cost == pytest.approx(0.0085)
    assert (await store.last_backup()).triggered_by == "shutdown"

    state = await store.get_server_state()
    assert state.state == LifecycleState.OFFLINE
    assert state.vps_id is None and state.vps_ip is None and state.player_count == 0


async def test_force_stop_skips_shutdown(orchestrator, provider, sleeper):
    await _running(orchestrator)
    out = await orchestrator.stop(force=True)
    assert out["message"] == "Server force stopped"
    assert "shutdown" not in provider.names()
    assert sleeper.waits == []


async def test_shutdown_failure_still_deletes(orchestrator, store, provider, upstream_down):
    await _running(orchestrator)
    provider.fail_shutdown = upstream_down
    await orchestrator.stop()
    assert provider.names()[-1] == "delete"
    assert (await store.get_server_state()).state == LifecycleState.OFFLINE


async def test_delete_failure_with_vm_alive_reverts(orchestrator, store, provider, upstream_down):
    vps_id = await _running(orchestrator)
    provider.fail_delete = upstream_down
    with pytest.raises(UpstreamError) as ei:
        await orchestrator.stop(force=True)
    assert ei.value.error == "delete_failed"

    state = await store.get_server_state()
    assert state.state == LifecycleState.RUNNING
    assert state.vps_id == vps_id

    # the session was settled before the delete; a retry must not book it twice
    provider.fail_delete = None
    out = await orchestrator.stop(force=True)
    assert out["status"] == "offline"
    assert out["sessionEnded"] is None
    assert (await store.get_monthly_summary("2026-03")).session_count == 1
    backups = await store.recent_backups(20)
    assert [b.triggered_by for b in backups] == ["shutdown"]
    assert (await store.get_server_state()).state == LifecycleState.OFFLINE


async def test_settlement_failure_reverts_so_stop_can_retry(orchestrator, store, provider, monkeypatch):
    vps_id = await _running(orchestrator)
    settle = store.settle_session

    async def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "settle_session", broken)
    with pytest.raises(InternalError):
        await orchestrator.stop(force=True)

    state = await store.get_server_state()
    assert state.state == LifecycleState.RUNNING
    assert state.vps_id == vps_id
    assert await store.get_current_session() is not None
    assert "delete" not in provider.names()

    monkeypatch.setattr(store, "settle_session", settle)
    out = await orchestrator.stop(force=True)
    assert out["sessionEnded"] is not None
    assert (await store.get_monthly_summary("2026-03")).session_count == 1
    assert (await store.get_server_state()).state == LifecycleState.OFFLINE


async def test_delete_failure_with_vm_gone_completes(orchestrator, store, provider, upstream_down):
    vps_id = await _running(orchestrator)
    provider.fail_delete = upstream_down
    provider.servers.pop(vps_id)
    out = await orchestrator.stop(force=True)
    assert out["status"] == "offline"
    assert (await store.get_server_state()).state == LifecycleState.OFFLINE


async def test_delete_failure_with_unknown_vm_reverts(orchestrator, store, provider, upstream_down):
    await _running(orchestrator)
    provider.fail_delete = upstream_down
    provider.fail_get = upstream_down
    with pytest.raises(UpstreamError):
        await orchestrator.stop(force=True)
    assert (await store.get_server_state()).state == LifecycleState.RUNNING


# ---------- console

async def test_blocked_commands(orchestrator, rcon):
    await _running(orchestrator)
    for cmd, suggestion in (
        ("stop", "/api/mc/stop"),
        ("/whitelist add bob", "/api/mc/whitelist"),
        ("op bob", None),
        ("minecraft:stop", "/api/mc/stop"),
        ("/minecraft:op bob", None),
        ("Minecraft:Whitelist add bob", "/api/mc/whitelist"),
    ):
        with pytest.raises(BlockedCommandError) as ei:
            await orchestrator.send_command(cmd)
        assert ei.value.extra.get("suggestion") == suggestion
    assert rcon.calls == []


async def test_command_requires_running_server(orchestrator, store):
    await store.set_state(LifecycleState.PROVISIONING, vps_id="7")
    with pytest.raises(ServerNotRunningError):
        await orchestrator.send_command("list")


async def test_command_without_rcon_password(orchestrator, store):
    await store.set_state(LifecycleState.RUNNING, vps_id="7", vps_ip="203.0.113.7", rcon_password=None)
    with pytest.raises(NotConfiguredError) as ei:
        await orchestrator.send_command("list")
    assert ei.value.error == "no_rcon_password"


async def test_command_relays_through_rcon(orchestrator, store, rcon):
    await _running(orchestrator)
    rcon.result = RconResult(success=True, response="There are 0 of a max of 20 players online")
    out = await orchestrator.send_command("  list ")
    assert out == {"success": True, "command": "list", "response": rcon.result.response}
    host, port, password, command = rcon.calls[0]
    assert host == "203.0.113.7"
    assert port == 25575
    assert password == (await store.get_server_state()).rcon_password
    assert command == "list"


async def test_command_rcon_failure(orchestrator, rcon):
    await _running(orchestrator)
    rcon.result = RconResult(success=False, error="RCON connection failed: refused")
    with pytest.raises(UpstreamError) as ei:
        await orchestrator.send_command("list")
    assert ei.value.error == "rcon_failed"


async def test_sync_saves_and_records_manual_backup(orchestrator, store, rcon):
    await _running(orchestrator)
    out = await orchestrator.sync()
    assert rcon.calls[-1][3] == "save-all"
    backup = await store.last_backup()
    assert backup.id == out["backupId"]
    assert backup.triggered_by == "manual"


# ---------- read side

async def test_status_reports_running_costs(orchestrator, clock):
    await _running(orchestrator, "us")
    clock.advance(1800)
    out = await orchestrator.status()
    assert out["state"] == "RUNNING"
    assert out["uptime"] == 1800
    assert out["costs"]["currentSession"] == 0.014
    assert out["costs"]["hourlyRate"] == 0.028
    assert out["players"]["online"] == 0


async def test_status_idle_ttl(orchestrator, clock):
    await _running(orchestrator)
    await orchestrator.handle_webhook(HeartbeatEvent(state="IDLE"))
    clock.advance(300)
    out = await orchestrator.status()
    assert out["idleTime"] == 300
    assert out["ttl"] == 600


async def test_public_status_hides_errors(orchestrator, store, monkeypatch):
    async def broken():
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "get_server_state", broken)
    out = await orchestrator.public_status()
    assert out["state"] == "OFFLINE"
    assert out["players"]["online"] == 0


async def test_history_after_one_session(orchestrator, clock):
    await _running(orchestrator)
    clock.advance(2 * 3600 + 15 * 60)
    await orchestrator.stop(force=True)

    out = await orchestrator.history(limit=500)
    assert out["pagination"]["limit"] == 100
    [session] = out["sessions"]
    assert session["durationFormatted"] == "2h 15m"
    assert session["region"] == "eu"
    assert out["totals"]["allTime"]["sessions"] == 1
    assert out["backups"][0]["triggeredBy"] == "shutdown"


def test_format_duration():
    assert format_duration(59) == "0m"
    assert format_duration(45 * 60) == "45m"
    assert format_duration(3 * 3600 + 60) == "3h 1m"
