# services/state_store.py
"""Durable lifecycle state plus session / backup / cost ledgers.

Every write is a single statement against the named columns only, so two
request handlers touching different ServerState fields never clobber each
other. No transaction spans a provider API call.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.history import BACKUP_TRIGGERS, Backup, GameSession, MonthlySummary
from models.server import SERVER_STATE_ID, LifecycleState, ServerState
from models.whitelist import WhitelistEntry
from utils.clock import utcnow
from utils.cost import REGIONS

log = logging.getLogger(__name__)

_MUTABLE_FIELDS = frozenset({
    "state", "vps_id", "vps_ip", "region", "server_type", "started_at",
    "last_heartbeat", "dns_updated_at", "player_count", "idle_since", "rcon_password",
})

# the one field-clearing contract shared by Stop and the reconciler
OFFLINE_RESET: dict[str, Any] = {
    "vps_id": None,
    "vps_ip": None,
    "region": None,
    "server_type": None,
    "started_at": None,
    "idle_since": None,
    "player_count": 0,
}


class StateStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._sessions = session_maker

    # ---- server state ---------------------------------------------------

    async def ensure_server_state(self) -> None:
        async with self._sessions() as s:
            if await s.get(ServerState, SERVER_STATE_ID) is None:
                s.add(ServerState(id=SERVER_STATE_ID, state=LifecycleState.OFFLINE, player_count=0))
                try:
                    await s.commit()
                    log.info("[store] created initial server_state row")
                except IntegrityError:
                    # another worker won the race
                    await s.rollback()

    async def get_server_state(self) -> ServerState:
        async with self._sessions() as s:
            row = await s.get(ServerState, SERVER_STATE_ID)
        if row is None:
            raise RuntimeError("Server state row not found - database may not be initialized")
        return row

    async def update_server_state(self, **fields: Any) -> None:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"not a server_state field: {', '.join(sorted(unknown))}")
        if not fields:
            return
        async with self._sessions() as s:
            await s.execute(
                update(ServerState).where(ServerState.id == SERVER_STATE_ID).values(**fields)
            )
            await s.commit()

    async def set_state(self, state: LifecycleState, **fields: Any) -> None:
        await self.update_server_state(state=state, **fields)

    async def reset_to_offline(self) -> None:
        await self.set_state(LifecycleState.OFFLINE, **OFFLINE_RESET)

    # ---- sessions -------------------------------------------------------

    async def create_session(
        self, region: str, server_type: str, vps_id: str, started_at: datetime | None = None
    ) -> int:
        async with self._sessions() as s:
            row = GameSession(
                started_at=started_at or utcnow(),
                region=region,
                server_type=server_type,
                vps_id=vps_id,
                max_players=0,
            )
            s.add(row)
            await s.commit()
            return row.id

    async def get_current_session(self) -> GameSession | None:
        async with self._sessions() as s:
            res = await s.execute(
                select(GameSession)
                .where(GameSession.ended_at.is_(None))
                .order_by(GameSession.id.desc())
                .limit(1)
            )
            return res.scalar_one_or_none()

    async def settle_session(
        self,
        session_id: int,
        duration_seconds: int,
        cost_usd: float,
        *,
        ended_at: datetime,
        month: str,
        region: str,
    ) -> None:
        """Close a session, book it into ``month`` and log the shutdown backup in one transaction.

        Nothing is written unless all three land, so a failed settlement leaves
        the session open for the next stop attempt.
        """
        if region not in REGIONS:
            raise ValueError(f"unknown region {region!r}")
        hours = duration_seconds / 3600
        for attempt in (1, 2):
            async with self._sessions() as s:
                await s.execute(
                    update(GameSession)
                    .where(GameSession.id == session_id)
                    .values(ended_at=ended_at, duration_seconds=duration_seconds, cost_usd=cost_usd)
                )
                if not await self._accumulate(s, month, region, hours, cost_usd):
                    s.add(self._new_summary(month, region, hours, cost_usd))
                s.add(Backup(timestamp=utcnow(), size_bytes=None, session_id=session_id, triggered_by="shutdown"))
                try:
                    await s.commit()
                    return
                except IntegrityError:
                    # summary row appeared under us; the second pass folds into it
                    await s.rollback()
                    if attempt == 2:
                        raise

    async def raise_session_max_players(self, session_id: int, players: int) -> None:
        # conditional update keeps max_players monotonic without reading it first
        async with self._sessions() as s:
            await s.execute(
                update(GameSession)
                .where(GameSession.id == session_id, GameSession.max_players < players)
                .values(max_players=players)
            )
            await s.commit()

    async def session_history(self, limit: int = 50, offset: int = 0) -> list[GameSession]:
        async with self._sessions() as s:
            res = await s.execute(
                select(GameSession)
                .order_by(GameSession.started_at.desc(), GameSession.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(res.scalars())

    # ---- monthly summary ------------------------------------------------

    async def get_monthly_summary(self, month: str) -> MonthlySummary | None:
        async with self._sessions() as s:
            return await s.get(MonthlySummary, month)

    async def recent_monthly_summaries(self, count: int = 12) -> list[MonthlySummary]:
        async with self._sessions() as s:
            res = await s.execute(select(MonthlySummary).order_by(MonthlySummary.month.desc()).limit(count))
            return list(res.scalars())

    @staticmethod
    def _new_summary(month: str, region: str, hours: float, cost: float) -> MonthlySummary:
        return MonthlySummary(
            month=month,
            total_hours=hours,
            total_cost=cost,
            session_count=1,
            eu_hours=hours if region == "eu" else 0.0,
            eu_cost=cost if region == "eu" else 0.0,
            us_hours=hours if region == "us" else 0.0,
            us_cost=cost if region == "us" else 0.0,
        )

    @staticmethod
    async def _accumulate(s: AsyncSession, month: str, region: str, hours: float, cost: float) -> bool:
        hours_col = getattr(MonthlySummary, f"{region}_hours")
        cost_col = getattr(MonthlySummary, f"{region}_cost")
        res = await s.execute(
            update(MonthlySummary)
            .where(MonthlySummary.month == month)
            .values({
                MonthlySummary.total_hours: MonthlySummary.total_hours + hours,
                MonthlySummary.total_cost: MonthlySummary.total_cost + cost,
                MonthlySummary.session_count: MonthlySummary.session_count + 1,
                hours_col: hours_col + hours,
                cost_col: cost_col + cost,
            })
        )
        return res.rowcount > 0

    # ---- backups --------------------------------------------------------

    async def record_backup(
        self, size_bytes: int | None = None, session_id: int | None = None, triggered_by: str = "auto"
    ) -> int:
        if triggered_by not in BACKUP_TRIGGERS:
            raise ValueError(f"unknown backup trigger {triggered_by!r}")
        async with self._sessions() as s:
            row = Backup(timestamp=utcnow(), size_bytes=size_bytes, session_id=session_id, triggered_by=triggered_by)
            s.add(row)
            await s.commit()
            return row.id

    async def recent_backups(self, limit: int = 10) -> list[Backup]:
        async with self._sessions() as s:
            res = await s.execute(select(Backup).order_by(Backup.timestamp.desc(), Backup.id.desc()).limit(limit))
            return list(res.scalars())

    async def last_backup(self) -> Backup | None:
        backups = await self.recent_backups(limit=1)
        return backups[0] if backups else None

    # ---- whitelist cache ------------------------------------------------

    async def list_whitelist(self) -> list[WhitelistEntry]:
        async with self._sessions() as s:
            res = await s.execute(select(WhitelistEntry).order_by(WhitelistEntry.added_at.desc()))
            return list(res.scalars())

    async def upsert_whitelist(self, username: str, uuid: str | None = None, added_by: str | None = None) -> None:
        async with self._sessions() as s:
            row = await s.get(WhitelistEntry, username)
            if row:
                row.uuid = uuid
                row.added_by = added_by
                row.added_at = utcnow()
            else:
                s.add(WhitelistEntry(username=username, uuid=uuid, added_by=added_by, added_at=utcnow()))
            await s.commit()

    async def remove_whitelist(self, username: str) -> bool:
        async with self._sessions() as s:
            res = await s.execute(delete(WhitelistEntry).where(WhitelistEntry.username == username))
            await s.commit()
            return res.rowcount > 0
