from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base

BACKUP_TRIGGERS = ("auto", "manual", "shutdown")


class GameSession(Base):
    """One provisioning-to-teardown lifetime of a VM; the unit of billing."""

    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_players: Mapped[int] = mapped_column(Integer, default=0)
    region: Mapped[str] = mapped_column(String(8))
    server_type: Mapped[str] = mapped_column(String(32))
    vps_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class MonthlySummary(Base):
    __tablename__ = "monthly_summary"

    month: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM, UTC
    total_hours: Mapped[float] = mapped_column(Float, default=0.0)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0)
    session_count: Mapped[int] = mapped_column(Integer, default=0)
    eu_hours: Mapped[float] = mapped_column(Float, default=0.0)
    eu_cost: Mapped[float] = mapped_column(Float, default=0.0)
    us_hours: Mapped[float] = mapped_column(Float, default=0.0)
    us_cost: Mapped[float] = mapped_column(Float, default=0.0)


class Backup(Base):
    """Append-only backup log."""

    __tablename__ = "backups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    session_id: Mapped[int | None] = mapped_column(ForeignKey("sessions.id"), nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(16), default="auto")
