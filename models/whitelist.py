from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class WhitelistEntry(Base):
    """Local cache of the game server's whitelist."""

    __tablename__ = "whitelist_cache"

    username: Mapped[str] = mapped_column(String(16), primary_key=True)
    uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    added_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
