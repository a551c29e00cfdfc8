# utils/cost.py
"""Region catalogue and per-second cost model."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from exceptions import ValidationError
from utils.clock import utcnow


@dataclass(frozen=True)
class RegionConfig:
    location: str
    server_type: str
    hourly_rate: float


REGIONS: dict[str, RegionConfig] = {
    "eu": RegionConfig(location="fsn1", server_type="cx33", hourly_rate=0.0085),   # Falkenstein
    "us": RegionConfig(location="ash", server_type="cpx31", hourly_rate=0.028),    # Ashburn
}


def region_config(region: str) -> RegionConfig:
    try:
        return REGIONS[region]
    except KeyError:
        raise ValidationError(
            f"Region must be one of: {', '.join(sorted(REGIONS))}",
            error="invalid_region",
        ) from None


def hourly_rate(region: str) -> float:
    return region_config(region).hourly_rate


def server_type_for(region: str) -> str:
    return region_config(region).server_type


def calculate_cost(duration_seconds: float, region: str) -> float:
    """Cost in USD for ``duration_seconds`` of uptime, rounded to 4 places."""
    hours = duration_seconds / 3600
    return round(hours * hourly_rate(region), 4)


def current_month(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"{now.year:04d}-{now.month:02d}"
