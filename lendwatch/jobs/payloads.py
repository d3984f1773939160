"""Tagged job payloads, one variant per job type."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class HealthCheckPayload:
    """Recompute health factors; ``None`` means every active position."""

    position_ids: tuple[str, ...] | None = None


@dataclass(frozen=True)
class LiquidationPayload:
    position_id: str
    triggered_health_factor: float = 0.0


@dataclass(frozen=True)
class NotificationPayload:
    position_id: str
    user_address: str
    health_factor: float
    type: str = "health-warning"


@dataclass(frozen=True)
class InterestAccrualPayload:
    pass


@dataclass(frozen=True)
class PriceRefreshPayload:
    symbols: tuple[str, ...] | None = None


JobPayload = Union[
    HealthCheckPayload,
    LiquidationPayload,
    NotificationPayload,
    InterestAccrualPayload,
    PriceRefreshPayload,
]
