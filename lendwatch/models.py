"""Data models — all frozen (immutable)."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from .errors import InvalidTransitionError

LIQUIDATION_THRESHOLD = 0.80
LIQUIDATABLE_BELOW = 1.0
AT_RISK_BELOW = 1.2

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value or ""))


def is_valid_tx_hash(value: str) -> bool:
    return bool(_TX_HASH_RE.match(value or ""))


def compute_health_factor(
    collateral_value_usd: float,
    debt_usd: float,
    liquidation_threshold: float = LIQUIDATION_THRESHOLD,
) -> float:
    """Risk-adjusted collateral over debt. Zero debt is infinitely healthy."""
    if debt_usd <= 0:
        return float("inf")
    return (collateral_value_usd * liquidation_threshold) / debt_usd


class PositionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REPAID = "repaid"
    LIQUIDATED = "liquidated"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {PositionStatus.REPAID, PositionStatus.LIQUIDATED, PositionStatus.CLOSED}
)

_ALLOWED_TRANSITIONS: dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.PENDING: frozenset({PositionStatus.ACTIVE, PositionStatus.CLOSED}),
    PositionStatus.ACTIVE: _TERMINAL,
    PositionStatus.REPAID: frozenset(),
    PositionStatus.LIQUIDATED: frozenset(),
    PositionStatus.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class Position:
    """One loan instance.

    Instances never change in place. The ``with_*`` and ``transition_to``
    helpers return updated copies and refuse to touch economic fields once
    the position has reached a terminal status.
    """

    user_address: str
    protocol: str
    token_symbol: str
    collateral_amount: float
    collateral_value_usd: float
    borrowed_amount: float
    tx_hash: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    platform_fee: float = 0.0
    net_disbursed: float = 0.0
    annual_rate: float = 0.0
    ltv: float = 0.70
    health_factor: float = 0.0
    status: PositionStatus = PositionStatus.ACTIVE
    adapter_address: str = ""
    token_address: str = ""
    network: str = "sepolia"
    block_number: int | None = None
    on_chain_id: int | None = None
    fee_recipient: str = ""
    accrued_interest: float = 0.0
    last_accrual_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    repaid_at: datetime | None = None
    repayment_tx_hash: str = ""
    repayment_amount: float = 0.0
    final_interest_paid: float = 0.0
    service_fee_paid: float = 0.0
    liquidated_at: datetime | None = None
    liquidation_tx_hash: str = ""
    liquidation_failed_at: datetime | None = None
    liquidation_failure: str = ""

    @property
    def current_debt(self) -> float:
        """Principal plus interest accrued so far."""
        return self.borrowed_amount + self.accrued_interest

    @property
    def is_active(self) -> bool:
        return self.status is PositionStatus.ACTIVE

    def is_at_risk(self) -> bool:
        return self.health_factor < AT_RISK_BELOW

    def can_be_liquidated(self) -> bool:
        return self.health_factor < LIQUIDATABLE_BELOW

    @property
    def liquidation_blocked(self) -> bool:
        """A liquidation failed terminally and an operator has not cleared it."""
        return self.liquidation_failed_at is not None

    def _ensure_mutable(self) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(
                f"Position {self.id} is {self.status.value}; fields are frozen"
            )

    def with_health(
        self,
        collateral_value_usd: float,
        debt_usd: float,
        liquidation_threshold: float = LIQUIDATION_THRESHOLD,
    ) -> Position:
        """Recompute the health factor from fresh collateral value and debt."""
        self._ensure_mutable()
        return replace(
            self,
            collateral_value_usd=collateral_value_usd,
            health_factor=compute_health_factor(
                collateral_value_usd, debt_usd, liquidation_threshold
            ),
            updated_at=utcnow(),
        )

    def with_accrual(self, accrued_interest: float, at: datetime) -> Position:
        self._ensure_mutable()
        return replace(
            self, accrued_interest=accrued_interest, last_accrual_at=at, updated_at=at
        )

    def with_liquidation_failure(
        self, reason: str, at: datetime, tx_hash: str = ""
    ) -> Position:
        self._ensure_mutable()
        return replace(
            self,
            liquidation_failed_at=at,
            liquidation_failure=reason,
            liquidation_tx_hash=tx_hash.lower() or self.liquidation_tx_hash,
            updated_at=at,
        )

    def without_liquidation_failure(self) -> Position:
        """Clear the failure marker; the failed tx hash stays for audit."""
        self._ensure_mutable()
        return replace(
            self, liquidation_failed_at=None, liquidation_failure="", updated_at=utcnow()
        )

    def transition_to(self, status: PositionStatus, **fields) -> Position:
        """Move to ``status``; only forward transitions are accepted."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Position {self.id}: {self.status.value} -> {status.value} not allowed"
            )
        return replace(self, status=status, updated_at=utcnow(), **fields)


class FeeType(str, Enum):
    ORIGINATION = "origination"
    REPAYMENT = "repayment"


@dataclass(frozen=True)
class FeeConfig:
    """Named platform fee; only the active record per type is used."""

    fee_type: FeeType
    percentage: float
    recipient_address: str
    active: bool = True
    name: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.percentage <= 100:
            raise ValueError(f"Fee percentage out of range: {self.percentage}")

    @property
    def rate(self) -> float:
        return self.percentage / 100


@dataclass(frozen=True)
class ProtocolParams:
    """Loan broker configuration as read from the contract."""

    fee_bps: int
    liquidation_threshold_bps: int
    liquidation_bonus_bps: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    success: bool
    gas_used: int = 0


@dataclass(frozen=True)
class LiquidationCandidate:
    """Profitability snapshot for one position; never persisted."""

    position: Position
    current_debt_usd: float
    collateral_value_usd: float
    liquidation_bonus_usd: float
    estimated_gas_cost_usd: float
    net_profit_usd: float
    is_profitable: bool


class LiquidationState(str, Enum):
    EVALUATING = "evaluating"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    SETTLED = "settled"
    ABORTED = "aborted"
    FAILED_TERMINAL = "failed_terminal"


@dataclass(frozen=True)
class LiquidationOutcome:
    position_id: str
    state: LiquidationState
    reason: str = ""
    tx_hash: str = ""
    net_profit_usd: float = 0.0


@dataclass(frozen=True)
class HealthCheckSummary:
    updated: int = 0
    at_risk: int = 0
    liquidatable: int = 0
    failed: int = 0


class RepayError(str, Enum):
    NOT_FOUND = "not_found"
    NOT_ACTIVE = "not_active"
    INTERNAL = "internal"


@dataclass(frozen=True)
class RepayResult:
    success: bool
    position_id: str
    error: RepayError | None = None
    message: str = ""
    total_due: float = 0.0
    interest: float = 0.0
    service_fee: float = 0.0
    collateral_released: float = 0.0


@dataclass(frozen=True)
class PlatformStats:
    total_positions: int = 0
    active_positions: int = 0
    total_borrowed: float = 0.0
    total_repaid: float = 0.0
    at_risk_count: int = 0
    liquidatable_count: int = 0
