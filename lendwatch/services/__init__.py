"""Job handlers and the orchestrator that runs them."""
from .health import HealthFactorUpdater
from .interest import InterestAccrual, accrued_interest, parse_annual_rate, service_fee
from .liquidation import LiquidationExecutor
from .locks import PositionLocks
from .notifications import NotificationDispatcher
from .orchestrator import Orchestrator, build_store
from .positions import PositionService
from .prices import PriceBook, PriceUpdater
from .profitability import ProfitabilityEvaluator, estimate_gas_cost_usd, evaluate_candidate
from .scheduler import RepeatableSpec, Scheduler, canonical_schedule

__all__ = [
    "HealthFactorUpdater",
    "InterestAccrual",
    "LiquidationExecutor",
    "NotificationDispatcher",
    "Orchestrator",
    "PositionLocks",
    "PositionService",
    "PriceBook",
    "PriceUpdater",
    "ProfitabilityEvaluator",
    "RepeatableSpec",
    "Scheduler",
    "accrued_interest",
    "build_store",
    "canonical_schedule",
    "estimate_gas_cost_usd",
    "evaluate_candidate",
    "parse_annual_rate",
    "service_fee",
]
