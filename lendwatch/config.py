"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Job type names shared by the queue, the scheduler and the handlers.
HEALTH_CHECK = "health-check"
LIQUIDATION = "liquidation"
NOTIFICATION = "notification"
INTEREST_ACCRUAL = "interest-accrual"
PRICE_REFRESH = "price-refresh"

JOB_TYPES = (HEALTH_CHECK, LIQUIDATION, NOTIFICATION, INTEREST_ACCRUAL, PRICE_REFRESH)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonitorConfig:
    liquidation_threshold: float = 0.80
    warning_health_factor: float = 1.2
    liquidation_health_factor: float = 1.0


@dataclass(frozen=True)
class SchedulerConfig:
    health_check_seconds: int = 30
    interest_accrual_seconds: int = 300
    price_refresh_seconds: int = 60


@dataclass(frozen=True)
class JobTypeConfig:
    concurrency: int = 1
    attempts: int = 3
    backoff_seconds: float = 2.0
    backoff_type: str = "exponential"
    lease_seconds: float = 60.0
    priority: int = 10


_JOB_TYPE_DEFAULTS: dict[str, JobTypeConfig] = {
    HEALTH_CHECK: JobTypeConfig(concurrency=1, lease_seconds=120.0),
    LIQUIDATION: JobTypeConfig(
        concurrency=1, attempts=3, backoff_seconds=5.0, lease_seconds=300.0, priority=1
    ),
    NOTIFICATION: JobTypeConfig(concurrency=4, backoff_type="fixed", lease_seconds=30.0),
    INTEREST_ACCRUAL: JobTypeConfig(concurrency=1, lease_seconds=120.0),
    PRICE_REFRESH: JobTypeConfig(concurrency=1, lease_seconds=30.0, priority=5),
}


@dataclass(frozen=True)
class WorkersConfig:
    pool_size: int = 4
    stall_check_seconds: float = 5.0
    shutdown_grace_seconds: float = 30.0
    job_types: dict[str, JobTypeConfig] = field(
        default_factory=lambda: dict(_JOB_TYPE_DEFAULTS)
    )

    def for_type(self, name: str) -> JobTypeConfig:
        return self.job_types.get(name, _JOB_TYPE_DEFAULTS.get(name, JobTypeConfig()))


@dataclass(frozen=True)
class LiquidationConfig:
    enabled: bool = True
    min_profit_usd: float = 50.0
    gas_units_estimate: int = 300_000
    gas_safety_margin_pct: int = 20
    confirmation_timeout_seconds: int = 120


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    chain_id: int = 11155111
    loan_broker_address: str = ""
    loan_broker_abi_path: str = ""
    signer_private_key: str = ""
    debt_decimals: int = 6
    gas_price_symbol: str = ""


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "memory"
    path: str = "lendwatch.db"


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)
    max_age_seconds: int = 180


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    alert_email: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_email: str = ""
    sender_password: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    dedupe_seconds: int = 3600
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)


@dataclass(frozen=True)
class AppConfig:
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_monitor(raw: dict[str, Any]) -> MonitorConfig:
    return MonitorConfig(
        liquidation_threshold=float(raw.get("liquidation_threshold", 0.80)),
        warning_health_factor=float(raw.get("warning_health_factor", 1.2)),
        liquidation_health_factor=float(raw.get("liquidation_health_factor", 1.0)),
    )


def _build_scheduler(raw: dict[str, Any]) -> SchedulerConfig:
    return SchedulerConfig(
        health_check_seconds=int(raw.get("health_check_seconds", 30)),
        interest_accrual_seconds=int(raw.get("interest_accrual_seconds", 300)),
        price_refresh_seconds=int(raw.get("price_refresh_seconds", 60)),
    )


def _build_job_type(raw: dict[str, Any], default: JobTypeConfig) -> JobTypeConfig:
    return JobTypeConfig(
        concurrency=int(raw.get("concurrency", default.concurrency)),
        attempts=int(raw.get("attempts", default.attempts)),
        backoff_seconds=float(raw.get("backoff_seconds", default.backoff_seconds)),
        backoff_type=str(raw.get("backoff_type", default.backoff_type)),
        lease_seconds=float(raw.get("lease_seconds", default.lease_seconds)),
        priority=int(raw.get("priority", default.priority)),
    )


def _build_workers(raw: dict[str, Any]) -> WorkersConfig:
    job_types = dict(_JOB_TYPE_DEFAULTS)
    for name, cfg in (raw.get("job_types") or {}).items():
        job_types[name] = _build_job_type(
            cfg or {}, _JOB_TYPE_DEFAULTS.get(name, JobTypeConfig())
        )
    return WorkersConfig(
        pool_size=int(raw.get("pool_size", 4)),
        stall_check_seconds=float(raw.get("stall_check_seconds", 5.0)),
        shutdown_grace_seconds=float(raw.get("shutdown_grace_seconds", 30.0)),
        job_types=job_types,
    )


def _build_liquidation(raw: dict[str, Any]) -> LiquidationConfig:
    return LiquidationConfig(
        enabled=bool(raw.get("enabled", True)),
        min_profit_usd=float(raw.get("min_profit_usd", 50.0)),
        gas_units_estimate=int(raw.get("gas_units_estimate", 300_000)),
        gas_safety_margin_pct=int(raw.get("gas_safety_margin_pct", 20)),
        confirmation_timeout_seconds=int(raw.get("confirmation_timeout_seconds", 120)),
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        chain_id=int(raw.get("chain_id", 11155111)),
        loan_broker_address=raw.get("loan_broker_address", ""),
        loan_broker_abi_path=raw.get("loan_broker_abi_path", ""),
        signer_private_key=raw.get("signer_private_key", ""),
        debt_decimals=int(raw.get("debt_decimals", 6)),
        gas_price_symbol=raw.get("gas_price_symbol", ""),
    )


def _build_store(raw: dict[str, Any]) -> StoreConfig:
    return StoreConfig(
        backend=raw.get("backend", "memory"),
        path=raw.get("path", "lendwatch.db"),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
            max_age_seconds=int(pyth_raw.get("max_age_seconds", 180)),
        ),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    em = raw.get("email", {})
    return NotificationsConfig(
        dedupe_seconds=int(raw.get("dedupe_seconds", 3600)),
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=tg.get("chat_id", ""),
        ),
        email=EmailConfig(
            enabled=bool(em.get("enabled", False)),
            alert_email=em.get("alert_email", ""),
            smtp_server=em.get("smtp_server", "smtp.gmail.com"),
            smtp_port=int(em.get("smtp_port", 587)),
            sender_email=em.get("sender_email", ""),
            sender_password=em.get("sender_password", ""),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        monitor=_build_monitor(raw.get("monitor", {})),
        scheduler=_build_scheduler(raw.get("scheduler", {})),
        workers=_build_workers(raw.get("workers", {})),
        liquidation=_build_liquidation(raw.get("liquidation", {})),
        chain=_build_chain(raw.get("chain", {})),
        store=_build_store(raw.get("store", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    monitor = cfg.monitor
    if not 0 < monitor.liquidation_threshold <= 1:
        raise ValueError("liquidation_threshold must be in (0, 1]")
    if monitor.liquidation_health_factor >= monitor.warning_health_factor:
        raise ValueError(
            "liquidation_health_factor must be below warning_health_factor"
        )

    if cfg.workers.pool_size < 1:
        raise ValueError("workers.pool_size must be at least 1")
    for name, job_cfg in cfg.workers.job_types.items():
        if job_cfg.concurrency < 1:
            raise ValueError(f"Job type '{name}' needs concurrency >= 1")
        if job_cfg.attempts < 1:
            raise ValueError(f"Job type '{name}' needs attempts >= 1")
        if job_cfg.backoff_type not in ("fixed", "exponential"):
            raise ValueError(
                f"Job type '{name}' has unknown backoff_type '{job_cfg.backoff_type}'"
            )

    if cfg.store.backend not in ("memory", "sqlite"):
        raise ValueError(f"Unknown store backend '{cfg.store.backend}'")

    if cfg.liquidation.enabled and not cfg.chain.rpc_endpoints:
        raise ValueError("Liquidation is enabled but no rpc_endpoints are configured")
    if cfg.chain.rpc_endpoints and not cfg.chain.loan_broker_address:
        raise ValueError("chain.loan_broker_address is required")
