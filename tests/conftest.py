"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock

import pytest

from lendwatch.config import (
    AppConfig,
    ChainConfig,
    EmailConfig,
    LiquidationConfig,
    MonitorConfig,
    NotificationsConfig,
    PriceOracleConfig,
    PythConfig,
    TelegramConfig,
)
from lendwatch.models import Position, ProtocolParams, TxReceipt
from lendwatch.services.locks import PositionLocks
from lendwatch.services.prices import PriceBook
from lendwatch.stores import InMemoryPositionStore

USER = "0x" + "ab" * 20
TX_HASH = "0x" + "11" * 32
LIQ_TX_HASH = "0x" + "ee" * 32


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_pyth_config() -> PythConfig:
    return PythConfig(
        hermes_url="https://hermes.pyth.network/v2/updates/price/latest",
        feeds={"WETH": "aaa111", "WBTC": "bbb222", "USDC": "ccc333"},
    )


@pytest.fixture()
def liquidation_config() -> LiquidationConfig:
    return LiquidationConfig(
        enabled=True,
        min_profit_usd=50.0,
        gas_units_estimate=300_000,
        gas_safety_margin_pct=20,
        confirmation_timeout_seconds=5,
    )


@pytest.fixture()
def sample_app_config(
    sample_pyth_config: PythConfig, liquidation_config: LiquidationConfig
) -> AppConfig:
    return AppConfig(
        monitor=MonitorConfig(),
        liquidation=liquidation_config,
        chain=ChainConfig(
            rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
            rpc_timeout=10,
            loan_broker_address="0x" + "cd" * 20,
        ),
        price_oracle=PriceOracleConfig(provider="pyth", pyth=sample_pyth_config),
        notifications=NotificationsConfig(
            dedupe_seconds=3600,
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
            email=EmailConfig(enabled=False),
        ),
    )


# ---------------------------------------------------------------------------
# Model and store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_position() -> Callable[..., Position]:
    counter = iter(range(1, 10_000))

    def _make(**overrides) -> Position:
        n = next(counter)
        fields = dict(
            user_address=USER,
            protocol="aave",
            token_symbol="WETH",
            collateral_amount=1.0,
            collateral_value_usd=2500.0,
            borrowed_amount=1700.0,
            tx_hash="0x" + f"{n:064x}",
            annual_rate=0.052,
            health_factor=1.5,
            on_chain_id=n,
        )
        fields.update(overrides)
        return Position(**fields)

    return _make


@pytest.fixture()
def sample_position(make_position: Callable[..., Position]) -> Position:
    return make_position(id="pos-1", tx_hash=TX_HASH, on_chain_id=7)


@pytest.fixture()
def memory_store() -> InMemoryPositionStore:
    return InMemoryPositionStore()


@pytest.fixture()
def locks() -> PositionLocks:
    return PositionLocks()


@pytest.fixture()
def price_book() -> PriceBook:
    book = PriceBook(max_age_seconds=180)
    book.update_many({"WETH": 2500.0, "WBTC": 60000.0, "USDC": 1.0})
    return book


# ---------------------------------------------------------------------------
# Chain fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_chain() -> AsyncMock:
    """Loan broker where every position is liquidatable and liquidations succeed.

    Gas: 1 gwei * 300k units at $2500/ETH is $0.75.
    """
    chain = AsyncMock()
    chain.get_health_factor.return_value = 0.95
    chain.get_current_debt.return_value = 1700.0
    chain.get_config.return_value = ProtocolParams(
        fee_bps=50, liquidation_threshold_bps=8000, liquidation_bonus_bps=500
    )
    chain.get_gas_price.return_value = 10**9
    chain.estimate_liquidation_gas.return_value = 200_000
    chain.submit_liquidation.return_value = LIQ_TX_HASH
    chain.wait_for_receipt.return_value = TxReceipt(
        tx_hash=LIQ_TX_HASH, success=True, gas_used=180_000
    )
    return chain


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    monitor:
      liquidation_threshold: 0.80
      warning_health_factor: 1.2
      liquidation_health_factor: 1.0
    scheduler:
      health_check_seconds: 15
    workers:
      pool_size: 2
      job_types:
        notification:
          concurrency: 3
    liquidation:
      enabled: true
      min_profit_usd: 75
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
      loan_broker_address: "0xcdcdcdcdcdcdcdcdcdcdcdcdcdcdcdcdcdcdcdcd"
    store:
      backend: sqlite
      path: test.db
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {WETH: "aaa", WBTC: "bbb"}
    notifications:
      dedupe_seconds: 600
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: "999"
      email:
        enabled: false
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
