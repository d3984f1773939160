"""End-to-end wiring: scheduler, queue, workers and handlers in one process."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Callable
from unittest.mock import AsyncMock

import pytest

from lendwatch.config import (
    HEALTH_CHECK,
    INTEREST_ACCRUAL,
    LIQUIDATION,
    NOTIFICATION,
    PRICE_REFRESH,
    AppConfig,
    ChainConfig,
    StoreConfig,
)
from lendwatch.jobs import HealthCheckPayload, JobEvent, JobEventKind, JobState
from lendwatch.models import Position, PositionStatus
from lendwatch.notifications import TelegramNotifier
from lendwatch.services import Orchestrator, build_store
from lendwatch.stores import InMemoryPositionStore, SqlitePositionStore

LIQ_TX_HASH = "0x" + "ee" * 32


@pytest.fixture()
def mock_oracle() -> AsyncMock:
    oracle = AsyncMock()
    oracle.fetch_prices.return_value = {"WETH": 2500.0, "WBTC": 60000.0, "USDC": 1.0}
    return oracle


@pytest.fixture()
def mock_notifier() -> AsyncMock:
    notifier = AsyncMock()
    notifier.send_alert.return_value = True
    return notifier


def _orchestrator(config: AppConfig, store, chain, oracle, notifiers=()) -> Orchestrator:
    return Orchestrator(
        config, store=store, chain=chain, oracle=oracle, notifiers=list(notifiers)
    )


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestBuildStore:
    def test_memory_default(self) -> None:
        assert isinstance(build_store(StoreConfig()), InMemoryPositionStore)

    def test_sqlite(self, tmp_path) -> None:
        store = build_store(StoreConfig(backend="sqlite", path=str(tmp_path / "x.db")))
        assert isinstance(store, SqlitePositionStore)


class TestWiring:
    @pytest.mark.asyncio
    async def test_all_job_types_registered(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        orch = _orchestrator(sample_app_config, memory_store, mock_chain, mock_oracle)

        for name in (HEALTH_CHECK, LIQUIDATION, NOTIFICATION, INTEREST_ACCRUAL, PRICE_REFRESH):
            assert orch.queue.definition(name).name == name
        assert orch.executor is not None
        assert orch.queue.definition(LIQUIDATION).priority == 1

    @pytest.mark.asyncio
    async def test_no_chain_means_no_liquidation(
        self, sample_app_config, memory_store, mock_oracle
    ) -> None:
        config = dataclasses.replace(sample_app_config, chain=ChainConfig())
        orch = _orchestrator(config, memory_store, None, mock_oracle)

        assert orch.chain is None
        assert orch.executor is None
        with pytest.raises(ValueError, match="Unknown job type"):
            orch.queue.definition(LIQUIDATION)

    @pytest.mark.asyncio
    async def test_liquidation_disabled(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        config = dataclasses.replace(
            sample_app_config,
            liquidation=dataclasses.replace(sample_app_config.liquidation, enabled=False),
        )
        orch = _orchestrator(config, memory_store, mock_chain, mock_oracle)

        assert orch.executor is None
        with pytest.raises(ValueError):
            orch.queue.definition(LIQUIDATION)

    @pytest.mark.asyncio
    async def test_builds_notifiers_from_config(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        orch = Orchestrator(
            sample_app_config, store=memory_store, chain=mock_chain, oracle=mock_oracle
        )
        assert len(orch.notifiers) == 1
        assert isinstance(orch.notifiers[0], TelegramNotifier)

    def test_failed_liquidation_logged_critical(self, caplog) -> None:
        with caplog.at_level(logging.DEBUG, logger="lendwatch"):
            Orchestrator._on_job_event(
                JobEvent(JobEventKind.FAILED, "liquidate:pos-1", LIQUIDATION, 3, error="reverted")
            )
            Orchestrator._on_job_event(
                JobEvent(JobEventKind.FAILED, "n-1", NOTIFICATION, 3, error="smtp down")
            )
        levels = [r.levelno for r in caplog.records]
        assert levels == [logging.CRITICAL, logging.ERROR]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_arms_and_shutdown_drains(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        orch = _orchestrator(sample_app_config, memory_store, mock_chain, mock_oracle)

        await orch.start()
        try:
            assert orch.scheduler.armed
            assert orch.pool.running
            assert sorted(orch.queue.repeatable_keys()) == [
                "health-factor-update",
                "interest-accrual",
                "price-refresh",
            ]
            # run_immediately: the price refresh fires right after arming.
            await _wait_until(lambda: orch.prices.get("WETH") is not None)
        finally:
            await orch.shutdown()

        assert not orch.scheduler.armed
        assert not orch.pool.running
        assert orch.queue.closed
        mock_chain.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        orch = _orchestrator(sample_app_config, memory_store, mock_chain, mock_oracle)
        await orch.start()
        try:
            await orch.start()
            assert len(orch.queue.repeatable_keys()) == 3
        finally:
            await orch.shutdown()

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_request(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        orch = _orchestrator(sample_app_config, memory_store, mock_chain, mock_oracle)

        task = asyncio.create_task(orch.run_forever())
        await _wait_until(lambda: orch.pool.running)
        orch.request_stop()
        await asyncio.wait_for(task, timeout=10)

        assert orch.queue.closed

    @pytest.mark.asyncio
    async def test_chain_close_failure_does_not_block_shutdown(
        self, sample_app_config, memory_store, mock_chain, mock_oracle
    ) -> None:
        mock_chain.close.side_effect = RuntimeError("session gone")
        orch = _orchestrator(sample_app_config, memory_store, mock_chain, mock_oracle)
        await orch.start()
        await orch.shutdown()
        assert orch.queue.closed


class TestPipeline:
    @pytest.mark.asyncio
    async def test_health_check_liquidates_underwater_position(
        self,
        sample_app_config,
        memory_store,
        mock_chain,
        mock_oracle,
        make_position: Callable[..., Position],
    ) -> None:
        # 0.7 WETH at $2500 against $1700 debt: HF 0.82, net profit $136.75.
        position = make_position(id="pos-1", collateral_amount=0.7)
        await memory_store.insert(position)
        orch = _orchestrator(sample_app_config, memory_store, mock_chain, mock_oracle)
        orch.prices.update_many(mock_oracle.fetch_prices.return_value)

        orch.pool.start()
        try:
            check = await orch.queue.enqueue(HEALTH_CHECK, HealthCheckPayload())
            await orch.queue.wait_for(check.id, timeout=5)
            assert check.state is JobState.COMPLETED

            liquidation = await orch.queue.wait_for("liquidate:pos-1", timeout=5)
            assert liquidation.state is JobState.COMPLETED
        finally:
            await orch.shutdown()

        stored = await memory_store.find_by_id("pos-1")
        assert stored.status is PositionStatus.LIQUIDATED
        assert stored.liquidation_tx_hash == LIQ_TX_HASH
        mock_chain.submit_liquidation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_warning_position_notifies_once(
        self,
        sample_app_config,
        memory_store,
        mock_chain,
        mock_oracle,
        mock_notifier,
        make_position: Callable[..., Position],
    ) -> None:
        # 0.95 WETH: HF 1.12, inside the warning band but above liquidation.
        await memory_store.insert(make_position(id="pos-w", collateral_amount=0.95))
        orch = _orchestrator(
            sample_app_config, memory_store, mock_chain, mock_oracle, [mock_notifier]
        )
        orch.prices.update_many(mock_oracle.fetch_prices.return_value)

        orch.pool.start()
        try:
            for _ in range(2):
                check = await orch.queue.enqueue(HEALTH_CHECK, HealthCheckPayload())
                await orch.queue.wait_for(check.id, timeout=5)
                await _wait_until(
                    lambda: orch.queue.counts()["waiting"] == 0
                    and orch.queue.counts()["active"] == 0
                )
        finally:
            await orch.shutdown()

        mock_notifier.send_alert.assert_awaited_once()
        mock_chain.submit_liquidation.assert_not_called()
        assert orch.queue.get_job("liquidate:pos-w") is None
