"""Unit tests for interest arithmetic and the accrual job."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from lendwatch.models import Position, PositionStatus
from lendwatch.services.interest import (
    InterestAccrual,
    accrued_interest,
    parse_annual_rate,
    service_fee,
)
from lendwatch.services.locks import PositionLocks
from lendwatch.stores import InMemoryPositionStore

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestParseAnnualRate:
    @pytest.mark.parametrize(
        "value,expected", [("5.2%", 0.052), (" 12 % ", 0.12), ("0%", 0.0), (0.052, 0.052)]
    )
    def test_parses(self, value: str | float, expected: float) -> None:
        assert parse_annual_rate(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "%", "abc%"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_annual_rate(value)


class TestAccruedInterest:
    def test_one_year(self) -> None:
        interest = accrued_interest(1000.0, 0.10, START, START + timedelta(days=365))
        assert interest == pytest.approx(100.0)

    def test_minimum_one_hour(self) -> None:
        one_hour = accrued_interest(1000.0, 0.10, START, START + timedelta(hours=1))
        assert accrued_interest(1000.0, 0.10, START, START) == pytest.approx(one_hour)
        assert one_hour == pytest.approx(100.0 / (365 * 24))

    def test_service_fee(self) -> None:
        assert service_fee(1000.0, 0.5) == pytest.approx(5.0)


class TestInterestAccrual:
    @pytest.mark.asyncio
    async def test_updates_active_positions(
        self,
        make_position: Callable[..., Position],
        memory_store: InMemoryPositionStore,
        locks: PositionLocks,
    ) -> None:
        now = START + timedelta(days=73)
        active = make_position(borrowed_amount=1000.0, annual_rate=0.10, created_at=START)
        repaid = make_position(created_at=START, status=PositionStatus.REPAID)
        await memory_store.insert(active)
        await memory_store.insert(repaid)

        result = await InterestAccrual(memory_store, locks, clock=lambda: now).run()

        assert result == {"updated": 1, "failed": 0}
        saved = await memory_store.find_by_id(active.id)
        assert saved.accrued_interest == pytest.approx(20.0)
        assert saved.last_accrual_at == now
        assert saved.current_debt == pytest.approx(1020.0)
        assert (await memory_store.find_by_id(repaid.id)) is repaid

    @pytest.mark.asyncio
    async def test_local_position_health_follows_accrued_debt(
        self,
        make_position: Callable[..., Position],
        memory_store: InMemoryPositionStore,
        locks: PositionLocks,
    ) -> None:
        now = START + timedelta(days=73)
        local = make_position(
            collateral_value_usd=2500.0,
            borrowed_amount=1000.0,
            annual_rate=0.10,
            health_factor=2.0,
            created_at=START,
            on_chain_id=None,
        )
        tracked = make_position(
            borrowed_amount=1000.0, annual_rate=0.10, health_factor=2.0, created_at=START
        )
        await memory_store.insert(local)
        await memory_store.insert(tracked)

        await InterestAccrual(memory_store, locks, clock=lambda: now).run()

        # 2500 * 0.8 / 1020
        saved = await memory_store.find_by_id(local.id)
        assert saved.health_factor == pytest.approx(2000.0 / 1020.0)
        assert saved.collateral_value_usd == 2500.0
        assert (await memory_store.find_by_id(tracked.id)).health_factor == 2.0

    @pytest.mark.asyncio
    async def test_custom_threshold(
        self,
        make_position: Callable[..., Position],
        memory_store: InMemoryPositionStore,
        locks: PositionLocks,
    ) -> None:
        now = START + timedelta(days=73)
        local = make_position(
            collateral_value_usd=2500.0,
            borrowed_amount=1000.0,
            annual_rate=0.10,
            created_at=START,
            on_chain_id=None,
        )
        await memory_store.insert(local)

        await InterestAccrual(
            memory_store, locks, clock=lambda: now, liquidation_threshold=0.5
        ).run()

        saved = await memory_store.find_by_id(local.id)
        assert saved.health_factor == pytest.approx(1250.0 / 1020.0)

    @pytest.mark.asyncio
    async def test_failures_are_counted(
        self,
        make_position: Callable[..., Position],
        memory_store: InMemoryPositionStore,
        locks: PositionLocks,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await memory_store.insert(make_position(created_at=START))
        await memory_store.insert(make_position(created_at=START))
        original_save = memory_store.save
        calls = 0

        async def flaky_save(position: Position) -> Position:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("disk full")
            return await original_save(position)

        monkeypatch.setattr(memory_store, "save", flaky_save)
        result = await InterestAccrual(memory_store, locks).run()
        assert result == {"updated": 1, "failed": 1}
