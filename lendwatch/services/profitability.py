"""Liquidation profitability evaluation."""
from __future__ import annotations

import logging

from ..config import LiquidationConfig
from ..interfaces.chain import LendingChain
from ..models import LiquidationCandidate, Position
from .prices import PriceBook

logger = logging.getLogger(__name__)

WEI_PER_ETHER = 10**18
BPS_DENOMINATOR = 10_000


def estimate_gas_cost_usd(
    gas_price_wei: int, gas_units: int, token_price_usd: float
) -> float:
    return gas_price_wei * gas_units / WEI_PER_ETHER * token_price_usd


def evaluate_candidate(
    position: Position,
    *,
    collateral_price_usd: float,
    current_debt_usd: float,
    liquidation_bonus_bps: int,
    gas_cost_usd: float,
    min_profit_usd: float,
) -> LiquidationCandidate:
    """Price one liquidation.

    ``net_profit = collateral + bonus - debt - gas``; the candidate is
    profitable only when that strictly exceeds ``min_profit_usd``. A zero
    price or zero debt is never profitable.
    """
    if collateral_price_usd <= 0 or current_debt_usd <= 0:
        return unprofitable(position)

    collateral_value = position.collateral_amount * collateral_price_usd
    bonus = collateral_value * liquidation_bonus_bps / BPS_DENOMINATOR
    net_profit = collateral_value + bonus - current_debt_usd - gas_cost_usd
    return LiquidationCandidate(
        position=position,
        current_debt_usd=current_debt_usd,
        collateral_value_usd=collateral_value,
        liquidation_bonus_usd=bonus,
        estimated_gas_cost_usd=gas_cost_usd,
        net_profit_usd=net_profit,
        is_profitable=net_profit > min_profit_usd,
    )


def unprofitable(position: Position) -> LiquidationCandidate:
    return LiquidationCandidate(
        position=position,
        current_debt_usd=0.0,
        collateral_value_usd=0.0,
        liquidation_bonus_usd=0.0,
        estimated_gas_cost_usd=0.0,
        net_profit_usd=0.0,
        is_profitable=False,
    )


class ProfitabilityEvaluator:
    """Reads debt, protocol config and gas price, then prices the liquidation.

    Any failed read yields an unprofitable candidate; missing data never
    counts as profit.
    """

    def __init__(
        self,
        chain: LendingChain,
        prices: PriceBook,
        config: LiquidationConfig,
        gas_price_symbol: str = "",
    ) -> None:
        self._chain = chain
        self._prices = prices
        self._config = config
        # Empty: gas is priced in the position's collateral token.
        self._gas_symbol = gas_price_symbol

    async def evaluate(self, position: Position) -> LiquidationCandidate:
        gas_symbol = self._gas_symbol or position.token_symbol
        collateral_price = self._prices.get(position.token_symbol)
        gas_token_price = self._prices.get(gas_symbol)
        if collateral_price is None or gas_token_price is None:
            logger.warning(
                "No fresh price for %s/%s; position %s treated as unprofitable",
                position.token_symbol,
                gas_symbol,
                position.id,
            )
            return unprofitable(position)
        if position.on_chain_id is None:
            logger.error("Position %s has no on-chain id", position.id)
            return unprofitable(position)

        try:
            debt = await self._chain.get_current_debt(position.on_chain_id)
            params = await self._chain.get_config()
            gas_price = await self._chain.get_gas_price()
        except Exception as e:
            logger.error("Profitability read failed for position %s: %s", position.id, e)
            return unprofitable(position)

        candidate = evaluate_candidate(
            position,
            collateral_price_usd=collateral_price,
            current_debt_usd=debt,
            liquidation_bonus_bps=params.liquidation_bonus_bps,
            gas_cost_usd=estimate_gas_cost_usd(
                gas_price, self._config.gas_units_estimate, gas_token_price
            ),
            min_profit_usd=self._config.min_profit_usd,
        )
        logger.info(
            "Position %s: collateral $%.2f + bonus $%.2f - debt $%.2f - gas $%.2f = $%.2f (%s)",
            position.id,
            candidate.collateral_value_usd,
            candidate.liquidation_bonus_usd,
            candidate.current_debt_usd,
            candidate.estimated_gas_cost_usd,
            candidate.net_profit_usd,
            "profitable" if candidate.is_profitable else "below threshold",
        )
        return candidate
