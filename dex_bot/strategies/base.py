from __future__ import annotations

from abc import ABC, abstractmethod

from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.models import MarketCondition, TradeResult

# Volatility assumed when a strategy runs without a market condition.
DEFAULT_VOLATILITY = 0.02


class TradingStrategy(ABC):
    name: str
    adjuster: DynamicConfigAdjuster | None = None

    @abstractmethod
    def should_activate(self, condition: MarketCondition) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def execute(self, condition: MarketCondition | None = None) -> TradeResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    # Without an adjuster the configured values pass through unchanged.

    def _trade_size(self, amount: float) -> float:
        if self.adjuster is None:
            return amount
        return self.adjuster.clamp_trade_size(amount)

    def _profit_floor(self, configured_bps: int) -> int:
        if self.adjuster is None:
            return configured_bps
        return self.adjuster.profit_floor_bps(configured_bps)

    def _slippage(self, configured_bps: float) -> float:
        if self.adjuster is None:
            return float(configured_bps)
        return self.adjuster.slippage_bps(configured_bps)
