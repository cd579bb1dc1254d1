"""Fibonacci retracement accumulation.

Each cycle prices the target token against the stable token, then:

1. sells the first held lot whose price change reaches the take-profit or
   stop-loss percentage, or whose target sell price is reached;
2. otherwise buys when the price sits within two points of a Fibonacci
   retracement level (0.236 .. 0.786) of the last six hours' range.

Buy size walks the Fibonacci sequence: two consecutive wins step forward,
two consecutive losses step back. Lots are kept in memory only.

Usage::

    strategy = FibonacciStrategy(optimizer, risk, settings)
    result = await strategy.execute(condition)
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Tuple

from dex_bot.config import StrategySettings
from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.models import MarketCondition, TradeResult
from dex_bot.providers.base import SwapExecutor
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager
from dex_bot.strategies.base import TradingStrategy

LOGGER = logging.getLogger(__name__)

SEQUENCE: Tuple[int, ...] = (1, 1, 2, 3, 5, 8, 13, 21, 34, 55)
BUY_LEVELS: Tuple[float, ...] = (0.236, 0.382, 0.5, 0.618, 0.786)
LEVEL_TOLERANCE = 0.02
PRICE_PROBE_AMOUNT = 1000.0
HISTORY_SIZE = 50
MIN_HISTORY = 10
MIN_RECENT_PRICES = 3
RANGE_WINDOW_SECONDS = 6 * 60 * 60
MIN_TRADE_SIZE = 3.0
MAX_TRADE_SIZE = 50.0


@dataclass
class FibonacciLot:
    amount: float
    buy_price: float
    bought_at: float
    sequence_index: int
    target_sell_price: float

    @property
    def cost_basis(self) -> float:
        return self.amount * self.buy_price


class FibonacciStrategy(TradingStrategy):
    name = "fibonacci"

    def __init__(
        self,
        optimizer: QuoteOptimizer,
        risk: RiskManager,
        settings: StrategySettings,
        *,
        executor: SwapExecutor | None = None,
        adjuster: DynamicConfigAdjuster | None = None,
        clock: Callable[[], float] = time.time,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self._optimizer = optimizer
        self._risk = risk
        self._settings = settings
        self._executor = executor
        self.adjuster = adjuster
        self._clock = clock
        self._jitter = jitter or (lambda: random.uniform(0.95, 1.05))
        self._index = 0
        self._wins = 0
        self._losses = 0
        self._lots: List[FibonacciLot] = []
        self._history: Deque[Tuple[float, float]] = deque(maxlen=HISTORY_SIZE)
        self._fee_tier: int | None = None

    @property
    def dry_run(self) -> bool:
        return self._settings.dry_run or self._executor is None

    @property
    def lots(self) -> List[FibonacciLot]:
        return list(self._lots)

    @property
    def sequence_index(self) -> int:
        return self._index

    @property
    def price_history(self) -> List[Tuple[float, float]]:
        return list(self._history)

    @property
    def _pool(self) -> str:
        return f"{self._settings.fibonacci_stable_token}/{self._settings.fibonacci_target_token}"

    def should_activate(self, condition: MarketCondition) -> bool:
        return 0.015 < condition.volatility < 0.04 and condition.volume > 30

    async def execute(self, condition: MarketCondition | None = None) -> TradeResult:
        price = await self._update_price()
        if price is None:
            return TradeResult.failure(
                self.name,
                self._pool,
                f"no {self._settings.fibonacci_target_token} price",
                timestamp=self._clock(),
            )

        sold = await self._check_sells(price)
        if sold is not None:
            return sold
        return await self._check_buy(price)

    # -- pricing -----------------------------------------------------------

    async def _update_price(self) -> float | None:
        settings = self._settings
        try:
            quote = await self._optimizer.get_optimized_quote(
                settings.fibonacci_target_token, settings.fibonacci_stable_token, PRICE_PROBE_AMOUNT
            )
        except Exception as exc:
            LOGGER.warning("fibonacci price update failed: %s", exc)
            return None
        if quote.output_amount <= 0:
            return None

        price = quote.output_amount / PRICE_PROBE_AMOUNT
        self._fee_tier = quote.fee_tier
        self._history.append((self._clock(), price))
        return price

    def retracement_level(self, price: float) -> float | None:
        """Buy level the price sits on within the recent range, if any."""
        if len(self._history) < MIN_HISTORY:
            return None
        cutoff = self._clock() - RANGE_WINDOW_SECONDS
        recent = [value for timestamp, value in self._history if timestamp >= cutoff]
        if len(recent) < MIN_RECENT_PRICES:
            return None

        high, low = max(recent), min(recent)
        if high <= low:
            return None
        position = (price - low) / (high - low)
        for level in BUY_LEVELS:
            if abs(position - level) < LEVEL_TOLERANCE:
                return level
        return None

    # -- sizing ------------------------------------------------------------

    def calculate_trade_size(self) -> float:
        size = SEQUENCE[self._index] * self._settings.fibonacci_base_trade_size
        if self._wins >= 3:
            size *= 1.2
        elif self._losses >= 2:
            size *= 0.8
        size = max(MIN_TRADE_SIZE, min(MAX_TRADE_SIZE, size))
        return round(size * self._jitter(), 2)

    def record_outcome(self, won: bool) -> None:
        if won:
            self._wins += 1
            self._losses = 0
            if self._wins >= 2:
                self._index = min(self._index + 1, len(SEQUENCE) - 1)
        else:
            self._losses += 1
            self._wins = 0
            if self._losses >= 2:
                self._index = max(self._index - 1, 0)

    def reset(self) -> None:
        self._index = 0
        self._wins = 0
        self._losses = 0
        self._lots.clear()
        LOGGER.info("fibonacci strategy reset")

    # -- selling -----------------------------------------------------------

    async def _check_sells(self, price: float) -> TradeResult | None:
        settings = self._settings
        for lot in list(self._lots):
            change_pct = (price - lot.buy_price) / lot.buy_price * 100
            if (
                change_pct >= settings.fibonacci_take_profit_pct
                or change_pct <= -settings.fibonacci_stop_loss_pct
                or price >= lot.target_sell_price
            ):
                LOGGER.info(
                    "selling %.4f %s bought at %.6f, now %.6f (%+.2f%%)",
                    lot.amount,
                    settings.fibonacci_target_token,
                    lot.buy_price,
                    price,
                    change_pct,
                )
                return await self._sell(lot, price)
        return None

    async def _sell(self, lot: FibonacciLot, price: float) -> TradeResult:
        settings = self._settings
        pool = f"{settings.fibonacci_target_token}/{settings.fibonacci_stable_token}"
        expected = lot.amount * price

        if self.dry_run or self._executor is None:
            proceeds = expected
        else:
            tolerance = 1 - self._slippage(settings.fibonacci_slippage_bps) / 10_000
            receipt = await self._executor.swap(
                settings.fibonacci_target_token,
                settings.fibonacci_stable_token,
                lot.amount,
                expected * tolerance,
                self._fee_tier or 3000,
            )
            if not receipt.success or receipt.amount_out <= 0:
                self.record_outcome(False)
                return TradeResult.failure(
                    self.name, pool, f"sell failed: {receipt.error}", timestamp=self._clock(), errored=True
                )
            proceeds = receipt.amount_out
            await self._risk.update_position(
                settings.fibonacci_target_token, lot.amount, proceeds / lot.amount, is_add=False
            )

        self._lots.remove(lot)
        profit = proceeds - lot.cost_basis
        self.record_outcome(profit > 0)
        LOGGER.info("sold %.4f %s for %.4f, profit %.6f", lot.amount, settings.fibonacci_target_token, proceeds, profit)
        return TradeResult(
            success=True,
            profit=profit,
            volume=proceeds,
            strategy=self.name,
            pool=pool,
            timestamp=self._clock(),
        )

    # -- buying ------------------------------------------------------------

    async def _check_buy(self, price: float) -> TradeResult:
        settings = self._settings
        held_value = sum(lot.amount for lot in self._lots) * price
        if held_value >= settings.fibonacci_max_position:
            return TradeResult.failure(
                self.name,
                self._pool,
                f"max position reached: ${held_value:.2f}/${settings.fibonacci_max_position:g}",
                timestamp=self._clock(),
            )

        level = self.retracement_level(price)
        if level is None:
            return TradeResult.failure(
                self.name, self._pool, f"no buy signal at {price:.6f}", timestamp=self._clock()
            )

        size = self._trade_size(self.calculate_trade_size())
        slippage_bps = self._slippage(settings.fibonacci_slippage_bps)
        decision = self._risk.check_trade_allowed(
            self.name, settings.fibonacci_stable_token, settings.fibonacci_target_token, size, slippage_bps
        )
        if not decision.allowed:
            return TradeResult.failure(
                self.name, self._pool, decision.reason, risk_rule=decision.rule, timestamp=self._clock()
            )
        if decision.adjusted_amount is not None:
            size = decision.adjusted_amount

        LOGGER.info("fibonacci buy signal at the %.1f%% retracement, size %.2f", level * 100, size)
        if self.dry_run or self._executor is None:
            amount = size / price
        else:
            quote = await self._optimizer.get_optimized_quote(
                settings.fibonacci_stable_token, settings.fibonacci_target_token, size
            )
            receipt = await self._executor.swap(
                settings.fibonacci_stable_token,
                settings.fibonacci_target_token,
                size,
                quote.output_amount * (1 - slippage_bps / 10_000),
                quote.fee_tier,
            )
            if not receipt.success or receipt.amount_out <= 0:
                self.record_outcome(False)
                return TradeResult.failure(
                    self.name, self._pool, f"buy failed: {receipt.error}", timestamp=self._clock(), errored=True
                )
            amount = receipt.amount_out
            await self._risk.update_position(
                settings.fibonacci_target_token,
                amount,
                size / amount,
                is_add=True,
                quote_token=settings.fibonacci_stable_token,
            )

        buy_price = size / amount
        self._lots.append(
            FibonacciLot(
                amount=amount,
                buy_price=buy_price,
                bought_at=self._clock(),
                sequence_index=self._index,
                target_sell_price=buy_price * (1 + settings.fibonacci_take_profit_pct / 100),
            )
        )
        self.record_outcome(True)
        LOGGER.info("bought %.4f %s at %.6f", amount, settings.fibonacci_target_token, buy_price)
        return TradeResult(
            success=True,
            profit=0.0,
            volume=size,
            strategy=self.name,
            pool=self._pool,
            timestamp=self._clock(),
        )
