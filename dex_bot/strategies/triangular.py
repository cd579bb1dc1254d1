from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable, List, Sequence, Tuple

from dex_bot.arbitrage import ArbitrageEvaluator
from dex_bot.config import StrategySettings
from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.models import MarketCondition, TradeResult
from dex_bot.providers.base import SwapExecutor
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager
from dex_bot.strategies.base import TradingStrategy

LOGGER = logging.getLogger(__name__)


def _label(path: Sequence[str]) -> str:
    return "->".join(path)


class TriangularStrategy(TradingStrategy):
    """Multi-hop cycles such as GALA->GUSDC->GUSDT->GALA."""

    name = "triangular"

    def __init__(
        self,
        evaluator: ArbitrageEvaluator,
        optimizer: QuoteOptimizer,
        risk: RiskManager,
        settings: StrategySettings,
        *,
        executor: SwapExecutor | None = None,
        adjuster: DynamicConfigAdjuster | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._evaluator = evaluator
        self._optimizer = optimizer
        self._risk = risk
        self._settings = settings
        self._executor = executor
        self.adjuster = adjuster
        self._clock = clock

    @property
    def dry_run(self) -> bool:
        return self._settings.dry_run or self._executor is None

    def should_activate(self, condition: MarketCondition) -> bool:
        return condition.volatility > 0.01 and condition.volume > 50

    async def execute(self, condition: MarketCondition | None = None) -> TradeResult:
        paths = self._settings.triangular_paths
        amount = self._trade_size(self._settings.triangular_base_amount)
        if not paths:
            return TradeResult.failure(self.name, "no-paths-configured", "no paths configured", timestamp=self._clock())

        outcomes = await asyncio.gather(
            *(self._evaluator.path_gain(path, amount) for path in paths),
            return_exceptions=True,
        )
        gains: List[Tuple[float, Tuple[str, ...]]] = []
        for path, outcome in zip(paths, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                LOGGER.debug("triangular path %s unavailable: %s", _label(path), outcome)
                continue
            gains.append((outcome, tuple(path)))

        if not gains:
            return TradeResult.failure(self.name, "none", "no triangular path could be quoted", timestamp=self._clock())

        gain, best = max(gains, key=lambda item: item[0])
        gain_bps = int(math.floor(gain * 10_000 + 0.5))
        threshold = self._profit_floor(self._settings.triangular_min_profit_bps)
        if gain_bps < threshold:
            return TradeResult.failure(
                self.name,
                _label(best),
                f"best cycle {gain_bps}bps below {threshold}bps",
                timestamp=self._clock(),
            )

        slippage_bps = self._slippage(self._settings.arbitrage_slippage_bps)
        decision = self._risk.check_trade_allowed(self.name, best[0], best[1], amount, slippage_bps)
        if not decision.allowed:
            return TradeResult.failure(
                self.name, _label(best), decision.reason, risk_rule=decision.rule, timestamp=self._clock()
            )
        size = decision.adjusted_amount if decision.adjusted_amount is not None else amount

        if self.dry_run:
            LOGGER.info("dry run %s: %.4f in, est. gain %dbps", _label(best), size, gain_bps)
            return TradeResult(
                success=True,
                profit=gain * size,
                volume=size,
                strategy=self.name,
                pool=_label(best),
                timestamp=self._clock(),
            )
        return await self._execute_live(best, size, slippage_bps)

    async def _execute_live(self, path: Tuple[str, ...], size: float, slippage_bps: float) -> TradeResult:
        if self._executor is None:
            return TradeResult.failure(
                self.name, _label(path), "no swap executor", timestamp=self._clock(), errored=True
            )
        tolerance = 1 - slippage_bps / 10_000
        await asyncio.sleep(self._optimizer.get_mev_protection_delay())

        current = size
        for token_in, token_out in zip(path, path[1:]):
            quote = await self._optimizer.get_optimized_quote(token_in, token_out, current)
            receipt = await self._executor.swap(
                token_in, token_out, current, quote.output_amount * tolerance, quote.fee_tier
            )
            if not receipt.success:
                return TradeResult.failure(
                    self.name,
                    _label(path),
                    f"hop {token_in}->{token_out} failed: {receipt.error}",
                    volume=size,
                    timestamp=self._clock(),
                    errored=True,
                )
            current = receipt.amount_out

        profit = current - size
        LOGGER.info("executed %s: %.4f in, %.4f out", _label(path), size, current)
        return TradeResult(
            success=True,
            profit=profit,
            volume=size,
            strategy=self.name,
            pool=_label(path),
            timestamp=self._clock(),
        )
