from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from dex_bot.arbitrage import ArbitrageEvaluator
from dex_bot.config import StrategySettings
from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.models import ArbitragePath, ArbitragePathRequest, MarketCondition, TradeResult
from dex_bot.providers.base import SwapExecutor
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager
from dex_bot.strategies.base import DEFAULT_VOLATILITY, TradingStrategy

LOGGER = logging.getLogger(__name__)


class ArbitrageStrategy(TradingStrategy):
    """Round-trip A->B->A arbitrage across the configured pools.

    Every pool is evaluated concurrently at its configured amount, clamped to
    the adjuster's trade size bounds. The most profitable viable path above
    the profit floor (``arbitrage_min_profit_bps`` scaled by the adjuster's
    target) is sized by the risk manager and then either simulated (dry run)
    or executed as two swaps.
    """

    name = "arbitrage"

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
        return condition.volatility < 0.03 and condition.volume > 50

    async def execute(self, condition: MarketCondition | None = None) -> TradeResult:
        pairs = self._settings.arbitrage_pairs
        if not pairs:
            return TradeResult.failure(self.name, "no-pairs-configured", "no pairs configured", timestamp=self._clock())

        requests = [
            ArbitragePathRequest(token_a, token_b, self._trade_size(amount)) for token_a, token_b, amount in pairs
        ]
        paths = await self._evaluator.evaluate_paths_concurrently(requests)

        threshold = self._profit_floor(self._settings.arbitrage_min_profit_bps)
        candidates = [path for path in paths if path.viable and path.profit_bps >= threshold]
        if not candidates:
            best = paths[0] if paths else None
            detail = f" (best {best.label}: {best.profit_bps}bps, {best.reason})" if best is not None else ""
            return TradeResult.failure(
                self.name,
                best.label if best is not None else "none",
                f"no opportunity above {threshold}bps{detail}",
                timestamp=self._clock(),
            )

        path = candidates[0]
        liquidity = path.forward_quote.liquidity if path.forward_quote is not None else None
        expected_slippage = self._optimizer.calculate_optimal_slippage(
            self._slippage(self._settings.arbitrage_slippage_bps),
            condition.volatility if condition is not None else DEFAULT_VOLATILITY,
            liquidity if liquidity is not None else 1.0,
        )
        decision = self._risk.check_trade_allowed(
            self.name, path.token_a, path.token_b, path.amount_in, expected_slippage
        )
        if not decision.allowed:
            return TradeResult.failure(
                self.name, path.label, decision.reason, risk_rule=decision.rule, timestamp=self._clock()
            )

        amount = decision.adjusted_amount if decision.adjusted_amount is not None else path.amount_in
        if self.dry_run:
            profit = path.profit * (amount / path.amount_in)
            LOGGER.info(
                "dry run %s: %.4f in, est. profit %.6f (%dbps)", path.label, amount, profit, path.profit_bps
            )
            return TradeResult(
                success=True,
                profit=profit,
                volume=amount,
                strategy=self.name,
                pool=path.label,
                timestamp=self._clock(),
            )
        return await self._execute_live(path, amount, expected_slippage)

    async def _execute_live(self, path: ArbitragePath, amount: float, slippage_bps: float) -> TradeResult:
        forward, reverse = path.forward_quote, path.reverse_quote
        if self._executor is None or forward is None or reverse is None:
            return TradeResult.failure(
                self.name, path.label, "path has no executable quotes", timestamp=self._clock(), errored=True
            )

        scale = amount / path.amount_in
        tolerance = 1 - slippage_bps / 10_000
        await asyncio.sleep(self._optimizer.get_mev_protection_delay())

        first = await self._executor.swap(
            path.token_a, path.token_b, amount, forward.output_amount * scale * tolerance, forward.fee_tier
        )
        if not first.success or first.amount_out <= 0:
            return TradeResult.failure(
                self.name,
                path.label,
                f"forward swap failed: {first.error}",
                timestamp=self._clock(),
                errored=True,
            )
        await self._risk.update_position(
            path.token_b, first.amount_out, amount / first.amount_out, is_add=True, quote_token=path.token_a
        )

        second = await self._executor.swap(
            path.token_b, path.token_a, first.amount_out, amount * tolerance, reverse.fee_tier
        )
        if not second.success:
            # The intermediate position stays on the ledger for stop-loss handling.
            return TradeResult.failure(
                self.name,
                path.label,
                f"reverse swap failed: {second.error}",
                volume=amount,
                timestamp=self._clock(),
                errored=True,
            )
        await self._risk.update_position(
            path.token_b, first.amount_out, second.amount_out / first.amount_out, is_add=False
        )

        profit = second.amount_out - amount
        LOGGER.info("executed %s: %.4f in, %.4f out, profit %.6f", path.label, amount, second.amount_out, profit)
        return TradeResult(
            success=True,
            profit=profit,
            volume=amount,
            strategy=self.name,
            pool=path.label,
            timestamp=self._clock(),
        )
