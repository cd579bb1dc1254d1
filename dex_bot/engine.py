from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List

from dex_bot.arbitrage import ArbitrageEvaluator
from dex_bot.competition import CompetitionDetector, ObservedTrade
from dex_bot.config import AppSettings
from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.errors import StaleMarketData
from dex_bot.market import HeuristicMarketSupplier, MarketConditionSupplier
from dex_bot.models import CycleAction, CycleRecord, MarketCondition, StopLossEvent, TradeResult
from dex_bot.pnl import PnLTracker
from dex_bot.providers.base import QuoteProvider, SwapExecutor
from dex_bot.providers.http import HttpQuoteProvider
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager, SwapLiquidator
from dex_bot.scheduler import StrategyScheduler
from dex_bot.strategies import (
    ArbitrageStrategy,
    FibonacciStrategy,
    LiquiditySpiderStrategy,
    TradingStrategy,
    TriangularStrategy,
)
from dex_bot.timing import DelayProvider, RandomDelayProvider

LOGGER = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Every long-lived collaborator of the engine, owned by the entry point."""

    settings: AppSettings
    provider: QuoteProvider
    optimizer: QuoteOptimizer
    evaluator: ArbitrageEvaluator
    risk: RiskManager
    scheduler: StrategyScheduler
    dynamic_config: DynamicConfigAdjuster
    detector: CompetitionDetector
    market: MarketConditionSupplier
    delays: DelayProvider
    strategies: List[TradingStrategy] = field(default_factory=list)
    executor: SwapExecutor | None = None

    async def aclose(self) -> None:
        for strategy in self.strategies:
            await strategy.aclose()
        if self.executor is not None:
            await self.executor.aclose()
        await self.provider.aclose()


def build_context(
    settings: AppSettings,
    *,
    provider: QuoteProvider | None = None,
    executor: SwapExecutor | None = None,
    market: MarketConditionSupplier | None = None,
    strategies: List[TradingStrategy] | None = None,
    delays: DelayProvider | None = None,
    clock: Callable[[], float] = time.time,
) -> EngineContext:
    delays = delays or RandomDelayProvider()
    provider = provider or HttpQuoteProvider(settings.provider)

    optimizer = QuoteOptimizer(provider, settings.quotes, clock=clock, delay_provider=delays)
    evaluator = ArbitrageEvaluator(optimizer)
    liquidator = None
    if executor is not None:
        liquidator = SwapLiquidator(
            executor, settings.risk.quote_token, slippage_bps=settings.risk.max_slippage_bps
        )
    risk = RiskManager(settings.risk, PnLTracker(), liquidator=liquidator, clock=clock)
    dynamic_config = DynamicConfigAdjuster(
        interval_seconds=settings.engine.dynamic_config_interval_seconds,
        clock=clock,
        delay_provider=delays,
    )

    if strategies is None:
        shared = dict(executor=executor, adjuster=dynamic_config, clock=clock)
        strategies = [
            ArbitrageStrategy(evaluator, optimizer, risk, settings.strategy, **shared),
            TriangularStrategy(evaluator, optimizer, risk, settings.strategy, **shared),
            FibonacciStrategy(optimizer, risk, settings.strategy, **shared),
            LiquiditySpiderStrategy(optimizer, risk, settings.strategy, **shared),
        ]
    scheduler = StrategyScheduler(strategies, settings.scheduler, clock=clock)
    detector = CompetitionDetector(clock=clock, delay_provider=delays)
    if market is None:
        market = HeuristicMarketSupplier(detector, scheduler.recent_performance)

    return EngineContext(
        settings=settings,
        provider=provider,
        optimizer=optimizer,
        evaluator=evaluator,
        risk=risk,
        scheduler=scheduler,
        dynamic_config=dynamic_config,
        detector=detector,
        market=market,
        delays=delays,
        strategies=list(strategies),
        executor=executor,
    )


class TradingEngine:
    def __init__(
        self,
        context: EngineContext,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._ctx = context
        self._settings = context.settings.engine
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self._history: Deque[CycleRecord] = deque(maxlen=max(1, self._settings.record_history))
        self._cycles = 0

    @property
    def context(self) -> EngineContext:
        return self._ctx

    @property
    def history(self) -> List[CycleRecord]:
        return list(self._history)

    @property
    def cycles(self) -> int:
        return self._cycles

    async def run_forever(self, run_once: bool | None = None, max_cycles: int | None = None) -> None:
        single = self._settings.run_once if run_once is None else run_once

        try:
            while True:
                loop_start = time.perf_counter()
                try:
                    record = await self.run_once()
                except Exception as exc:
                    LOGGER.exception("trading cycle failed")
                    record = self._record(
                        CycleRecord(
                            timestamp=self._clock(),
                            strategy=self._ctx.scheduler.get_current_strategy(),
                            action=CycleAction.ERROR,
                            reason=f"cycle error: {exc}",
                            condition=MarketCondition.safe_defaults(self._now().hour),
                            delay_seconds=self._settings.error_backoff_seconds,
                        )
                    )

                if single or (max_cycles is not None and self._cycles >= max_cycles):
                    return

                elapsed = time.perf_counter() - loop_start
                sleep_seconds = record.delay_seconds
                if record.action is not CycleAction.ERROR:
                    sleep_seconds = max(0.0, sleep_seconds - elapsed)
                if sleep_seconds > 0:
                    await self._sleep(sleep_seconds)
        finally:
            await self._ctx.aclose()

    async def run_once(self) -> CycleRecord:
        ctx = self._ctx
        await self.mark_positions()
        condition = await self._market_condition()

        ctx.scheduler.select_strategy(condition)
        ctx.dynamic_config.adjust_parameters(condition)

        result = await ctx.scheduler.execute_current_strategy(condition)
        ctx.risk.record_trade_result(result)
        if result.volume > 0:
            ctx.detector.add_trade(
                ObservedTrade(pool=result.pool, amount=result.volume, timestamp=result.timestamp, strategy=result.strategy)
            )

        action, reason = self._classify(result)
        delay = ctx.scheduler.get_delay_for_strategy(result.strategy)
        if ctx.detector.detect_bots():
            extra = ctx.detector.random_delay()
            LOGGER.info("competition detected, adding %.2fs delay", extra)
            delay += extra

        if action is CycleAction.EXECUTE:
            LOGGER.info("%s executed on %s: profit %.6f", result.strategy, result.pool, result.profit)
        else:
            LOGGER.info("%s %s on %s: %s", result.strategy, action.value, result.pool, reason)

        return self._record(
            CycleRecord(
                timestamp=self._clock(),
                strategy=result.strategy,
                action=action,
                reason=reason,
                condition=condition,
                result=result,
                delay_seconds=delay,
            )
        )

    async def mark_positions(self) -> List[StopLossEvent]:
        """Prices every open position in its quote token and runs the stop-loss check."""
        ctx = self._ctx
        events: List[StopLossEvent] = []
        for token, position in ctx.risk.positions.items():
            quote_token = position.quote_token or ctx.settings.risk.quote_token
            if token == quote_token or position.amount <= 0:
                continue
            try:
                quote = await ctx.optimizer.get_optimized_quote(token, quote_token, position.amount)
            except Exception as exc:
                LOGGER.warning("cannot mark %s in %s: %s", token, quote_token, exc)
                continue
            events.extend(await ctx.risk.mark_price(token, quote.output_amount / position.amount))
        return events

    def _record(self, record: CycleRecord) -> CycleRecord:
        self._history.append(record)
        self._cycles += 1
        return record

    @staticmethod
    def _classify(result: TradeResult) -> tuple[CycleAction, str]:
        if result.success:
            return CycleAction.EXECUTE, "ok"
        if result.errored:
            return CycleAction.ERROR, result.error or "strategy failed"
        # Risk rejections and "nothing worth trading" both decline the cycle.
        if result.risk_rule is not None:
            return CycleAction.REJECT, result.error or result.risk_rule.value
        return CycleAction.REJECT, result.error or "no trade"

    async def _market_condition(self) -> MarketCondition:
        try:
            return await self._ctx.market.fetch()
        except Exception as exc:
            stale = StaleMarketData(f"market condition supplier failed: {exc}")
            LOGGER.warning("%s; using safe defaults", stale)
            return MarketCondition.safe_defaults(self._now().hour)

    def status(self) -> Dict[str, Any]:
        ctx = self._ctx
        last = self._history[-1] if self._history else None
        return {
            "cycles": self._cycles,
            "current_strategy": ctx.scheduler.get_current_strategy(),
            "strategies": {
                name: {
                    "total_trades": metrics.total_trades,
                    "profitable_trades": metrics.profitable_trades,
                    "total_volume": metrics.total_volume,
                    "total_profit": metrics.total_profit,
                    "win_rate": metrics.win_rate,
                }
                for name, metrics in ctx.scheduler.get_all_performance_metrics().items()
            },
            "risk": ctx.risk.snapshot(),
            "quotes": ctx.optimizer.performance_metrics(),
            "parameters": ctx.dynamic_config.current,
            "competition": ctx.detector.competition_level().value,
            "last_cycle": None
            if last is None
            else {"strategy": last.strategy, "action": last.action.value, "reason": last.reason},
        }
