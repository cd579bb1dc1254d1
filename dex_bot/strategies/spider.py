"""Liquidity spider: small positions spread across many thin pools.

Each cycle first manages open positions, closing one at the profit target,
the stop loss or the maximum hold time. Then, at most once per scan
interval, every configured pool is scored at the base position size and
positions are opened on the best ones until ``spider_max_positions`` are
held.

Scoring uses one forward (A->B) and one reverse (B->A) quote of the same
size::

    forward_price = forward_out / size
    reverse_price = size / reverse_out
    imbalance_bps = |forward_price - reverse_price| / forward_price * 10_000
    profit        = forward_out * reverse_out / size - size
    score = min(20, profit_bps / 5) + min(15, imbalance_bps / 10)
            + min(10, min(forward_out, reverse_out) / 100)

Pools scoring 5 or less are skipped; at most five are kept per scan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from dex_bot.config import StrategySettings
from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.models import MarketCondition, TradeResult
from dex_bot.providers.base import SwapExecutor
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager
from dex_bot.strategies.base import TradingStrategy

LOGGER = logging.getLogger(__name__)

MIN_SCORE = 5.0
MAX_OPPORTUNITIES = 5
OPEN_SLIPPAGE_BPS = 100.0
# Minimum output accepted when opening or closing a position.
SWAP_TOLERANCE = 0.95


@dataclass(frozen=True)
class SpiderOpportunity:
    token_a: str
    token_b: str
    fee_tier: int
    size: float
    forward_out: float
    profit_bps: int
    imbalance_bps: float
    liquidity_depth: float
    score: float

    @property
    def key(self) -> str:
        return f"{self.token_a}/{self.token_b}"

    @property
    def forward_rate(self) -> float:
        return self.forward_out / self.size


@dataclass(frozen=True)
class SpiderPosition:
    token_in: str
    token_out: str
    amount: float
    token_out_amount: float
    opened_at: float
    fee_tier: int

    @property
    def key(self) -> str:
        return f"{self.token_in}/{self.token_out}"


class LiquiditySpiderStrategy(TradingStrategy):
    name = "liquidity-spider"

    def __init__(
        self,
        optimizer: QuoteOptimizer,
        risk: RiskManager,
        settings: StrategySettings,
        *,
        executor: SwapExecutor | None = None,
        adjuster: DynamicConfigAdjuster | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._optimizer = optimizer
        self._risk = risk
        self._settings = settings
        self._executor = executor
        self.adjuster = adjuster
        self._clock = clock
        self._positions: Dict[str, SpiderPosition] = {}
        self._last_scan: float | None = None

    @property
    def dry_run(self) -> bool:
        return self._settings.dry_run or self._executor is None

    @property
    def positions(self) -> Dict[str, SpiderPosition]:
        return dict(self._positions)

    def should_activate(self, condition: MarketCondition) -> bool:
        return condition.volume > 10 and condition.volatility < 0.08

    async def execute(self, condition: MarketCondition | None = None) -> TradeResult:
        errors: List[str] = []
        realized, closed_volume, closed = await self._manage_positions(errors)

        opened, opened_volume = 0, 0.0
        if len(self._positions) < self._settings.spider_max_positions:
            opportunities = await self.scan()
            opened, opened_volume = await self._open_positions(opportunities, errors)

        summary = f"{len(self._positions)} positions | opened {opened} | closed {closed}"
        if opened or closed:
            return TradeResult(
                success=True,
                profit=realized,
                volume=opened_volume + closed_volume,
                strategy=self.name,
                pool=summary,
                timestamp=self._clock(),
            )
        if errors:
            return TradeResult.failure(
                self.name, summary, f"spider swap failed: {errors[-1]}", timestamp=self._clock(), errored=True
            )
        return TradeResult.failure(self.name, summary, "no spider opportunity", timestamp=self._clock())

    # -- scanning ----------------------------------------------------------

    async def scan(self) -> List[SpiderOpportunity]:
        now = self._clock()
        if self._last_scan is not None and now - self._last_scan < self._settings.spider_scan_interval_seconds:
            return []
        self._last_scan = now

        pools = self._settings.spider_pools
        outcomes = await asyncio.gather(
            *(self.analyze_pool(token_a, token_b) for token_a, token_b in pools),
            return_exceptions=True,
        )
        opportunities: List[SpiderOpportunity] = []
        for (token_a, token_b), outcome in zip(pools, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                LOGGER.debug("spider pool %s/%s unavailable: %s", token_a, token_b, outcome)
                continue
            if outcome is not None and outcome.score > MIN_SCORE:
                opportunities.append(outcome)

        opportunities.sort(key=lambda opp: opp.score, reverse=True)
        LOGGER.info("spider scanned %d pools, %d opportunities", len(pools), len(opportunities))
        return opportunities[:MAX_OPPORTUNITIES]

    async def analyze_pool(self, token_a: str, token_b: str) -> SpiderOpportunity | None:
        size = self._trade_size(self._settings.spider_position_size)
        forward, reverse = await asyncio.gather(
            self._optimizer.get_optimized_quote(token_a, token_b, size),
            self._optimizer.get_optimized_quote(token_b, token_a, size),
        )
        forward_out, reverse_out = forward.output_amount, reverse.output_amount
        if forward_out <= 0 or reverse_out <= 0:
            return None

        forward_price = forward_out / size
        reverse_price = size / reverse_out
        imbalance_bps = abs(forward_price - reverse_price) / forward_price * 10_000
        profit = forward_out * reverse_out / size - size
        profit_bps = int(round(profit / size * 10_000))
        depth = min(forward_out, reverse_out)
        score = min(20.0, profit_bps / 5) + min(15.0, imbalance_bps / 10) + min(10.0, depth / 100)

        return SpiderOpportunity(
            token_a=token_a,
            token_b=token_b,
            fee_tier=forward.fee_tier,
            size=size,
            forward_out=forward_out,
            profit_bps=profit_bps,
            imbalance_bps=imbalance_bps,
            liquidity_depth=depth,
            score=score,
        )

    # -- opening -----------------------------------------------------------

    async def _open_positions(self, opportunities: List[SpiderOpportunity], errors: List[str]) -> Tuple[int, float]:
        opened, volume = 0, 0.0
        for opp in opportunities:
            if len(self._positions) >= self._settings.spider_max_positions:
                break
            if opp.key in self._positions:
                continue

            decision = self._risk.check_trade_allowed(
                self.name, opp.token_a, opp.token_b, opp.size, self._slippage(OPEN_SLIPPAGE_BPS)
            )
            if not decision.allowed:
                LOGGER.info("spider position %s blocked: %s", opp.key, decision.reason)
                continue
            amount = decision.adjusted_amount if decision.adjusted_amount is not None else opp.size
            expected_out = opp.forward_rate * amount

            if self.dry_run or self._executor is None:
                received = expected_out
            else:
                receipt = await self._executor.swap(
                    opp.token_a, opp.token_b, amount, expected_out * SWAP_TOLERANCE, opp.fee_tier
                )
                if not receipt.success or receipt.amount_out <= 0:
                    LOGGER.error("spider position %s failed to open: %s", opp.key, receipt.error)
                    errors.append(f"{opp.key}: {receipt.error}")
                    continue
                received = receipt.amount_out
                await self._risk.update_position(
                    opp.token_b, received, amount / received, is_add=True, quote_token=opp.token_a
                )

            self._positions[opp.key] = SpiderPosition(
                token_in=opp.token_a,
                token_out=opp.token_b,
                amount=amount,
                token_out_amount=received,
                opened_at=self._clock(),
                fee_tier=opp.fee_tier,
            )
            LOGGER.info(
                "spider position %s opened: %.4f in, %.6f out, score %.1f", opp.key, amount, received, opp.score
            )
            opened += 1
            volume += amount
        return opened, volume

    # -- managing ----------------------------------------------------------

    async def _manage_positions(self, errors: List[str]) -> Tuple[float, float, int]:
        settings = self._settings
        realized, volume, closed = 0.0, 0.0, 0
        for key, position in list(self._positions.items()):
            try:
                quote = await self._optimizer.get_optimized_quote(
                    position.token_out, position.token_in, position.token_out_amount
                )
            except Exception as exc:
                LOGGER.warning("cannot value spider position %s: %s", key, exc)
                continue

            value = quote.output_amount
            profit_bps = (value - position.amount) / position.amount * 10_000
            if profit_bps >= settings.spider_profit_target_bps:
                reason = f"profit target hit: {profit_bps:.0f}bps"
            elif profit_bps <= -settings.spider_stop_loss_bps:
                reason = f"stop loss hit: {profit_bps:.0f}bps"
            elif self._clock() - position.opened_at > settings.spider_max_hold_seconds:
                reason = "maximum hold time reached"
            else:
                continue

            LOGGER.info("closing spider position %s: %s", key, reason)
            if self.dry_run or self._executor is None:
                proceeds = value
            else:
                receipt = await self._executor.swap(
                    position.token_out,
                    position.token_in,
                    position.token_out_amount,
                    value * SWAP_TOLERANCE,
                    quote.fee_tier,
                )
                if not receipt.success:
                    LOGGER.error("spider position %s failed to close, kept: %s", key, receipt.error)
                    errors.append(f"{key}: {receipt.error}")
                    continue
                proceeds = receipt.amount_out
                await self._risk.update_position(
                    position.token_out,
                    position.token_out_amount,
                    proceeds / position.token_out_amount,
                    is_add=False,
                )

            del self._positions[key]
            realized += proceeds - position.amount
            volume += proceeds
            closed += 1
        return realized, volume, closed
