"""Arbitrage opportunity evaluation on top of the quote optimizer.

Usage::

    evaluator = ArbitrageEvaluator(optimizer)
    paths = await evaluator.evaluate_paths_concurrently(
        [ArbitragePathRequest("GALA", "GUSDC", 10.0)]
    )
    best = paths[0] if paths and paths[0].viable else None

Per-path failures never escape a batch: they come back as non-viable
results carrying the failure reason.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from typing import List, Sequence

from dex_bot.models import ArbitragePath, ArbitragePathRequest, PoolComparison, Quote
from dex_bot.quotes import QuoteOptimizer

LOGGER = logging.getLogger(__name__)

SINGLE_POOL_REASON = "single pool - no arbitrage opportunity"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ArbitrageEvaluator:
    def __init__(
        self,
        optimizer: QuoteOptimizer,
        *,
        min_profit_bps: int = 20,
        min_price_diff_pct: float = 0.1,
        provisional_amount: float = 1.0,
    ) -> None:
        self._optimizer = optimizer
        self._min_profit_bps = min_profit_bps
        self._min_price_diff_pct = min_price_diff_pct
        self._provisional_amount = provisional_amount

    @property
    def min_profit_bps(self) -> int:
        return self._min_profit_bps

    # -- round-trip paths --------------------------------------------------

    async def evaluate_paths_concurrently(self, paths: Sequence[ArbitragePathRequest]) -> List[ArbitragePath]:
        LOGGER.info("evaluating %d arbitrage paths concurrently", len(paths))
        outcomes = await asyncio.gather(
            *(self._evaluate_path(request) for request in paths),
            return_exceptions=True,
        )

        evaluated: List[ArbitragePath] = []
        for request, outcome in zip(paths, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                LOGGER.warning("path %s failed: %s", request.label, outcome)
                evaluated.append(
                    self._non_viable(request, reason=f"evaluation failed: {str(outcome) or type(outcome).__name__}")
                )
                continue
            evaluated.append(outcome)

        evaluated.sort(key=lambda path: path.profit_bps, reverse=True)
        viable = sum(1 for path in evaluated if path.viable)
        LOGGER.info("%d/%d arbitrage paths viable", viable, len(evaluated))
        return evaluated

    async def _evaluate_path(self, request: ArbitragePathRequest) -> ArbitragePath:
        probes, provisional = await asyncio.gather(
            self._optimizer.probe_fee_tiers(request.token_a, request.token_b, request.amount_in),
            self._optimizer.get_optimized_quote(request.token_b, request.token_a, self._provisional_amount),
            return_exceptions=True,
        )
        if isinstance(probes, BaseException):
            raise probes

        sources = sum(1 for probe in probes if probe.ok)
        if sources < 2:
            reason = SINGLE_POOL_REASON if sources == 1 else "no liquidity for forward leg"
            return self._non_viable(request, sources=sources, reason=reason)
        if isinstance(provisional, BaseException):
            if isinstance(provisional, asyncio.CancelledError):
                raise provisional
            return self._non_viable(request, sources=sources, reason=f"no reverse liquidity: {provisional}")

        best = self._optimizer.select_best(request.token_a, request.token_b, probes)
        forward = best.quote
        if forward is None:
            return self._non_viable(request, sources=sources, reason="forward leg returned no quote")
        # Reverse leg is re-quoted at the size the forward leg actually delivers.
        reverse = (
            await self._optimizer.get_optimized_quote(request.token_b, request.token_a, forward.output_amount)
        ).quote

        profit = reverse.output_amount - request.amount_in
        profit_bps = _round_half_up(profit / request.amount_in * 10_000)
        viable = profit_bps > self._min_profit_bps
        return ArbitragePath(
            token_a=request.token_a,
            token_b=request.token_b,
            amount_in=request.amount_in,
            forward_quote=forward,
            reverse_quote=reverse,
            profit=profit,
            profit_bps=profit_bps,
            viable=viable,
            sources=sources,
            reason="ok" if viable else f"profit {profit_bps}bps below {self._min_profit_bps}bps",
        )

    @staticmethod
    def _non_viable(request: ArbitragePathRequest, *, reason: str, sources: int = 0) -> ArbitragePath:
        return ArbitragePath(
            token_a=request.token_a,
            token_b=request.token_b,
            amount_in=request.amount_in,
            forward_quote=None,
            reverse_quote=None,
            profit=0.0,
            profit_bps=0,
            viable=False,
            sources=sources,
            reason=reason,
        )

    # -- gains -------------------------------------------------------------

    async def path_gain(self, tokens: Sequence[str], amount: float) -> float:
        """Walks ``tokens`` hop by hop, feeding each output into the next hop.

        Returns ``(final - amount) / amount``. Quote failures propagate.
        """
        if len(tokens) < 2:
            raise ValueError("a path needs at least two tokens")
        if amount <= 0:
            raise ValueError("amount must be positive")

        current = amount
        for token_in, token_out in zip(tokens, tokens[1:]):
            current = (await self._optimizer.get_optimized_quote(token_in, token_out, current)).output_amount
        return (current - amount) / amount

    async def round_trip_gain(self, token_a: str, token_b: str, amount: float) -> float:
        return await self.path_gain((token_a, token_b, token_a), amount)

    # -- pool comparison ---------------------------------------------------

    async def compare_pools(self, token_in: str, token_out: str, amount_in: float) -> PoolComparison:
        probes = await self._optimizer.probe_fee_tiers(token_in, token_out, amount_in)
        quotes = tuple(probe.quote for probe in probes if probe.ok and probe.quote is not None)

        if len(quotes) < 2:
            return PoolComparison(
                token_in=token_in,
                token_out=token_out,
                amount_in=amount_in,
                quotes=quotes,
                best_buy=quotes[0] if quotes else None,
                best_sell=None,
                price_diff=0.0,
                price_diff_pct=0.0,
                gross_profit_bps=0,
                viable=False,
                reason=SINGLE_POOL_REASON if quotes else "no pools quoted",
            )

        spreads: List[tuple[float, Quote, Quote]] = []
        for first, second in itertools.combinations(quotes, 2):
            low, high = sorted((first, second), key=lambda q: q.output_amount)
            spreads.append(((high.output_amount - low.output_amount) / low.output_amount * 100, high, low))
        best_pct, high, low = max(spreads, key=lambda spread: spread[0])

        viable = best_pct > self._min_price_diff_pct
        gross_bps = _round_half_up(best_pct * 100)
        if viable:
            LOGGER.info(
                "pool spread %s->%s: fee %d vs %d, %.3f%% (%dbps)",
                token_in,
                token_out,
                high.fee_tier,
                low.fee_tier,
                best_pct,
                gross_bps,
            )
        return PoolComparison(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            quotes=quotes,
            best_buy=high,
            best_sell=low,
            price_diff=high.output_amount - low.output_amount,
            price_diff_pct=best_pct,
            gross_profit_bps=gross_bps,
            viable=viable,
            reason="ok" if viable else f"spread {best_pct:.3f}% below {self._min_price_diff_pct}%",
        )
