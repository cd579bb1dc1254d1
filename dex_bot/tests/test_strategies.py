from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Tuple

import pytest

from dex_bot.arbitrage import ArbitrageEvaluator
from dex_bot.config import RiskSettings, StrategySettings
from dex_bot.dynamic_config import DynamicConfigAdjuster
from dex_bot.models import CompetitionLevel, MarketCondition, RiskRule, SwapReceipt
from dex_bot.providers.base import QuoteProvider, SwapExecutor
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager
from dex_bot.strategies import ArbitrageStrategy, TriangularStrategy
from dex_bot.timing import FixedDelayProvider

PROFITABLE = {
    ("GALA", "GUSDC", 500): 1.02,
    ("GALA", "GUSDC", 3000): 1.01,
    ("GUSDC", "GALA", 3000): 1.0,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RateProvider(QuoteProvider):
    def __init__(self, rates: Dict[Tuple[str, str, int], float]) -> None:
        self.rates = rates

    async def quote(self, token_in: str, token_out: str, amount_in: float, fee_tier: int) -> Mapping[str, Any]:
        key = (token_in, token_out, fee_tier)
        if key not in self.rates:
            raise RuntimeError(f"no pool {token_in}/{token_out}@{fee_tier}")
        return {"outputAmount": amount_in * self.rates[key], "liquidity": 1000}


class RateExecutor(SwapExecutor):
    """Fills every swap at a fixed rate per direction unless told to fail."""

    def __init__(self, rates: Dict[Tuple[str, str], float], fail: Tuple[str, str] | None = None) -> None:
        self.rates = rates
        self.fail = fail
        self.calls: List[Tuple[str, str, float, float, int]] = []

    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        min_amount_out: float,
        fee_tier: int,
    ) -> SwapReceipt:
        self.calls.append((token_in, token_out, amount_in, min_amount_out, fee_tier))
        if (token_in, token_out) == self.fail:
            return SwapReceipt(success=False, error="slippage exceeded")
        return SwapReceipt(
            success=True,
            transaction_id=f"tx-{len(self.calls)}",
            amount_out=amount_in * self.rates[(token_in, token_out)],
        )


def _parts(rates, **risk_kw):
    optimizer = QuoteOptimizer(RateProvider(rates), clock=lambda: 1_000.0, delay_provider=FixedDelayProvider())
    evaluator = ArbitrageEvaluator(optimizer)
    risk = RiskManager(RiskSettings(**risk_kw), clock=lambda: 1_000.0)
    return evaluator, optimizer, risk


def _arbitrage(
    rates=None,
    *,
    pairs=(("GALA", "GUSDC", 10.0),),
    executor=None,
    dry_run=True,
    adjuster=None,
    **risk_kw,
):
    evaluator, optimizer, risk = _parts(PROFITABLE if rates is None else rates, **risk_kw)
    settings = StrategySettings(arbitrage_pairs=tuple(pairs), dry_run=dry_run)
    strategy = ArbitrageStrategy(
        evaluator, optimizer, risk, settings, executor=executor, adjuster=adjuster, clock=lambda: 1_000.0
    )
    return strategy, risk


def _triangular(rates, *, executor=None, dry_run=True, adjuster=None):
    evaluator, optimizer, risk = _parts(rates)
    settings = StrategySettings(dry_run=dry_run)
    strategy = TriangularStrategy(
        evaluator, optimizer, risk, settings, executor=executor, adjuster=adjuster, clock=lambda: 1_000.0
    )
    return strategy, risk


def _adjuster(volatility: float) -> DynamicConfigAdjuster:
    """Adjuster tuned at 20:00 on otherwise neutral conditions, so only volatility moves it."""
    adjuster = DynamicConfigAdjuster(clock=lambda: 1_000.0, delay_provider=FixedDelayProvider())
    adjuster.adjust_parameters(MarketCondition(volatility, 100.0, CompetitionLevel.MEDIUM, 20, 0.5))
    return adjuster


def _condition(volatility: float = 0.02, volume: float = 100.0) -> MarketCondition:
    return MarketCondition(volatility, volume, CompetitionLevel.MEDIUM, 12, 0.5)


# ---------------------------------------------------------------------------
# Arbitrage
# ---------------------------------------------------------------------------


class TestArbitrageStrategy:
    @pytest.mark.parametrize(
        "volatility,volume,expected",
        [
            (0.02, 100.0, True),
            (0.04, 100.0, False),
            (0.02, 40.0, False),
        ],
    )
    def test_should_activate(self, volatility: float, volume: float, expected: bool) -> None:
        strategy, _ = _arbitrage()
        assert strategy.should_activate(_condition(volatility, volume)) is expected

    def test_dry_run_reports_estimated_profit(self) -> None:
        strategy, _ = _arbitrage()
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.profit == pytest.approx(0.2)
        assert result.volume == pytest.approx(10.0)
        assert result.pool == "GALA->GUSDC->GALA"
        assert result.strategy == "arbitrage"

    def test_dry_run_scales_to_risk_adjusted_size(self) -> None:
        strategy, _ = _arbitrage(pairs=(("GALA", "GUSDC", 250.0),))
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.volume == pytest.approx(100.0)
        assert result.profit == pytest.approx(2.0)

    def test_flat_market_declines(self) -> None:
        rates = {
            ("GALA", "GUSDC", 500): 1.0,
            ("GALA", "GUSDC", 3000): 0.999,
            ("GUSDC", "GALA", 3000): 1.0,
        }
        strategy, _ = _arbitrage(rates)
        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.errored is False
        assert result.risk_rule is None
        assert (result.error or "").startswith("no opportunity above 50bps")

    def test_viable_path_below_strategy_threshold_declines(self) -> None:
        rates = {
            ("GALA", "GUSDC", 500): 1.003,
            ("GALA", "GUSDC", 3000): 1.0,
            ("GUSDC", "GALA", 3000): 1.0,
        }
        strategy, _ = _arbitrage(rates)
        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert "30bps" in (result.error or "")

    def test_risk_rejection_carries_rule(self) -> None:
        strategy, risk = _arbitrage()
        risk.activate_emergency_stop("halt")

        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.risk_rule is RiskRule.EMERGENCY_STOP

    def test_no_pairs(self) -> None:
        strategy, _ = _arbitrage(pairs=())
        result = asyncio.run(strategy.execute())
        assert result.success is False
        assert result.error == "no pairs configured"

    def test_dry_run_without_executor(self) -> None:
        strategy, _ = _arbitrage(dry_run=False)
        assert strategy.dry_run is True


class TestArbitrageConditionAndParameters:
    def test_execution_uses_the_condition_it_is_given(self) -> None:
        strategy, _ = _arbitrage(max_slippage_bps=52.0)

        calm = asyncio.run(strategy.execute(_condition(volatility=0.02)))
        wild = asyncio.run(strategy.execute(_condition(volatility=0.1)))

        assert calm.success is True
        assert wild.success is False
        assert wild.risk_rule is RiskRule.SLIPPAGE
        assert "53.00bps" in (wild.error or "")

    def test_high_volatility_shrinks_trade_size(self) -> None:
        calm, _ = _arbitrage(pairs=(("GALA", "GUSDC", 40.0),), adjuster=_adjuster(0.02))
        volatile, _ = _arbitrage(pairs=(("GALA", "GUSDC", 40.0),), adjuster=_adjuster(0.06))

        calm_result = asyncio.run(calm.execute())
        volatile_result = asyncio.run(volatile.execute())

        assert calm_result.volume == pytest.approx(25.0)
        assert calm_result.profit == pytest.approx(0.5)
        assert volatile_result.volume == pytest.approx(20.0)
        assert volatile_result.profit == pytest.approx(0.4)

    def test_small_amount_is_raised_to_minimum_trade_size(self) -> None:
        strategy, _ = _arbitrage(pairs=(("GALA", "GUSDC", 2.0),), adjuster=_adjuster(0.02))
        result = asyncio.run(strategy.execute())
        assert result.volume == pytest.approx(5.0)

    def test_higher_profit_target_raises_the_floor(self) -> None:
        rates = {
            ("GALA", "GUSDC", 500): 1.008,
            ("GALA", "GUSDC", 3000): 1.0,
            ("GUSDC", "GALA", 3000): 1.0,
        }
        calm, _ = _arbitrage(rates, adjuster=_adjuster(0.02))
        volatile, _ = _arbitrage(rates, adjuster=_adjuster(0.06))

        assert asyncio.run(calm.execute()).success is True
        result = asyncio.run(volatile.execute())
        assert result.success is False
        assert (result.error or "").startswith("no opportunity above 100bps")

    def test_tighter_slippage_tolerance(self) -> None:
        calm, _ = _arbitrage(adjuster=_adjuster(0.02), max_slippage_bps=40.0)
        volatile, _ = _arbitrage(adjuster=_adjuster(0.06), max_slippage_bps=40.0)

        assert asyncio.run(calm.execute()).risk_rule is RiskRule.SLIPPAGE
        assert asyncio.run(volatile.execute()).success is True


class TestArbitrageLive:
    def test_executes_both_legs(self) -> None:
        executor = RateExecutor({("GALA", "GUSDC"): 1.02, ("GUSDC", "GALA"): 1.0})
        strategy, risk = _arbitrage(executor=executor, dry_run=False)

        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.profit == pytest.approx(0.2)
        assert [(c[0], c[1]) for c in executor.calls] == [("GALA", "GUSDC"), ("GUSDC", "GALA")]
        assert executor.calls[0][4] == 500
        assert risk.positions == {}

    def test_forward_failure_is_an_error(self) -> None:
        executor = RateExecutor({("GALA", "GUSDC"): 1.02, ("GUSDC", "GALA"): 1.0}, fail=("GALA", "GUSDC"))
        strategy, risk = _arbitrage(executor=executor, dry_run=False)

        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.errored is True
        assert len(executor.calls) == 1
        assert risk.positions == {}

    def test_reverse_failure_leaves_position(self) -> None:
        executor = RateExecutor({("GALA", "GUSDC"): 1.02, ("GUSDC", "GALA"): 1.0}, fail=("GUSDC", "GALA"))
        strategy, risk = _arbitrage(executor=executor, dry_run=False)

        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.errored is True
        assert result.volume == pytest.approx(10.0)
        assert risk.positions["GUSDC"].amount == pytest.approx(10.2)


# ---------------------------------------------------------------------------
# Triangular
# ---------------------------------------------------------------------------


def _cycle_rates(last_hop: float) -> Dict[Tuple[str, str, int], float]:
    return {
        ("GALA", "GUSDC", 3000): 1.0,
        ("GUSDC", "GUSDT", 3000): 1.0,
        ("GUSDT", "GALA", 3000): last_hop,
    }


class TestTriangularStrategy:
    def test_should_activate(self) -> None:
        strategy, _ = _triangular(_cycle_rates(1.01))
        assert strategy.should_activate(_condition(0.02, 100.0)) is True
        assert strategy.should_activate(_condition(0.005, 100.0)) is False

    def test_dry_run_takes_best_quotable_cycle(self) -> None:
        strategy, _ = _triangular(_cycle_rates(1.01))
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.pool == "GALA->GUSDC->GUSDT->GALA"
        assert result.profit == pytest.approx(0.1)
        assert result.volume == pytest.approx(10.0)

    def test_below_threshold(self) -> None:
        strategy, _ = _triangular(_cycle_rates(1.002))
        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.error == "best cycle 20bps below 30bps"

    def test_nothing_quotable(self) -> None:
        strategy, _ = _triangular({})
        result = asyncio.run(strategy.execute())
        assert result.success is False
        assert result.error == "no triangular path could be quoted"

    def test_higher_profit_target_raises_the_floor(self) -> None:
        calm, _ = _triangular(_cycle_rates(1.005), adjuster=_adjuster(0.02))
        volatile, _ = _triangular(_cycle_rates(1.005), adjuster=_adjuster(0.06))

        assert asyncio.run(calm.execute()).success is True
        result = asyncio.run(volatile.execute())
        assert result.success is False
        assert result.error == "best cycle 50bps below 60bps"

    def test_live_walks_every_hop(self) -> None:
        executor = RateExecutor({("GALA", "GUSDC"): 1.0, ("GUSDC", "GUSDT"): 1.0, ("GUSDT", "GALA"): 1.01})
        strategy, _ = _triangular(_cycle_rates(1.01), executor=executor, dry_run=False)

        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.profit == pytest.approx(0.1)
        assert [(c[0], c[1]) for c in executor.calls] == [
            ("GALA", "GUSDC"),
            ("GUSDC", "GUSDT"),
            ("GUSDT", "GALA"),
        ]

    def test_live_hop_failure(self) -> None:
        executor = RateExecutor(
            {("GALA", "GUSDC"): 1.0, ("GUSDC", "GUSDT"): 1.0, ("GUSDT", "GALA"): 1.01},
            fail=("GUSDC", "GUSDT"),
        )
        strategy, _ = _triangular(_cycle_rates(1.01), executor=executor, dry_run=False)

        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.errored is True
        assert result.error == "hop GUSDC->GUSDT failed: slippage exceeded"
