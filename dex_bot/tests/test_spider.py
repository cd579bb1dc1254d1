from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Tuple

import pytest

from dex_bot.config import RiskSettings, StrategySettings
from dex_bot.models import CompetitionLevel, MarketCondition, SwapReceipt
from dex_bot.providers.base import QuoteProvider, SwapExecutor
from dex_bot.quotes import QuoteOptimizer
from dex_bot.risk import RiskManager
from dex_bot.strategies import LiquiditySpiderStrategy
from dex_bot.timing import FixedDelayProvider

POOLS = (("GALA", "GUSDC"), ("GUSDC", "GUSDT"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class PairRates(QuoteProvider):
    def __init__(self, rates: Dict[Tuple[str, str], float]) -> None:
        self.rates = rates

    async def quote(self, token_in: str, token_out: str, amount_in: float, fee_tier: int) -> Mapping[str, Any]:
        if (token_in, token_out) not in self.rates:
            raise RuntimeError(f"no pool {token_in}/{token_out}")
        return {"outputAmount": amount_in * self.rates[(token_in, token_out)], "liquidity": 1000}


class PairExecutor(SwapExecutor):
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
        return SwapReceipt(success=True, transaction_id="tx", amount_out=amount_in * self.rates[(token_in, token_out)])


def _rates() -> Dict[Tuple[str, str], float]:
    return {
        ("GALA", "GUSDC"): 1.02,
        ("GUSDC", "GALA"): 0.99,
        ("GUSDC", "GUSDT"): 1.0,
        ("GUSDT", "GUSDC"): 1.0,
    }


def _spider(rates=None, *, executor=None, dry_run=True, **settings_kw):
    clock = FakeClock()
    provider = PairRates(_rates() if rates is None else rates)
    optimizer = QuoteOptimizer(provider, clock=clock, delay_provider=FixedDelayProvider())
    risk = RiskManager(RiskSettings(), clock=clock)
    settings_kw.setdefault("spider_pools", POOLS)
    settings = StrategySettings(dry_run=dry_run, **settings_kw)
    strategy = LiquiditySpiderStrategy(optimizer, risk, settings, executor=executor, clock=clock)
    return strategy, provider, risk, clock


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class TestScan:
    def test_should_activate(self) -> None:
        strategy, *_ = _spider()

        def condition(volatility: float, volume: float) -> MarketCondition:
            return MarketCondition(volatility, volume, CompetitionLevel.MEDIUM, 12, 0.5)

        assert strategy.should_activate(condition(0.02, 50.0)) is True
        assert strategy.should_activate(condition(0.02, 5.0)) is False
        assert strategy.should_activate(condition(0.09, 50.0)) is False

    def test_scores_imbalanced_pool(self) -> None:
        strategy, *_ = _spider()
        opp = asyncio.run(strategy.analyze_pool("GALA", "GUSDC"))

        assert opp is not None
        assert opp.forward_out == pytest.approx(5.1)
        assert opp.profit_bps == 98
        assert opp.imbalance_bps == pytest.approx(97.05, abs=0.01)
        assert opp.score == pytest.approx(29.35, abs=0.01)

    def test_flat_pool_scores_below_cutoff(self) -> None:
        strategy, *_ = _spider()
        opp = asyncio.run(strategy.analyze_pool("GUSDC", "GUSDT"))

        assert opp is not None
        assert opp.score < 5

    def test_opens_on_best_pool(self) -> None:
        strategy, *_ = _spider()
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.volume == pytest.approx(5.0)
        assert result.profit == 0.0
        assert result.pool == "1 positions | opened 1 | closed 0"
        position = strategy.positions["GALA/GUSDC"]
        assert position.token_out_amount == pytest.approx(5.1)
        assert position.fee_tier == 500

    def test_scan_waits_for_interval(self) -> None:
        strategy, *_ = _spider()
        asyncio.run(strategy.execute())
        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.error == "no spider opportunity"
        assert result.errored is False
        assert len(strategy.positions) == 1

    def test_nothing_worth_scoring(self) -> None:
        flat = {
            ("GALA", "GUSDC"): 1.0,
            ("GUSDC", "GALA"): 1.0,
            ("GUSDC", "GUSDT"): 1.0,
            ("GUSDT", "GUSDC"): 1.0,
        }
        strategy, *_ = _spider(flat)
        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.error == "no spider opportunity"
        assert strategy.positions == {}

    def test_capacity_keeps_highest_score(self) -> None:
        rates = _rates()
        rates[("GUSDC", "GUSDT")] = 1.01
        strategy, *_ = _spider(rates, spider_max_positions=1)
        asyncio.run(strategy.execute())

        assert list(strategy.positions) == ["GUSDC/GUSDT"]

    def test_risk_block_opens_nothing(self) -> None:
        strategy, _, risk, _ = _spider()
        risk.activate_emergency_stop("test")
        result = asyncio.run(strategy.execute())

        assert result.error == "no spider opportunity"
        assert strategy.positions == {}


# ---------------------------------------------------------------------------
# Position management
# ---------------------------------------------------------------------------


class TestManagement:
    def _opened(self, **settings_kw):
        settings_kw.setdefault("spider_scan_interval_seconds", 7_200.0)
        strategy, provider, risk, clock = _spider(**settings_kw)
        asyncio.run(strategy.execute())
        return strategy, provider, risk, clock

    def test_profit_target_closes(self) -> None:
        strategy, provider, _, clock = self._opened()
        provider.rates[("GUSDC", "GALA")] = 1.05
        clock.now += 60
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.profit == pytest.approx(0.355)
        assert result.volume == pytest.approx(5.355)
        assert result.pool == "0 positions | opened 0 | closed 1"
        assert strategy.positions == {}

    def test_stop_loss_closes(self) -> None:
        strategy, provider, _, clock = self._opened()
        provider.rates[("GUSDC", "GALA")] = 0.9
        clock.now += 60
        result = asyncio.run(strategy.execute())

        assert result.profit == pytest.approx(-0.41)
        assert strategy.positions == {}

    def test_max_hold_closes(self) -> None:
        strategy, _, _, clock = self._opened()
        clock.now += 3_601
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.profit == pytest.approx(0.049)
        assert strategy.positions == {}

    def test_small_move_holds(self) -> None:
        strategy, _, _, clock = self._opened()
        clock.now += 60
        asyncio.run(strategy.execute())

        assert "GALA/GUSDC" in strategy.positions


# ---------------------------------------------------------------------------
# Live
# ---------------------------------------------------------------------------


class TestLive:
    def test_open_records_risk_position(self) -> None:
        executor = PairExecutor({("GALA", "GUSDC"): 1.02})
        strategy, _, risk, _ = _spider(executor=executor, dry_run=False)
        asyncio.run(strategy.execute())

        token_in, token_out, amount_in, min_out, fee_tier = executor.calls[0]
        assert (token_in, token_out, fee_tier) == ("GALA", "GUSDC", 500)
        assert amount_in == pytest.approx(5.0)
        assert min_out == pytest.approx(5.1 * 0.95)
        position = risk.positions["GUSDC"]
        assert position.amount == pytest.approx(5.1)
        assert position.quote_token == "GALA"

    def test_failed_close_keeps_position(self) -> None:
        executor = PairExecutor({("GALA", "GUSDC"): 1.02, ("GUSDC", "GALA"): 1.05})
        strategy, provider, risk, clock = _spider(
            executor=executor, dry_run=False, spider_scan_interval_seconds=7_200.0
        )
        asyncio.run(strategy.execute())
        provider.rates[("GUSDC", "GALA")] = 1.05
        executor.fail = ("GUSDC", "GALA")
        clock.now += 60
        result = asyncio.run(strategy.execute())

        assert result.success is False
        assert result.errored is True
        assert result.error == "spider swap failed: GALA/GUSDC: slippage exceeded"
        assert "GALA/GUSDC" in strategy.positions
        assert "GUSDC" in risk.positions

    def test_close_releases_risk_position(self) -> None:
        executor = PairExecutor({("GALA", "GUSDC"): 1.02, ("GUSDC", "GALA"): 1.05})
        strategy, provider, risk, clock = _spider(
            executor=executor, dry_run=False, spider_scan_interval_seconds=7_200.0
        )
        asyncio.run(strategy.execute())
        provider.rates[("GUSDC", "GALA")] = 1.05
        clock.now += 60
        result = asyncio.run(strategy.execute())

        assert result.success is True
        assert result.profit == pytest.approx(0.355)
        assert "GUSDC" not in risk.positions
