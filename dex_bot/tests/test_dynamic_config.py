from __future__ import annotations

import itertools

import pytest

from dex_bot.dynamic_config import DynamicConfigAdjuster, TradingParameters
from dex_bot.errors import ConfigurationError
from dex_bot.models import CompetitionLevel, MarketCondition
from dex_bot.timing import FixedDelayProvider


class FakeClock:
    def __init__(self, now: float = 10_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _condition(**kw) -> MarketCondition:
    values = dict(
        volatility=0.02,
        volume=100.0,
        competition_level=CompetitionLevel.MEDIUM,
        time_of_day=20,
        recent_performance=0.5,
    )
    values.update(kw)
    return MarketCondition(**values)


def _adjuster(clock: FakeClock | None = None, jitter: float = 1.0) -> DynamicConfigAdjuster:
    return DynamicConfigAdjuster(
        clock=clock or FakeClock(),
        delay_provider=FixedDelayProvider(jitter_factor=jitter),
    )


def test_neutral_evening_keeps_base() -> None:
    params = _adjuster().adjust_parameters(_condition())
    assert params == TradingParameters()


def test_midday_lowers_target_and_grows_size() -> None:
    params = _adjuster().adjust_parameters(_condition(time_of_day=12))
    assert params.target_profitability == pytest.approx(1.01)
    assert params.max_trade_size == pytest.approx(27.5)


def test_volatile_contested_market() -> None:
    params = _adjuster(jitter=1.1).adjust_parameters(
        _condition(volatility=0.06, competition_level=CompetitionLevel.HIGH, time_of_day=12)
    )

    assert params.target_profitability == pytest.approx(1.01)
    assert params.max_trade_size == pytest.approx(17.6)
    assert params.slippage_tolerance == pytest.approx(0.66)
    assert params.reset_interval_seconds == 66.0


def test_low_competition_reverts_to_base() -> None:
    params = _adjuster().adjust_parameters(_condition(volatility=0.005, competition_level=CompetitionLevel.LOW))

    assert params.target_profitability == pytest.approx(1.01)
    assert params.max_trade_size == pytest.approx(25.0)
    assert params.slippage_tolerance == pytest.approx(0.8)
    assert params.reset_interval_seconds == 60.0


def test_night_with_poor_performance() -> None:
    params = _adjuster().adjust_parameters(_condition(time_of_day=23, recent_performance=0.1))
    assert params.target_profitability == pytest.approx(1.025)
    assert params.max_trade_size == pytest.approx(18.0)


@pytest.mark.parametrize(
    "volume,max_size,min_size",
    [
        (300.0, 32.5, 6.0),
        (10.0, 17.5, 4.0),
    ],
)
def test_volume_scales_trade_sizes(volume: float, max_size: float, min_size: float) -> None:
    params = _adjuster().adjust_parameters(_condition(volume=volume))
    assert params.max_trade_size == pytest.approx(max_size)
    assert params.min_trade_size == pytest.approx(min_size)


def test_outputs_stay_within_bounds() -> None:
    grid = itertools.product(
        (0.001, 0.02, 0.09),
        (5.0, 100.0, 500.0),
        tuple(CompetitionLevel),
        (3, 12, 20),
        (0.1, 0.5, 0.95),
    )
    for volatility, volume, level, hour, performance in grid:
        params = _adjuster(jitter=1.2).adjust_parameters(
            MarketCondition(volatility, volume, level, hour, performance)
        )
        assert 10.0 <= params.max_trade_size <= 50.0
        assert 3.0 <= params.min_trade_size <= 10.0
        assert params.slippage_tolerance <= 1.2
        assert 1.01 <= params.target_profitability <= 1.03


class TestCadence:
    def test_first_call_adjusts_immediately(self) -> None:
        adjuster = _adjuster()
        assert adjuster.last_adjustment is None
        adjuster.adjust_parameters(_condition(time_of_day=12))
        assert adjuster.last_adjustment == 10_000.0
        assert adjuster.current.max_trade_size == pytest.approx(27.5)

    def test_within_interval_returns_previous(self) -> None:
        clock = FakeClock()
        adjuster = _adjuster(clock)
        first = adjuster.adjust_parameters(_condition(time_of_day=12))

        clock.now += 299
        second = adjuster.adjust_parameters(_condition(volume=10.0))

        assert second == first

    def test_recomputes_from_base_after_interval(self) -> None:
        clock = FakeClock()
        adjuster = _adjuster(clock)
        first = adjuster.adjust_parameters(_condition(time_of_day=12))

        clock.now += 300
        second = adjuster.adjust_parameters(_condition(time_of_day=12))

        # Same condition, same answer: passes never compound across adjustments.
        assert second == first

    def test_interval_below_five_minutes_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            DynamicConfigAdjuster(interval_seconds=60)


class TestBaseManagement:
    def test_reset_to_base(self) -> None:
        adjuster = _adjuster()
        adjuster.adjust_parameters(_condition(time_of_day=12))
        assert adjuster.reset_to_base() == TradingParameters()

    def test_update_base(self) -> None:
        adjuster = _adjuster()
        base = adjuster.update_base(max_trade_size=30.0)

        assert base.max_trade_size == 30.0
        assert adjuster.current.max_trade_size == 30.0
        assert adjuster.adjust_parameters(_condition(time_of_day=12)).max_trade_size == pytest.approx(33.0)

    def test_update_base_rejects_unknown_fields(self) -> None:
        with pytest.raises(ConfigurationError):
            _adjuster().update_base(max_leverage=3)

    def test_summary(self) -> None:
        adjuster = _adjuster()
        text = adjuster.summary()
        assert "Dynamic Configuration Summary" in text
        assert "never" in text


# ---------------------------------------------------------------------------
# Strategy views
# ---------------------------------------------------------------------------


class TestStrategyViews:
    def test_base_parameters_pass_values_through(self) -> None:
        adjuster = _adjuster()

        assert adjuster.clamp_trade_size(10.0) == 10.0
        assert adjuster.profit_floor_bps(50) == 50
        assert adjuster.slippage_bps(100.0) == pytest.approx(100.0)

    def test_trade_size_clamped_to_current_bounds(self) -> None:
        adjuster = _adjuster()
        adjuster.adjust_parameters(_condition(volatility=0.06))

        assert adjuster.clamp_trade_size(2.0) == 5.0
        assert adjuster.clamp_trade_size(40.0) == pytest.approx(20.0)

    def test_volatile_market_doubles_profit_floor_and_tightens_slippage(self) -> None:
        adjuster = _adjuster()
        adjuster.adjust_parameters(_condition(volatility=0.06))

        assert adjuster.profit_floor_bps(50) == 100
        assert adjuster.slippage_bps(100.0) == pytest.approx(75.0)

    def test_midday_lowers_profit_floor(self) -> None:
        adjuster = _adjuster()
        adjuster.adjust_parameters(_condition(time_of_day=12))

        assert adjuster.profit_floor_bps(50) == 33
