"""Periodic retuning of trading parameters from market conditions.

Each adjustment restarts from the immutable base parameters and applies
five cumulative passes in a fixed order: volatility, volume, competition,
time of day, recent performance. Every pass sees the previous pass's output
and clamps its own outputs to fixed bounds.

Usage::

    adjuster = DynamicConfigAdjuster()
    params = adjuster.adjust_parameters(condition)
    params.max_trade_size, params.target_profitability

Strategies hold the adjuster and read the current parameters through
``clamp_trade_size``, ``profit_floor_bps`` and ``slippage_bps``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from dex_bot.errors import ConfigurationError
from dex_bot.models import CompetitionLevel, MarketCondition
from dex_bot.timing import DelayProvider, RandomDelayProvider

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingParameters:
    """Parameters consumed by strategies.

    Parameters
    ----------
    target_profitability:
        Required output/input ratio, e.g. 1.015 for a 1.5% target.
    max_trade_size / min_trade_size:
        Trade size bounds in quote-token units.
    reset_interval_seconds:
        Pause between strategy resets; jittered under high competition.
    slippage_tolerance:
        Slippage tolerance in percent, capped at 1.2 under competition.
    gas_limit:
        Gas budget passed through to the swap executor.
    """

    target_profitability: float = 1.015
    max_trade_size: float = 25.0
    min_trade_size: float = 5.0
    reset_interval_seconds: float = 60.0
    slippage_tolerance: float = 0.8
    gas_limit: int = 300_000


class DynamicConfigAdjuster:
    def __init__(
        self,
        base: TradingParameters | None = None,
        *,
        interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        delay_provider: DelayProvider | None = None,
    ) -> None:
        if interval_seconds < 300:
            raise ConfigurationError("dynamic config cadence must be at least 5 minutes")
        self._base = base or TradingParameters()
        self._current = self._base
        self._interval = interval_seconds
        self._clock = clock
        self._delays = delay_provider or RandomDelayProvider()
        self._last_adjustment: float | None = None

    @property
    def base(self) -> TradingParameters:
        return self._base

    @property
    def current(self) -> TradingParameters:
        return self._current

    @property
    def last_adjustment(self) -> float | None:
        return self._last_adjustment

    def adjust_parameters(self, condition: MarketCondition) -> TradingParameters:
        now = self._clock()
        if self._last_adjustment is not None and now - self._last_adjustment < self._interval:
            return self._current
        self._last_adjustment = now

        params = self._base
        params = self._adjust_for_volatility(params, condition.volatility)
        params = self._adjust_for_volume(params, condition.volume)
        params = self._adjust_for_competition(params, condition.competition_level)
        params = self._adjust_for_time_of_day(params, condition.time_of_day)
        params = self._adjust_for_performance(params, condition.recent_performance)
        self._current = params

        LOGGER.info(
            "parameters adjusted: target=%.4f size=[%.2f, %.2f] reset=%.0fs slippage=%.3f",
            params.target_profitability,
            params.min_trade_size,
            params.max_trade_size,
            params.reset_interval_seconds,
            params.slippage_tolerance,
        )
        return params

    # -- strategy views ----------------------------------------------------

    def clamp_trade_size(self, amount: float) -> float:
        params = self._current
        return min(max(amount, params.min_trade_size), params.max_trade_size)

    def profit_floor_bps(self, configured_bps: float) -> int:
        """Scales a configured profit floor by the current target's margin over the base target.

        A base target of 1.015 moved to 1.03 doubles the floor; moved to 1.01 it
        drops to two thirds.
        """
        base_margin = self._base.target_profitability - 1
        if base_margin <= 0:
            return int(round(configured_bps))
        current_margin = max(0.0, self._current.target_profitability - 1)
        return int(round(configured_bps * current_margin / base_margin))

    def slippage_bps(self, configured_bps: float) -> float:
        """Scales a configured slippage budget the way slippage_tolerance moved from base."""
        if self._base.slippage_tolerance <= 0:
            return configured_bps
        return configured_bps * self._current.slippage_tolerance / self._base.slippage_tolerance

    # -- passes ------------------------------------------------------------

    @staticmethod
    def _adjust_for_volatility(params: TradingParameters, volatility: float) -> TradingParameters:
        if volatility > 0.05:
            return replace(
                params,
                target_profitability=1.03,
                max_trade_size=max(15.0, params.max_trade_size * 0.8),
                slippage_tolerance=min(0.6, params.slippage_tolerance * 0.9),
            )
        if volatility < 0.01:
            return replace(
                params,
                target_profitability=1.01,
                max_trade_size=min(40.0, params.max_trade_size * 1.2),
                slippage_tolerance=min(1.0, params.slippage_tolerance * 1.1),
            )
        return params

    @staticmethod
    def _adjust_for_volume(params: TradingParameters, volume: float) -> TradingParameters:
        if volume < 50:
            return replace(
                params,
                max_trade_size=max(10.0, params.max_trade_size * 0.7),
                min_trade_size=max(3.0, params.min_trade_size * 0.8),
            )
        if volume > 200:
            return replace(
                params,
                max_trade_size=min(50.0, params.max_trade_size * 1.3),
                min_trade_size=min(10.0, params.min_trade_size * 1.2),
            )
        return params

    def _adjust_for_competition(self, params: TradingParameters, level: CompetitionLevel) -> TradingParameters:
        if level is CompetitionLevel.HIGH:
            return replace(
                params,
                reset_interval_seconds=float(round(self._base.reset_interval_seconds * self._delays.jitter_factor())),
                max_trade_size=max(15.0, params.max_trade_size * 0.8),
                slippage_tolerance=min(1.2, params.slippage_tolerance * 1.1),
            )
        if level is CompetitionLevel.LOW:
            return replace(
                params,
                reset_interval_seconds=self._base.reset_interval_seconds,
                max_trade_size=self._base.max_trade_size,
                slippage_tolerance=self._base.slippage_tolerance,
            )
        return params

    @staticmethod
    def _adjust_for_time_of_day(params: TradingParameters, hour: int) -> TradingParameters:
        if 9 <= hour <= 17:
            return replace(
                params,
                target_profitability=max(1.01, params.target_profitability * 0.95),
                max_trade_size=min(50.0, params.max_trade_size * 1.1),
            )
        if hour >= 22 or hour <= 6:
            return replace(
                params,
                target_profitability=min(1.025, params.target_profitability * 1.05),
                max_trade_size=max(15.0, params.max_trade_size * 0.9),
            )
        return params

    @staticmethod
    def _adjust_for_performance(params: TradingParameters, performance: float) -> TradingParameters:
        if performance > 0.8:
            return replace(
                params,
                max_trade_size=min(50.0, params.max_trade_size * 1.1),
                target_profitability=max(1.01, params.target_profitability * 0.98),
            )
        if performance < 0.3:
            return replace(
                params,
                max_trade_size=max(10.0, params.max_trade_size * 0.8),
                target_profitability=min(1.025, params.target_profitability * 1.02),
            )
        return params

    # -- base management ---------------------------------------------------

    def reset_to_base(self) -> TradingParameters:
        self._current = self._base
        LOGGER.info("parameters reset to base")
        return self._current

    def update_base(self, **changes: Any) -> TradingParameters:
        known = {f.name for f in dataclasses.fields(TradingParameters)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigurationError(f"unknown trading parameters: {', '.join(unknown)}")
        self._base = replace(self._base, **changes)
        self._current = replace(self._current, **changes)
        LOGGER.info("base parameters updated: %s", changes)
        return self._base

    def summary(self) -> str:
        params = self._current
        last = (
            time.strftime("%H:%M:%S", time.localtime(self._last_adjustment))
            if self._last_adjustment is not None
            else "never"
        )
        return "\n".join(
            [
                "Dynamic Configuration Summary",
                f"  profit target:      {(params.target_profitability - 1) * 100:.2f}%",
                f"  max trade size:     ${params.max_trade_size:g}",
                f"  min trade size:     ${params.min_trade_size:g}",
                f"  reset interval:     {params.reset_interval_seconds:g}s",
                f"  slippage tolerance: {params.slippage_tolerance:.2f}%",
                f"  gas limit:          {params.gas_limit}",
                f"  last adjustment:    {last}",
            ]
        )
