"""Strategy selection and execution bookkeeping.

Two rotation policies, fixed at construction:

* ``score`` (default) -- every switch interval, score each strategy whose
  activation predicate accepts the market condition and run the best one.
  A tie with the incumbent keeps the incumbent. An operator-forced strategy
  bypasses scoring entirely.
* ``round_robin`` -- walk a fixed order, starting after the current strategy,
  and take the first one that activates; when none does, take the next one.

Usage::

    scheduler = StrategyScheduler(strategies, SchedulerSettings())
    scheduler.select_strategy(condition)
    result = await scheduler.execute_current_strategy(condition)
    delay = scheduler.get_delay_for_strategy()
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Dict, List, Mapping, Sequence

from dex_bot.config import SchedulerSettings
from dex_bot.errors import ConfigurationError, StrategyExecutionError
from dex_bot.models import CompetitionLevel, MarketCondition, PerformanceMetrics, RotationMode, TradeResult
from dex_bot.strategies.base import TradingStrategy

LOGGER = logging.getLogger(__name__)

STRATEGY_DELAYS: Mapping[str, float] = {
    "arbitrage": 60.0,
    "triangular": 90.0,
    "fibonacci": 120.0,
    "liquidity-spider": 45.0,
}
DEFAULT_DELAY_SECONDS = 60.0


class StrategyScheduler:
    def __init__(
        self,
        strategies: Sequence[TradingStrategy],
        settings: SchedulerSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or SchedulerSettings()
        self._clock = clock
        self._strategies: Dict[str, TradingStrategy] = {}
        for strategy in strategies:
            if strategy.name in self._strategies:
                raise ConfigurationError(f"duplicate strategy name {strategy.name!r}")
            self._strategies[strategy.name] = strategy
        if not self._strategies:
            raise ConfigurationError("at least one strategy must be registered")

        self._metrics: Dict[str, PerformanceMetrics] = {
            name: PerformanceMetrics(last_updated=clock()) for name in self._strategies
        }
        # Round-robin walks the configured order, restricted to registered strategies.
        self._order: List[str] = [name for name in self._settings.strategy_order if name in self._strategies]
        self._order += [name for name in self._strategies if name not in self._order]

        forced = self._settings.forced_strategy
        if forced is not None and forced not in self._strategies:
            raise ConfigurationError(f"FORCE_STRATEGY {forced!r} is not a registered strategy")

        if self._settings.rotation_mode is RotationMode.SCORE and forced is not None:
            self._current = forced
            LOGGER.info("strategy forced to %s", forced)
        elif self._settings.rotation_mode is RotationMode.ROUND_ROBIN:
            self._current = self._order[0]
        elif self._settings.default_strategy in self._strategies:
            self._current = self._settings.default_strategy
        else:
            self._current = self._order[0]

        self._last_switch = clock()
        LOGGER.info(
            "scheduler mode=%s strategies=%s current=%s",
            self._settings.rotation_mode.value,
            ",".join(self._order),
            self._current,
        )

    @property
    def rotation_mode(self) -> RotationMode:
        return self._settings.rotation_mode

    @property
    def strategy_names(self) -> List[str]:
        return list(self._order)

    def get_current_strategy(self) -> str:
        return self._current

    # -- selection ---------------------------------------------------------

    def select_strategy(self, condition: MarketCondition) -> str:
        settings = self._settings
        if settings.rotation_mode is RotationMode.SCORE and settings.forced_strategy is not None:
            self._current = settings.forced_strategy
            return self._current

        now = self._clock()
        if now - self._last_switch < settings.switch_interval_seconds:
            return self._current

        if settings.rotation_mode is RotationMode.ROUND_ROBIN:
            chosen = self._next_round_robin(condition)
        else:
            chosen = self._best_scored(condition)

        if chosen != self._current:
            LOGGER.info("switching strategy %s -> %s", self._current, chosen)
            self._current = chosen
        self._last_switch = now
        return self._current

    def _next_round_robin(self, condition: MarketCondition) -> str:
        count = len(self._order)
        start = self._order.index(self._current)
        for step in range(1, count + 1):
            name = self._order[(start + step) % count]
            if self._activates(name, condition):
                return name
        return self._order[(start + 1) % count]

    def _best_scored(self, condition: MarketCondition) -> str:
        best_name = self._current
        best_score: float | None = None
        if self._activates(self._current, condition):
            best_score = self.score_strategy(self._current, condition)

        for name in self._order:
            if name == self._current or not self._activates(name, condition):
                continue
            score = self.score_strategy(name, condition)
            # Strictly greater: ties keep the incumbent.
            if best_score is None or score > best_score:
                best_name, best_score = name, score
        return best_name

    def _activates(self, name: str, condition: MarketCondition) -> bool:
        try:
            return bool(self._strategies[name].should_activate(condition))
        except Exception:
            LOGGER.exception("activation check failed for %s", name)
            return False

    def score_strategy(self, name: str, condition: MarketCondition) -> float:
        metrics = self._metrics[name]
        score = metrics.win_rate * 100 + metrics.total_profit * 10

        if name == "arbitrage" and condition.volatility > 0.05:
            score += 50
        if name == "triangular" and condition.volatility < 0.01:
            score += 30
        if condition.volume < 100:
            if name == "fibonacci":
                score += 20
            elif name == "liquidity-spider":
                score += 30
        if 9 <= condition.time_of_day <= 17:
            if name == "triangular":
                score += 25
        elif name == "arbitrage":
            score += 25
        if name == "fibonacci" and condition.competition_level is CompetitionLevel.HIGH:
            score += 40
        return score

    # -- execution ---------------------------------------------------------

    async def execute_current_strategy(self, condition: MarketCondition | None = None) -> TradeResult:
        name = self._current
        strategy = self._strategies[name]
        try:
            result = await strategy.execute(condition)
        except Exception as exc:
            error = StrategyExecutionError(name, exc)
            LOGGER.exception("%s", error)
            result = TradeResult.failure(
                name, "unknown", str(error), timestamp=self._clock(), errored=True
            )

        self._update_metrics(name, result)
        return result

    def _update_metrics(self, name: str, result: TradeResult) -> None:
        metrics = self._metrics[name]
        metrics.total_trades += 1
        metrics.total_volume += result.volume
        if result.success and result.profit > 0:
            metrics.profitable_trades += 1
            metrics.total_profit += result.profit
        metrics.win_rate = metrics.profitable_trades / metrics.total_trades
        metrics.last_updated = self._clock()

    def get_delay_for_strategy(self, name: str | None = None) -> float:
        return STRATEGY_DELAYS.get(name or self._current, DEFAULT_DELAY_SECONDS)

    # -- reporting ---------------------------------------------------------

    def get_strategy_performance(self, name: str) -> PerformanceMetrics | None:
        metrics = self._metrics.get(name)
        return replace(metrics) if metrics is not None else None

    def get_all_performance_metrics(self) -> Dict[str, PerformanceMetrics]:
        return {name: replace(metrics) for name, metrics in self._metrics.items()}

    def recent_performance(self) -> float:
        """Aggregate win rate across all strategies, 0.5 before any trade."""
        total = sum(metrics.total_trades for metrics in self._metrics.values())
        if total == 0:
            return 0.5
        profitable = sum(metrics.profitable_trades for metrics in self._metrics.values())
        return profitable / total
