from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from dex_bot.competition import CompetitionDetector
from dex_bot.models import MarketCondition

LOGGER = logging.getLogger(__name__)


class MarketConditionSupplier(ABC):
    """Pull-based source of market snapshots, polled once per engine cycle."""

    @abstractmethod
    async def fetch(self) -> MarketCondition:
        raise NotImplementedError


class HeuristicMarketSupplier(MarketConditionSupplier):
    """Time-of-day heuristics plus live competition level and realized win rate.

    Busier during 09:00-17:00, quieter overnight (22:00-06:00).
    """

    def __init__(
        self,
        detector: CompetitionDetector,
        performance: Callable[[], float] | None = None,
        *,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._detector = detector
        self._performance = performance
        self._now = now

    async def fetch(self) -> MarketCondition:
        hour = self._now().hour
        volatility, volume = 0.02, 100.0
        if 9 <= hour <= 17:
            volatility, volume = 0.025, 150.0
        elif hour >= 22 or hour <= 6:
            volatility, volume = 0.015, 80.0

        recent = self._performance() if self._performance is not None else 0.5
        return MarketCondition(
            volatility=volatility,
            volume=volume,
            competition_level=self._detector.competition_level(),
            time_of_day=hour,
            recent_performance=max(0.0, min(1.0, recent)),
        )
