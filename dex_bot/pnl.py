"""Realized P&L and volume bookkeeping for the current trading day.

Usage::

    pnl = PnLTracker()
    pnl.record(result)          # TradeResult from a strategy execution
    pnl.daily_pnl, pnl.daily_volume, pnl.total_trades
    pnl.reset_day()             # called by the risk manager on date roll
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

from dex_bot.models import TradeResult

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PnLSnapshot:
    daily_pnl: float
    daily_volume: float
    daily_trades: int
    total_pnl: float
    total_volume: float
    total_trades: int


class PnLTracker:
    """Accumulates realized profit and traded volume.

    Daily figures restart on ``reset_day``; lifetime totals never do.
    Only executed trades (``success`` or a non-zero volume) count toward
    volume; risk rejections and errors carry no volume and are ignored.
    """

    def __init__(self) -> None:
        self._daily_pnl = 0.0
        self._daily_volume = 0.0
        self._daily_trades = 0
        self._total_pnl = 0.0
        self._total_volume = 0.0
        self._total_trades = 0

    @property
    def daily_pnl(self) -> float:
        return self._daily_pnl

    @property
    def daily_volume(self) -> float:
        return self._daily_volume

    @property
    def daily_trades(self) -> int:
        return self._daily_trades

    @property
    def total_pnl(self) -> float:
        return self._total_pnl

    @property
    def total_trades(self) -> int:
        return self._total_trades

    def record(self, result: TradeResult) -> None:
        if not result.success and result.volume <= 0:
            return
        self.record_fill(result.profit, result.volume)

    def record_fill(self, profit: float, volume: float) -> None:
        self._daily_pnl += profit
        self._total_pnl += profit
        self._daily_volume += max(0.0, volume)
        self._total_volume += max(0.0, volume)
        self._daily_trades += 1
        self._total_trades += 1

    def reset_day(self) -> None:
        LOGGER.info(
            "P&L day closed: pnl=%.4f volume=%.2f trades=%d",
            self._daily_pnl,
            self._daily_volume,
            self._daily_trades,
        )
        self._daily_pnl = 0.0
        self._daily_volume = 0.0
        self._daily_trades = 0

    def snapshot(self) -> PnLSnapshot:
        return PnLSnapshot(
            daily_pnl=self._daily_pnl,
            daily_volume=self._daily_volume,
            daily_trades=self._daily_trades,
            total_pnl=self._total_pnl,
            total_volume=self._total_volume,
            total_trades=self._total_trades,
        )

    def as_dict(self) -> Dict[str, float]:
        snap = self.snapshot()
        return {
            "daily_pnl": snap.daily_pnl,
            "daily_volume": snap.daily_volume,
            "daily_trades": float(snap.daily_trades),
            "total_pnl": snap.total_pnl,
            "total_volume": snap.total_volume,
            "total_trades": float(snap.total_trades),
        }
