"""Detection of competing trading bots from recent trade flow.

Looks for machine signatures in the last ``max_trades`` observed trades:
regular inter-trade intervals, round amounts, repeated identical amounts
and clustering in 5-minute wall-clock buckets. Each signature kind counts
once; the number of distinct kinds seen drives the competition level.

Usage::

    detector = CompetitionDetector()
    detector.add_trade(ObservedTrade(pool="GALA/GUSDC", amount=25.0, timestamp=now))
    if detector.detect_bots():
        await asyncio.sleep(detector.random_delay())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

import numpy as np

from dex_bot.models import CompetitionLevel
from dex_bot.timing import DelayProvider, RandomDelayProvider

LOGGER = logging.getLogger(__name__)

TRADE_RETENTION_SECONDS = 3600.0
SIGNATURE_RETENTION_SECONDS = 1800.0
TIME_BUCKET_SECONDS = 300.0

_RECOMMENDATIONS = {
    "interval": "add random delays between trades (2-7 seconds)",
    "round-amounts": "use odd trade amounts",
    "identical-amounts": "vary trade sizes by 10-15%",
    "time-based": "randomize trading intervals",
}


@dataclass(frozen=True)
class ObservedTrade:
    pool: str
    amount: float
    timestamp: float
    strategy: str = ""


@dataclass(frozen=True)
class BotSignature:
    pattern: str
    last_seen: float
    interval: float = 0.0
    amounts: Tuple[float, ...] = field(default_factory=tuple)


class CompetitionDetector:
    def __init__(
        self,
        *,
        max_trades: int = 100,
        detection_threshold: int = 3,
        clock: Callable[[], float] = time.time,
        delay_provider: DelayProvider | None = None,
    ) -> None:
        self._max_trades = max_trades
        self._threshold = detection_threshold
        self._clock = clock
        self._delays = delay_provider or RandomDelayProvider()
        self._trades: List[ObservedTrade] = []
        self._signatures: Dict[str, BotSignature] = {}

    @property
    def trades(self) -> List[ObservedTrade]:
        return list(self._trades)

    def add_trade(self, trade: ObservedTrade) -> None:
        self._trades.append(trade)
        if len(self._trades) > self._max_trades:
            self._trades = self._trades[-self._max_trades :]
        self._expire()
        self._analyze()

    def _expire(self) -> None:
        now = self._clock()
        self._trades = [t for t in self._trades if now - t.timestamp <= TRADE_RETENTION_SECONDS]
        expired = [p for p, sig in self._signatures.items() if now - sig.last_seen > SIGNATURE_RETENTION_SECONDS]
        for pattern in expired:
            del self._signatures[pattern]

    def _analyze(self) -> None:
        if not self._trades:
            return
        now = self._clock()
        timestamps = np.array([t.timestamp for t in self._trades], dtype=float)
        amounts = np.array([t.amount for t in self._trades], dtype=float)

        interval = self._regular_interval(timestamps)
        if interval is not None:
            self._mark("interval", now, interval=interval)

        round_mask = self._round_amount_mask(amounts)
        if int(round_mask.sum()) >= self._threshold:
            self._mark("round-amounts", now, amounts=tuple(float(a) for a in amounts[round_mask]))

        values, counts = np.unique(amounts[amounts > 0], return_counts=True)
        repeated = values[counts >= self._threshold]
        if repeated.size:
            self._mark("identical-amounts", now, amounts=tuple(float(a) for a in repeated))

        buckets = np.floor(timestamps / TIME_BUCKET_SECONDS)
        _, bucket_counts = np.unique(buckets, return_counts=True)
        if bucket_counts.size and int(bucket_counts.max()) >= self._threshold:
            self._mark("time-based", now)

    def _regular_interval(self, timestamps: np.ndarray) -> float | None:
        if timestamps.size < 5:
            return None
        intervals = np.rint(np.diff(timestamps))
        intervals = intervals[intervals > 0]
        if not intervals.size:
            return None
        values, counts = np.unique(intervals, return_counts=True)
        hits = values[counts >= self._threshold]
        if not hits.size:
            return None
        return float(values[np.argmax(counts)])

    @staticmethod
    def _round_amount_mask(amounts: np.ndarray) -> np.ndarray:
        positive = amounts > 0
        last_digit = np.mod(amounts, 10)
        ends_round = np.isclose(last_digit, 0) | np.isclose(last_digit, 5) | np.isclose(last_digit, 10)
        with np.errstate(divide="ignore", invalid="ignore"):
            exponent = np.log10(np.where(positive, amounts, 1.0))
        power_of_ten = np.isclose(exponent, np.round(exponent))
        return positive & (ends_round | power_of_ten)

    def _mark(self, pattern: str, now: float, *, interval: float = 0.0, amounts: Tuple[float, ...] = ()) -> None:
        if pattern not in self._signatures:
            LOGGER.warning("bot signature detected: %s", pattern)
        self._signatures[pattern] = BotSignature(pattern=pattern, last_seen=now, interval=interval, amounts=amounts)

    # -- queries -----------------------------------------------------------

    def detect_bots(self) -> bool:
        return bool(self._signatures)

    def competition_level(self) -> CompetitionLevel:
        count = len(self._signatures)
        if count == 0:
            return CompetitionLevel.LOW
        if count <= 2:
            return CompetitionLevel.MEDIUM
        return CompetitionLevel.HIGH

    def signatures(self) -> List[BotSignature]:
        return list(self._signatures.values())

    def avoidance_recommendations(self) -> List[str]:
        advice = [_RECOMMENDATIONS[p] for p in _RECOMMENDATIONS if p in self._signatures]
        return advice or ["no avoidance needed"]

    def random_delay(self) -> float:
        return self._delays.competition_delay()

    def reset(self) -> None:
        self._trades.clear()
        self._signatures.clear()
        LOGGER.info("competition detection reset")
