"""Injectable sources of randomized timing.

Anti-MEV delays, competition jitter and randomized reset intervals all draw
from a ``DelayProvider`` so that tests can pin the values.

Usage::

    delays = RandomDelayProvider(seed=7)
    await asyncio.sleep(delays.mev_delay())
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod


class DelayProvider(ABC):
    @abstractmethod
    def mev_delay(self) -> float:
        """Seconds to wait before submitting a swap."""
        raise NotImplementedError

    @abstractmethod
    def jitter_factor(self) -> float:
        """Multiplier applied to intervals under high competition."""
        raise NotImplementedError

    @abstractmethod
    def competition_delay(self) -> float:
        """Extra seconds to wait between cycles when bots are detected."""
        raise NotImplementedError


class RandomDelayProvider(DelayProvider):
    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)

    def mev_delay(self) -> float:
        # 1-5 s base plus up to 0.5 s jitter.
        return round(1.0 + self._rng.random() * 4.0 + self._rng.random() * 0.5, 3)

    def jitter_factor(self) -> float:
        return 0.8 + self._rng.random() * 0.4

    def competition_delay(self) -> float:
        return 2.0 + self._rng.random() * 5.0


class FixedDelayProvider(DelayProvider):
    def __init__(
        self,
        mev_delay: float = 0.0,
        jitter_factor: float = 1.0,
        competition_delay: float = 0.0,
    ) -> None:
        self._mev_delay = mev_delay
        self._jitter_factor = jitter_factor
        self._competition_delay = competition_delay

    def mev_delay(self) -> float:
        return self._mev_delay

    def jitter_factor(self) -> float:
        return self._jitter_factor

    def competition_delay(self) -> float:
        return self._competition_delay
