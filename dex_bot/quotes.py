"""Quote cache and fee-tier optimizer.

Fetches quotes from the upstream provider, caches them for a short TTL and
picks the most efficient fee tier per token pair.

Usage::

    optimizer = QuoteOptimizer(provider, QuoteSettings())
    result = await optimizer.get_optimized_quote("GALA", "GUSDC", 10.0)
    result.from_cache, result.fee_tier, result.output_amount

Cache entries are keyed by (token_in, token_out, amount_in) and expire
lazily: stale entries are ignored on read and purged on the next write.
Concurrent requests for the same key share one in-flight provider call
(single-flight), so fan-out branches never race to overwrite an entry.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Sequence, Tuple

from dex_bot.config import QuoteSettings
from dex_bot.errors import QuoteUnavailable
from dex_bot.models import BatchQuoteResult, FeeTierProbe, OptimizedQuote, Quote, QuoteRequest
from dex_bot.providers.base import QuoteProvider, parse_provider_quote
from dex_bot.timing import DelayProvider, RandomDelayProvider

LOGGER = logging.getLogger(__name__)

CacheKey = Tuple[str, str, float]

MIN_SLIPPAGE_BPS = 10
MAX_SLIPPAGE_BPS = 500


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


@dataclass
class CachedQuote:
    quote: Quote
    ttl: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.quote.fetched_at >= self.ttl


# ---------------------------------------------------------------------------
# Fee-tier history
# ---------------------------------------------------------------------------


class FeeTierHistory:
    """Bounded record of the tiers chosen for one pair, oldest evicted first."""

    def __init__(self, maxlen: int = 20) -> None:
        self._tiers: Deque[int] = deque(maxlen=maxlen)

    def record(self, fee_tier: int) -> None:
        self._tiers.append(fee_tier)

    def most_frequent(self) -> int | None:
        if not self._tiers:
            return None
        counts = Counter(self._tiers)
        # Ties go to the higher tier.
        return max(counts, key=lambda tier: (counts[tier], tier))

    def as_list(self) -> List[int]:
        return list(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------


class QuoteOptimizer:
    def __init__(
        self,
        provider: QuoteProvider,
        settings: QuoteSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        delay_provider: DelayProvider | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings or QuoteSettings()
        self._clock = clock
        self._delays = delay_provider or RandomDelayProvider()
        self._entries: Dict[CacheKey, CachedQuote] = {}
        self._inflight: Dict[CacheKey, asyncio.Future[OptimizedQuote]] = {}
        self._history: Dict[str, FeeTierHistory] = {}
        self._last_optimization: Dict[str, float] = {}
        self._hits = 0
        self._misses = 0
        self._optimizations = 0

    @property
    def settings(self) -> QuoteSettings:
        return self._settings

    # -- quotes ------------------------------------------------------------

    async def get_optimized_quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        fee_tier: int | None = None,
    ) -> OptimizedQuote:
        key: CacheKey = (token_in, token_out, float(amount_in))
        cached = self._entries.get(key)
        if cached is not None and not cached.is_expired(self._clock()):
            cached.hit_count += 1
            self._hits += 1
            LOGGER.debug("cached quote %s->%s amount=%s", token_in, token_out, amount_in)
            return OptimizedQuote(quote=cached.quote, from_cache=True)

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        self._misses += 1
        future: asyncio.Future[OptimizedQuote] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._fetch_fresh(token_in, token_out, float(amount_in), fee_tier)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so an unjoined failure is not reported twice.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    async def get_batch_quotes(self, requests: Sequence[QuoteRequest]) -> List[BatchQuoteResult]:
        LOGGER.info("fetching %d quotes concurrently", len(requests))
        outcomes = await asyncio.gather(
            *(
                self.get_optimized_quote(req.token_in, req.token_out, req.amount_in, req.fee_tier)
                for req in requests
            ),
            return_exceptions=True,
        )

        results: List[BatchQuoteResult] = []
        for index, (request, outcome) in enumerate(zip(requests, outcomes)):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                results.append(
                    BatchQuoteResult(index=index, request=request, error=str(outcome) or type(outcome).__name__)
                )
                continue
            results.append(BatchQuoteResult(index=index, request=request, result=outcome))
        return results

    async def _fetch_fresh(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        fee_tier: int | None,
    ) -> OptimizedQuote:
        if fee_tier is None:
            selection = await self._select_fee_tier(token_in, token_out, amount_in)
            if selection.quote is not None and selection.quote.amount_in == amount_in:
                quote = selection.quote
            else:
                quote = await self._fetch(token_in, token_out, amount_in, selection.fee_tier)
        else:
            quote = await self._fetch(token_in, token_out, amount_in, fee_tier)

        if quote.output_amount <= 0:
            raise QuoteUnavailable(token_in, token_out, f"fee tier {quote.fee_tier} returned no output")
        self._store(quote)
        LOGGER.info(
            "fresh quote %s->%s amount=%s fee=%s out=%.6f",
            token_in,
            token_out,
            amount_in,
            quote.fee_tier,
            quote.output_amount,
        )
        return OptimizedQuote(quote=quote, from_cache=False)

    async def _fetch(self, token_in: str, token_out: str, amount_in: float, fee_tier: int) -> Quote:
        call = self._provider.quote(token_in, token_out, amount_in, fee_tier)
        timeout = self._settings.quote_timeout_seconds
        try:
            if timeout is not None:
                payload = await asyncio.wait_for(call, timeout=timeout)
            else:
                payload = await call
        except asyncio.TimeoutError as exc:
            raise QuoteUnavailable(token_in, token_out, f"fee tier {fee_tier} timed out after {timeout}s") from exc
        except QuoteUnavailable:
            raise
        except Exception as exc:
            raise QuoteUnavailable(token_in, token_out, f"fee tier {fee_tier}: {exc}") from exc

        return parse_provider_quote(
            payload,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            fee_tier=fee_tier,
            fetched_at=self._clock(),
        )

    def _store(self, quote: Quote) -> None:
        key: CacheKey = (quote.token_in, quote.token_out, float(quote.amount_in))
        self._entries[key] = CachedQuote(quote=quote, ttl=self._settings.cache_ttl_seconds)

        now = self._clock()
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            LOGGER.debug("purged %d expired quote cache entries", len(expired))

    # -- fee tiers ---------------------------------------------------------

    async def probe_fee_tiers(self, token_in: str, token_out: str, amount_in: float) -> List[FeeTierProbe]:
        """Quotes the pair at every known tier concurrently; one tagged result per tier."""

        async def _probe(tier: int) -> FeeTierProbe:
            try:
                quote = await self._fetch(token_in, token_out, amount_in, tier)
            except Exception as exc:
                return FeeTierProbe(fee_tier=tier, error=str(exc) or type(exc).__name__)
            if quote.output_amount <= 0:
                return FeeTierProbe(fee_tier=tier, quote=quote, error="no output")
            return FeeTierProbe(fee_tier=tier, quote=quote)

        return list(await asyncio.gather(*(_probe(tier) for tier in self._settings.fee_tiers)))

    def select_best(self, token_in: str, token_out: str, probes: Sequence[FeeTierProbe]) -> FeeTierProbe:
        """Picks the most efficient usable probe and records it for the pair.

        Raises ``QuoteUnavailable`` when no tier produced output.
        """
        usable = [probe for probe in probes if probe.ok]
        if not usable:
            reasons = "; ".join(f"{p.fee_tier}: {p.error or 'no output'}" for p in probes)
            raise QuoteUnavailable(token_in, token_out, f"no liquidity at any fee tier ({reasons})")

        best = max(usable, key=lambda probe: probe.efficiency)
        pair = f"{token_in}:{token_out}"
        self._history.setdefault(pair, FeeTierHistory(self._settings.history_size)).record(best.fee_tier)
        self._last_optimization[pair] = self._clock()
        self._optimizations += 1
        if best.quote is not None:
            self._store(best.quote)
        LOGGER.info("optimal fee tier for %s: %d (output %.6f)", pair, best.fee_tier, best.output)
        return best

    async def get_optimal_fee_tier(self, token_in: str, token_out: str, amount_in: float) -> int:
        return (await self._select_fee_tier(token_in, token_out, amount_in)).fee_tier

    async def _select_fee_tier(self, token_in: str, token_out: str, amount_in: float) -> FeeTierProbe:
        pair = f"{token_in}:{token_out}"
        last = self._last_optimization.get(pair)
        if last is not None and self._clock() - last < self._settings.optimization_interval_seconds:
            tier = self.historical_fee_tier(token_in, token_out)
            LOGGER.debug("reusing historical fee tier %d for %s", tier, pair)
            return FeeTierProbe(fee_tier=tier)

        LOGGER.info("optimizing fee tier for %s", pair)
        probes = await self.probe_fee_tiers(token_in, token_out, amount_in)
        for probe in probes:
            if not probe.ok:
                LOGGER.debug("fee tier %d unavailable for %s: %s", probe.fee_tier, pair, probe.error)
        return self.select_best(token_in, token_out, probes)

    def historical_fee_tier(self, token_in: str, token_out: str) -> int:
        history = self._history.get(f"{token_in}:{token_out}")
        tier = history.most_frequent() if history is not None else None
        return tier if tier is not None else self._settings.default_fee_tier

    def fee_tier_history(self, token_in: str, token_out: str) -> List[int]:
        history = self._history.get(f"{token_in}:{token_out}")
        return history.as_list() if history is not None else []

    # -- slippage / timing -------------------------------------------------

    @staticmethod
    def calculate_optimal_slippage(
        base_slippage_bps: float,
        volatility: float,
        liquidity: float,
        urgency: float = 1.0,
    ) -> int:
        slippage = base_slippage_bps * (1 + volatility * 0.5)
        if liquidity > 0:
            liquidity_adjustment = max(0.5, min(2.0, 1 / math.sqrt(liquidity)))
        else:
            liquidity_adjustment = 2.0
        slippage *= liquidity_adjustment
        slippage *= urgency
        return max(MIN_SLIPPAGE_BPS, min(MAX_SLIPPAGE_BPS, _js_round(slippage)))

    def get_mev_protection_delay(self) -> float:
        return self._delays.mev_delay()

    # -- housekeeping ------------------------------------------------------

    def performance_metrics(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        last = max(self._last_optimization.values()) if self._last_optimization else None
        return {
            "cache_size": len(self._entries),
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "cache_hit_rate": (self._hits / lookups) * 100 if lookups else 0.0,
            "pairs_optimized": len(self._history),
            "fee_tier_optimizations": self._optimizations,
            "last_optimization": last,
        }

    def cache_size(self) -> int:
        return len(self._entries)

    def clear_caches(self) -> None:
        self._entries.clear()
        self._history.clear()
        self._last_optimization.clear()
        LOGGER.info("quote caches cleared")
