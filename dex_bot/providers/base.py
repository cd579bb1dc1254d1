from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

from dex_bot.errors import MalformedQuoteError
from dex_bot.models import Quote, SwapReceipt

_OUTPUT_KEYS = ("outputAmount", "output_amount", "amountOut", "outTokenAmount")


class QuoteProvider(ABC):
    """Upstream quoting API. Implementations return the raw provider payload."""

    @abstractmethod
    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        fee_tier: int,
    ) -> Mapping[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class SwapExecutor(ABC):
    """Signs and submits swaps. Signing and submission live outside this package."""

    @abstractmethod
    async def swap(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        min_amount_out: float,
        fee_tier: int,
    ) -> SwapReceipt:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _optional_float(payload: Mapping[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedQuoteError(f"quote field {key!r} is not numeric: {value!r}") from exc


def parse_provider_quote(
    payload: Mapping[str, Any],
    *,
    token_in: str,
    token_out: str,
    amount_in: float,
    fee_tier: int,
    fetched_at: float,
) -> Quote:
    if not isinstance(payload, Mapping):
        raise MalformedQuoteError(f"quote payload must be a mapping, got {type(payload).__name__}")

    raw_output = None
    for key in _OUTPUT_KEYS:
        if payload.get(key) is not None:
            raw_output = payload[key]
            break
    if raw_output is None:
        raise MalformedQuoteError(
            f"quote for {token_in}->{token_out}@{fee_tier} has no output amount (keys: {sorted(payload)})"
        )
    try:
        output_amount = float(str(raw_output))
    except ValueError as exc:
        raise MalformedQuoteError(f"quote output amount is not numeric: {raw_output!r}") from exc

    tick = payload.get("tick")
    try:
        parsed_tick = int(tick) if tick is not None else None
    except (TypeError, ValueError) as exc:
        raise MalformedQuoteError(f"quote tick is not an integer: {tick!r}") from exc

    return Quote(
        token_in=token_in,
        token_out=token_out,
        amount_in=amount_in,
        fee_tier=fee_tier,
        output_amount=output_amount,
        fetched_at=fetched_at,
        liquidity=_optional_float(payload, "liquidity"),
        tick=parsed_tick,
        price=_optional_float(payload, "price"),
    )
