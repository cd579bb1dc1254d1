from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from dex_bot.config import ProviderSettings
from dex_bot.errors import MalformedQuoteError
from dex_bot.providers.base import QuoteProvider

LOGGER = logging.getLogger(__name__)


def token_class_key(symbol: str) -> str:
    """Expands a bare symbol such as ``GALA`` to the ``GALA|Unit|none|none`` class key."""
    symbol = symbol.strip()
    if "|" in symbol:
        return symbol
    return f"{symbol}|Unit|none|none"


class HttpQuoteProvider(QuoteProvider):
    def __init__(
        self,
        settings: ProviderSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.quote_api_url.rstrip("/"),
            timeout=httpx.Timeout(settings.timeout_seconds),
        )

    async def quote(
        self,
        token_in: str,
        token_out: str,
        amount_in: float,
        fee_tier: int,
    ) -> Mapping[str, Any]:
        response = await self._client.get(
            self._settings.quote_path,
            params={
                "tokenIn": token_class_key(token_in),
                "tokenOut": token_class_key(token_out),
                "amountIn": f"{amount_in:.18g}",
                "fee": fee_tier,
            },
        )
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise MalformedQuoteError(
                f"quote endpoint returned {type(payload).__name__} for {token_in}->{token_out}@{fee_tier}"
            )
        LOGGER.debug("quote %s->%s amount=%s fee=%s payload=%s", token_in, token_out, amount_in, fee_tier, payload)
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()
