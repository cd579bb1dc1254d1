from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dex_bot.models import RiskRule


class DexBotError(Exception):
    """Base class for decision-engine errors."""


class ConfigurationError(DexBotError):
    """A required setting is missing or out of range. Fatal at startup."""


class QuoteUnavailable(DexBotError):
    """No usable quote could be obtained for a pair at any probed fee tier."""

    def __init__(self, token_in: str, token_out: str, reason: str) -> None:
        super().__init__(f"no quote for {token_in}->{token_out}: {reason}")
        self.token_in = token_in
        self.token_out = token_out
        self.reason = reason


class MalformedQuoteError(ValueError):
    """Provider payload is missing a field the Quote type requires."""


class StaleMarketData(DexBotError):
    """The market-condition supplier failed; callers fall back to safe defaults."""


class RiskRejected(DexBotError):
    def __init__(self, rule: RiskRule, reason: str) -> None:
        super().__init__(reason)
        self.rule = rule
        self.reason = reason


class StrategyExecutionError(DexBotError):
    def __init__(self, strategy: str, cause: BaseException) -> None:
        super().__init__(f"strategy {strategy} failed: {cause}")
        self.strategy = strategy
        self.cause = cause
