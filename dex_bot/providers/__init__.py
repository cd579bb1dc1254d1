from .base import QuoteProvider, SwapExecutor, parse_provider_quote
from .http import HttpQuoteProvider, token_class_key

__all__ = [
    "HttpQuoteProvider",
    "QuoteProvider",
    "SwapExecutor",
    "parse_provider_quote",
    "token_class_key",
]
