from .arbitrage import ArbitrageStrategy
from .base import TradingStrategy
from .fibonacci import FibonacciStrategy
from .spider import LiquiditySpiderStrategy
from .triangular import TriangularStrategy

__all__ = [
    "ArbitrageStrategy",
    "FibonacciStrategy",
    "LiquiditySpiderStrategy",
    "TradingStrategy",
    "TriangularStrategy",
]
