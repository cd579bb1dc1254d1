from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dex_bot.errors import RiskRejected


class CompetitionLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RotationMode(str, Enum):
    SCORE = "score"
    ROUND_ROBIN = "round_robin"


class RiskRule(str, Enum):
    EMERGENCY_STOP = "emergency_stop"
    DAILY_LOSS = "daily_loss"
    DRAWDOWN = "drawdown"
    SLIPPAGE = "slippage"
    CONCURRENCY = "concurrency"
    POSITION_SIZE = "position_size"
    EXPOSURE = "exposure"
    RISK_SCORE = "risk_score"
    DAILY_VOLUME = "daily_volume"


class CycleAction(str, Enum):
    EXECUTE = "execute"
    REJECT = "reject"
    ERROR = "error"


@dataclass(frozen=True)
class Quote:
    token_in: str
    token_out: str
    amount_in: float
    fee_tier: int
    output_amount: float
    fetched_at: float
    liquidity: float | None = None
    tick: int | None = None
    price: float | None = None

    @property
    def pair_key(self) -> str:
        return f"{self.token_in}:{self.token_out}"

    @property
    def rate(self) -> float:
        if self.amount_in <= 0:
            return 0.0
        return self.output_amount / self.amount_in


@dataclass(frozen=True)
class OptimizedQuote:
    quote: Quote
    from_cache: bool

    @property
    def fee_tier(self) -> int:
        return self.quote.fee_tier

    @property
    def output_amount(self) -> float:
        return self.quote.output_amount


@dataclass(frozen=True)
class QuoteRequest:
    token_in: str
    token_out: str
    amount_in: float
    fee_tier: int | None = None


@dataclass(frozen=True)
class BatchQuoteResult:
    index: int
    request: QuoteRequest
    result: OptimizedQuote | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


@dataclass(frozen=True)
class FeeTierProbe:
    """Outcome of quoting a pair at one fee tier: a quote or a failure reason."""

    fee_tier: int
    quote: Quote | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.quote is not None and self.quote.output_amount > 0

    @property
    def output(self) -> float:
        return self.quote.output_amount if self.quote is not None else 0.0

    @property
    def efficiency(self) -> float:
        if not self.ok:
            return 0.0
        return self.output / (1 + self.fee_tier / 1_000_000)


@dataclass(frozen=True)
class ArbitragePathRequest:
    token_a: str
    token_b: str
    amount_in: float

    @property
    def label(self) -> str:
        return f"{self.token_a}->{self.token_b}->{self.token_a}"


@dataclass(frozen=True)
class ArbitragePath:
    token_a: str
    token_b: str
    amount_in: float
    forward_quote: Quote | None
    reverse_quote: Quote | None
    profit: float
    profit_bps: int
    viable: bool
    sources: int = 0
    reason: str = ""

    @property
    def label(self) -> str:
        return f"{self.token_a}->{self.token_b}->{self.token_a}"


@dataclass(frozen=True)
class PoolComparison:
    token_in: str
    token_out: str
    amount_in: float
    quotes: tuple[Quote, ...]
    best_buy: Quote | None
    best_sell: Quote | None
    price_diff: float
    price_diff_pct: float
    gross_profit_bps: int
    viable: bool
    reason: str


@dataclass(frozen=True)
class MarketCondition:
    volatility: float
    volume: float
    competition_level: CompetitionLevel
    time_of_day: int
    recent_performance: float

    @classmethod
    def safe_defaults(cls, hour: int) -> MarketCondition:
        return cls(
            volatility=0.02,
            volume=100.0,
            competition_level=CompetitionLevel.MEDIUM,
            time_of_day=hour,
            recent_performance=0.5,
        )


@dataclass(frozen=True)
class TradeResult:
    success: bool
    profit: float
    volume: float
    strategy: str
    pool: str
    timestamp: float = field(default_factory=time.time)
    error: Optional[str] = None
    risk_rule: Optional[RiskRule] = None
    # Set when the attempt broke (exception, failed swap) rather than declined.
    errored: bool = False

    @classmethod
    def failure(
        cls,
        strategy: str,
        pool: str,
        error: str,
        *,
        volume: float = 0.0,
        risk_rule: RiskRule | None = None,
        timestamp: float | None = None,
        errored: bool = False,
    ) -> TradeResult:
        return cls(
            success=False,
            profit=0.0,
            volume=volume,
            strategy=strategy,
            pool=pool,
            timestamp=time.time() if timestamp is None else timestamp,
            error=error,
            risk_rule=risk_rule,
            errored=errored,
        )


@dataclass
class PerformanceMetrics:
    total_trades: int = 0
    profitable_trades: int = 0
    total_volume: float = 0.0
    total_profit: float = 0.0
    win_rate: float = 0.0
    last_updated: float = field(default_factory=time.time)


@dataclass
class PositionInfo:
    token: str
    amount: float
    avg_price: float
    unrealized_pnl: float = 0.0
    timestamp: float = field(default_factory=time.time)
    # Token avg_price is denominated in; None means the risk quote token.
    quote_token: str | None = None

    @property
    def cost_basis(self) -> float:
        return self.amount * self.avg_price

    @property
    def loss_pct(self) -> float:
        if self.unrealized_pnl >= 0 or self.cost_basis <= 0:
            return 0.0
        return abs(self.unrealized_pnl) / self.cost_basis * 100


@dataclass(frozen=True)
class RiskMetrics:
    current_drawdown: float
    daily_pnl: float
    total_exposure: float
    active_trades: int
    risk_score: float
    max_risk_score: float
    daily_volume: float = 0.0


@dataclass(frozen=True)
class TradeDecision:
    allowed: bool
    reason: str
    adjusted_amount: float | None = None
    rule: RiskRule | None = None

    def raise_if_rejected(self) -> None:
        if not self.allowed:
            raise RiskRejected(self.rule or RiskRule.POSITION_SIZE, self.reason)


@dataclass(frozen=True)
class StopLossEvent:
    token: str
    amount: float
    avg_price: float
    loss_pct: float
    liquidated: bool
    timestamp: float
    error: str | None = None


@dataclass(frozen=True)
class SwapReceipt:
    success: bool
    transaction_id: str | None = None
    amount_out: float = 0.0
    error: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CycleRecord:
    timestamp: float
    strategy: str
    action: CycleAction
    reason: str
    condition: MarketCondition
    result: TradeResult | None = None
    delay_seconds: float = 0.0
