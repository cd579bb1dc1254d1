from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Tuple

from dotenv import load_dotenv

from dex_bot.errors import ConfigurationError
from dex_bot.models import RotationMode

DEFAULT_FEE_TIERS: Tuple[int, ...] = (500, 3000, 10000)
DEFAULT_STRATEGY_ORDER: Tuple[str, ...] = (
    "arbitrage",
    "triangular",
    "fibonacci",
    "liquidity-spider",
)
DEFAULT_ARBITRAGE_POOLS: Tuple[str, ...] = (
    "GALA/GUSDC",
    "GALA/GUSDT",
    "GUSDC/GUSDT",
    "GALA/GWETH",
    "GUSDC/GWETH",
)
DEFAULT_TRIANGULAR_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("GALA", "GUSDC", "GUSDT", "GALA"),
    ("GALA", "GUSDT", "GUSDC", "GALA"),
    ("GUSDC", "GALA", "GWETH", "GUSDC"),
)
DEFAULT_SPIDER_POOLS: Tuple[str, ...] = (
    "GALA/GUSDC",
    "GALA/GUSDT",
    "GUSDC/GUSDT",
    "GALA/GWETH",
    "GUSDC/GWETH",
)


def _as_bool(name: str, value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _as_float(name: str, value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def _as_optional_float(name: str, value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return _as_float(name, value, 0.0)


def _as_int(name: str, value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _as_ms(name: str, value: str | None, default_seconds: float) -> float:
    """Environment intervals are given in milliseconds; settings hold seconds."""
    if value is None or not value.strip():
        return default_seconds
    return _as_float(name, value, default_seconds * 1000.0) / 1000.0


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_pairs(value: str | None, default_amount: float) -> Tuple[Tuple[str, str, float], ...]:
    """Parses `GALA/GUSDC:10,GUSDC/GUSDT` into (token_a, token_b, amount) tuples."""
    pools = _as_csv(value) or list(DEFAULT_ARBITRAGE_POOLS)
    pairs: list[Tuple[str, str, float]] = []
    for chunk in pools:
        pool, _, amount_text = chunk.partition(":")
        if "/" not in pool:
            raise ConfigurationError(f"ARB_PAIRS entry must look like A/B[:amount], got {chunk!r}")
        token_a, token_b = (part.strip() for part in pool.split("/", 1))
        if not token_a or not token_b:
            raise ConfigurationError(f"ARB_PAIRS entry has an empty token: {chunk!r}")
        amount = _as_float("ARB_PAIRS", amount_text, default_amount)
        pairs.append((token_a, token_b, amount))
    return tuple(pairs)


def _parse_pools(name: str, value: str | None, default: Tuple[str, ...]) -> Tuple[Tuple[str, str], ...]:
    pools: list[Tuple[str, str]] = []
    for chunk in _as_csv(value) or list(default):
        token_a, sep, token_b = chunk.partition("/")
        if not sep or not token_a.strip() or not token_b.strip():
            raise ConfigurationError(f"{name} entry must look like A/B, got {chunk!r}")
        pools.append((token_a.strip(), token_b.strip()))
    return tuple(pools)


def _parse_paths(value: str | None) -> Tuple[Tuple[str, ...], ...]:
    """Parses `GALA>GUSDC>GUSDT>GALA;...` into hop tuples."""
    if value is None or not value.strip():
        return DEFAULT_TRIANGULAR_PATHS
    paths: list[Tuple[str, ...]] = []
    for chunk in value.split(";"):
        hops = tuple(part.strip() for part in chunk.split(">") if part.strip())
        if not hops:
            continue
        if len(hops) < 3 or hops[0] != hops[-1]:
            raise ConfigurationError(f"TRIANGULAR_PATHS entry must start and end on the same token: {chunk!r}")
        paths.append(hops)
    return tuple(paths)


@dataclass(frozen=True)
class QuoteSettings:
    cache_ttl_seconds: float = 30.0
    optimization_interval_seconds: float = 300.0
    fee_tiers: Tuple[int, ...] = DEFAULT_FEE_TIERS
    default_fee_tier: int = 3000
    history_size: int = 20
    # None waits on the provider indefinitely.
    quote_timeout_seconds: float | None = None

    def validate(self) -> None:
        if self.cache_ttl_seconds <= 0:
            raise ConfigurationError("cache TTL must be positive")
        if self.optimization_interval_seconds < 0:
            raise ConfigurationError("fee-tier optimization interval cannot be negative")
        if not self.fee_tiers:
            raise ConfigurationError("at least one fee tier is required")
        if self.history_size <= 0:
            raise ConfigurationError("fee-tier history size must be positive")
        if self.quote_timeout_seconds is not None and self.quote_timeout_seconds <= 0:
            raise ConfigurationError("quote timeout must be positive when set")


@dataclass(frozen=True)
class RiskSettings:
    max_daily_loss: float = 50.0
    max_position_size: float = 100.0
    max_portfolio_exposure: float = 500.0
    max_slippage_bps: float = 300.0
    max_concurrent_trades: int = 3
    stop_loss_threshold_pct: float = 10.0
    daily_volume_limit: float = 1000.0
    max_drawdown_pct: float = 20.0
    max_risk_score: float = 75.0
    starting_balance: float = 1000.0
    quote_token: str = "GUSDC"

    def validate(self) -> None:
        positive = {
            "max_daily_loss": self.max_daily_loss,
            "max_position_size": self.max_position_size,
            "max_portfolio_exposure": self.max_portfolio_exposure,
            "max_slippage_bps": self.max_slippage_bps,
            "stop_loss_threshold_pct": self.stop_loss_threshold_pct,
            "daily_volume_limit": self.daily_volume_limit,
            "max_drawdown_pct": self.max_drawdown_pct,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"risk limit {name} must be positive, got {value}")
        if self.max_concurrent_trades <= 0:
            raise ConfigurationError("max_concurrent_trades must be positive")
        if not 0 <= self.max_risk_score <= 100:
            raise ConfigurationError("max_risk_score must be within [0, 100]")
        if self.starting_balance < 0:
            raise ConfigurationError("starting_balance cannot be negative")
        if not self.quote_token.strip():
            raise ConfigurationError("quote_token cannot be empty")


@dataclass(frozen=True)
class SchedulerSettings:
    switch_interval_seconds: float = 300.0
    rotation_mode: RotationMode = RotationMode.SCORE
    forced_strategy: str | None = None
    default_strategy: str = "liquidity-spider"
    strategy_order: Tuple[str, ...] = DEFAULT_STRATEGY_ORDER

    def validate(self) -> None:
        if self.switch_interval_seconds < 0:
            raise ConfigurationError("strategy switch interval cannot be negative")
        if not self.strategy_order:
            raise ConfigurationError("strategy order cannot be empty")


@dataclass(frozen=True)
class EngineSettings:
    error_backoff_seconds: float = 10.0
    dynamic_config_interval_seconds: float = 300.0
    record_history: int = 200
    run_once: bool = False

    def validate(self) -> None:
        if self.error_backoff_seconds < 0:
            raise ConfigurationError("error backoff cannot be negative")
        if self.dynamic_config_interval_seconds < 300:
            raise ConfigurationError("dynamic config cadence must be at least 5 minutes")


@dataclass(frozen=True)
class ProviderSettings:
    quote_api_url: str = "https://dex-backend-prod1.defi.gala.com"
    quote_path: str = "/v1/trade/quote"
    timeout_seconds: float | None = None

    def validate(self) -> None:
        if not self.quote_api_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"DEX_QUOTE_API_URL must be an http(s) URL, got {self.quote_api_url!r}")


@dataclass(frozen=True)
class StrategySettings:
    arbitrage_pairs: Tuple[Tuple[str, str, float], ...] = field(
        default_factory=lambda: _parse_pairs(None, 10.0)
    )
    arbitrage_min_profit_bps: int = 50
    arbitrage_slippage_bps: int = 100
    dry_run: bool = True
    triangular_paths: Tuple[Tuple[str, ...], ...] = DEFAULT_TRIANGULAR_PATHS
    triangular_base_amount: float = 10.0
    triangular_min_profit_bps: int = 30
    fibonacci_target_token: str = "GALA"
    fibonacci_stable_token: str = "GUSDC"
    fibonacci_base_trade_size: float = 2.0
    fibonacci_max_position: float = 100.0
    fibonacci_take_profit_pct: float = 6.0
    fibonacci_stop_loss_pct: float = 15.0
    fibonacci_slippage_bps: int = 40
    spider_pools: Tuple[Tuple[str, str], ...] = field(
        default_factory=lambda: _parse_pools("SPIDER_POOLS", None, DEFAULT_SPIDER_POOLS)
    )
    spider_position_size: float = 5.0
    spider_max_positions: int = 8
    spider_profit_target_bps: int = 200
    spider_stop_loss_bps: int = 100
    spider_scan_interval_seconds: float = 30.0
    spider_max_hold_seconds: float = 3600.0

    def validate(self) -> None:
        if self.arbitrage_min_profit_bps < 0 or self.triangular_min_profit_bps < 0:
            raise ConfigurationError("minimum profit thresholds cannot be negative")
        if self.arbitrage_slippage_bps <= 0:
            raise ConfigurationError("arbitrage slippage must be positive")
        if self.triangular_base_amount <= 0:
            raise ConfigurationError("triangular base amount must be positive")
        if self.fibonacci_base_trade_size <= 0 or self.fibonacci_max_position <= 0:
            raise ConfigurationError("fibonacci trade size and max position must be positive")
        if self.fibonacci_take_profit_pct <= 0 or self.fibonacci_stop_loss_pct <= 0:
            raise ConfigurationError("fibonacci take profit and stop loss must be positive")
        if self.fibonacci_slippage_bps <= 0:
            raise ConfigurationError("fibonacci slippage must be positive")
        if self.spider_position_size <= 0 or self.spider_max_positions <= 0:
            raise ConfigurationError("spider position size and max positions must be positive")
        if self.spider_profit_target_bps <= 0 or self.spider_stop_loss_bps <= 0:
            raise ConfigurationError("spider profit target and stop loss must be positive")
        if self.spider_scan_interval_seconds < 0 or self.spider_max_hold_seconds <= 0:
            raise ConfigurationError("spider scan interval and max hold time are out of range")
        for _, _, amount in self.arbitrage_pairs:
            if amount <= 0:
                raise ConfigurationError("arbitrage pair amounts must be positive")


@dataclass(frozen=True)
class AppSettings:
    quotes: QuoteSettings = field(default_factory=QuoteSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    strategy: StrategySettings = field(default_factory=StrategySettings)
    log_level: str = "INFO"

    def validate(self) -> None:
        self.quotes.validate()
        self.risk.validate()
        self.scheduler.validate()
        self.engine.validate()
        self.provider.validate()
        self.strategy.validate()


def _rotation_mode(value: str | None) -> RotationMode:
    if value is None or not value.strip():
        return RotationMode.SCORE
    try:
        return RotationMode(value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(
            f"STRATEGY_ROTATION_MODE must be 'score' or 'round_robin', got {value!r}"
        ) from exc


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    quotes = QuoteSettings(
        cache_ttl_seconds=_as_ms("QUOTE_CACHE_TTL_MS", os.getenv("QUOTE_CACHE_TTL_MS"), 30.0),
        optimization_interval_seconds=_as_ms(
            "FEE_TIER_OPTIMIZATION_INTERVAL_MS",
            os.getenv("FEE_TIER_OPTIMIZATION_INTERVAL_MS"),
            300.0,
        ),
        quote_timeout_seconds=_as_optional_float("QUOTE_TIMEOUT_SECONDS", os.getenv("QUOTE_TIMEOUT_SECONDS")),
    )

    risk = RiskSettings(
        max_daily_loss=_as_float("RISK_MAX_DAILY_LOSS", os.getenv("RISK_MAX_DAILY_LOSS"), 50.0),
        max_position_size=_as_float("RISK_MAX_POSITION_SIZE", os.getenv("RISK_MAX_POSITION_SIZE"), 100.0),
        max_portfolio_exposure=_as_float(
            "RISK_MAX_PORTFOLIO_EXPOSURE", os.getenv("RISK_MAX_PORTFOLIO_EXPOSURE"), 500.0
        ),
        max_slippage_bps=_as_float("RISK_MAX_SLIPPAGE", os.getenv("RISK_MAX_SLIPPAGE"), 300.0),
        max_concurrent_trades=_as_int("RISK_MAX_CONCURRENT", os.getenv("RISK_MAX_CONCURRENT"), 3),
        stop_loss_threshold_pct=_as_float("RISK_STOP_LOSS", os.getenv("RISK_STOP_LOSS"), 10.0),
        daily_volume_limit=_as_float("RISK_DAILY_VOLUME_LIMIT", os.getenv("RISK_DAILY_VOLUME_LIMIT"), 1000.0),
        max_drawdown_pct=_as_float("RISK_MAX_DRAWDOWN", os.getenv("RISK_MAX_DRAWDOWN"), 20.0),
        starting_balance=_as_float("RISK_STARTING_BALANCE", os.getenv("RISK_STARTING_BALANCE"), 1000.0),
        quote_token=(os.getenv("RISK_QUOTE_TOKEN") or "GUSDC").strip(),
    )

    forced = (os.getenv("FORCE_STRATEGY") or "").strip().lower() or None
    order = tuple(name.lower() for name in _as_csv(os.getenv("STRATEGY_ORDER"))) or DEFAULT_STRATEGY_ORDER
    scheduler = SchedulerSettings(
        switch_interval_seconds=_as_ms(
            "STRATEGY_SWITCH_INTERVAL_MS", os.getenv("STRATEGY_SWITCH_INTERVAL_MS"), 300.0
        ),
        rotation_mode=_rotation_mode(os.getenv("STRATEGY_ROTATION_MODE")),
        forced_strategy=forced,
        default_strategy=(os.getenv("DEFAULT_STRATEGY") or "liquidity-spider").strip().lower(),
        strategy_order=order,
    )

    engine = EngineSettings(
        error_backoff_seconds=_as_float(
            "ENGINE_ERROR_BACKOFF_SECONDS", os.getenv("ENGINE_ERROR_BACKOFF_SECONDS"), 10.0
        ),
        dynamic_config_interval_seconds=_as_ms(
            "DYNAMIC_CONFIG_INTERVAL_MS", os.getenv("DYNAMIC_CONFIG_INTERVAL_MS"), 300.0
        ),
        run_once=_as_bool("RUN_ONCE", os.getenv("RUN_ONCE"), default=False),
    )

    provider = ProviderSettings(
        quote_api_url=(os.getenv("DEX_QUOTE_API_URL") or "https://dex-backend-prod1.defi.gala.com").strip(),
        quote_path=(os.getenv("DEX_QUOTE_PATH") or "/v1/trade/quote").strip(),
        timeout_seconds=quotes.quote_timeout_seconds,
    )

    strategy = StrategySettings(
        arbitrage_pairs=_parse_pairs(os.getenv("ARB_PAIRS"), 10.0),
        arbitrage_min_profit_bps=_as_int("ARB_MIN_PROFIT_BPS", os.getenv("ARB_MIN_PROFIT_BPS"), 50),
        arbitrage_slippage_bps=_as_int("ARB_SLIPPAGE_BPS", os.getenv("ARB_SLIPPAGE_BPS"), 100),
        dry_run=_as_bool("ARB_DRY_RUN", os.getenv("ARB_DRY_RUN"), default=True),
        triangular_paths=_parse_paths(os.getenv("TRIANGULAR_PATHS")),
        triangular_base_amount=_as_float(
            "TRIANGULAR_BASE_AMOUNT", os.getenv("TRIANGULAR_BASE_AMOUNT"), 10.0
        ),
        triangular_min_profit_bps=_as_int(
            "TRIANGULAR_MIN_PROFIT_BPS", os.getenv("TRIANGULAR_MIN_PROFIT_BPS"), 30
        ),
        fibonacci_target_token=(os.getenv("FIB_TARGET_TOKEN") or "GALA").strip(),
        fibonacci_stable_token=(os.getenv("FIB_STABLE_TOKEN") or "GUSDC").strip(),
        fibonacci_base_trade_size=_as_float("FIB_BASE_TRADE_SIZE", os.getenv("FIB_BASE_TRADE_SIZE"), 2.0),
        fibonacci_max_position=_as_float("FIB_MAX_POSITION", os.getenv("FIB_MAX_POSITION"), 100.0),
        fibonacci_take_profit_pct=_as_float("FIB_TAKE_PROFIT", os.getenv("FIB_TAKE_PROFIT"), 6.0),
        fibonacci_stop_loss_pct=_as_float("FIB_STOP_LOSS", os.getenv("FIB_STOP_LOSS"), 15.0),
        fibonacci_slippage_bps=_as_int("FIB_SLIPPAGE_BPS", os.getenv("FIB_SLIPPAGE_BPS"), 40),
        spider_pools=_parse_pools("SPIDER_POOLS", os.getenv("SPIDER_POOLS"), DEFAULT_SPIDER_POOLS),
        spider_position_size=_as_float("SPIDER_POSITION_SIZE", os.getenv("SPIDER_POSITION_SIZE"), 5.0),
        spider_max_positions=_as_int("SPIDER_MAX_POSITIONS", os.getenv("SPIDER_MAX_POSITIONS"), 8),
        spider_profit_target_bps=_as_int(
            "SPIDER_PROFIT_TARGET", os.getenv("SPIDER_PROFIT_TARGET"), 200
        ),
        spider_stop_loss_bps=_as_int("SPIDER_STOP_LOSS", os.getenv("SPIDER_STOP_LOSS"), 100),
        spider_scan_interval_seconds=_as_ms(
            "SPIDER_SCAN_INTERVAL", os.getenv("SPIDER_SCAN_INTERVAL"), 30.0
        ),
    )

    settings = AppSettings(
        quotes=quotes,
        risk=risk,
        scheduler=scheduler,
        engine=engine,
        provider=provider,
        strategy=strategy,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip(),
    )
    settings.validate()
    return settings
