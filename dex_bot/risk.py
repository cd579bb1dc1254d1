from __future__ import annotations

import logging
import time
from datetime import date
from typing import Any, Callable, Dict, List

from dex_bot.config import RiskSettings
from dex_bot.models import PositionInfo, RiskMetrics, RiskRule, StopLossEvent, SwapReceipt, TradeDecision, TradeResult
from dex_bot.pnl import PnLTracker
from dex_bot.providers.base import SwapExecutor

LOGGER = logging.getLogger(__name__)


class SwapLiquidator:
    """Closes a position by swapping it back into the quote token."""

    def __init__(
        self,
        executor: SwapExecutor,
        quote_token: str = "GUSDC",
        *,
        fee_tier: int = 3000,
        slippage_bps: float = 300.0,
    ) -> None:
        self._executor = executor
        self._quote_token = quote_token
        self._fee_tier = fee_tier
        self._slippage_bps = slippage_bps

    @property
    def quote_token(self) -> str:
        return self._quote_token

    async def liquidate(self, position: PositionInfo) -> SwapReceipt:
        mark_value = max(0.0, position.cost_basis + position.unrealized_pnl)
        min_amount_out = mark_value * (1 - self._slippage_bps / 10_000)
        return await self._executor.swap(
            position.token,
            position.quote_token or self._quote_token,
            position.amount,
            min_amount_out,
            self._fee_tier,
        )


class RiskManager:
    def __init__(
        self,
        settings: RiskSettings,
        pnl: PnLTracker | None = None,
        *,
        liquidator: SwapLiquidator | None = None,
        clock: Callable[[], float] = time.time,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._settings = settings
        self._pnl = pnl or PnLTracker()
        self._liquidator = liquidator
        self._clock = clock
        self._today = today
        self._positions: Dict[str, PositionInfo] = {}
        self._daily_start_balance = settings.starting_balance
        self._last_reset_date = today()
        self._emergency_stop = False
        self._emergency_reason = ""

    @property
    def settings(self) -> RiskSettings:
        return self._settings

    @property
    def pnl(self) -> PnLTracker:
        return self._pnl

    @property
    def positions(self) -> Dict[str, PositionInfo]:
        return dict(self._positions)

    @property
    def daily_start_balance(self) -> float:
        return self._daily_start_balance

    @property
    def last_reset_date(self) -> date:
        return self._last_reset_date

    @property
    def emergency_stopped(self) -> bool:
        return self._emergency_stop

    @property
    def current_balance(self) -> float:
        return self._daily_start_balance + self._pnl.daily_pnl

    # -- gating ------------------------------------------------------------

    def check_trade_allowed(
        self,
        strategy: str,
        token_in: str,
        token_out: str,
        amount_in: float,
        expected_slippage_bps: float,
    ) -> TradeDecision:
        limits = self._settings

        if self._emergency_stop:
            return self._reject(strategy, RiskRule.EMERGENCY_STOP, f"Emergency stop activated: {self._emergency_reason}")

        metrics = self.get_risk_metrics()

        if metrics.daily_pnl <= -limits.max_daily_loss:
            return self._reject(
                strategy, RiskRule.DAILY_LOSS, f"Daily loss limit exceeded: ${abs(metrics.daily_pnl):.2f}"
            )

        if metrics.current_drawdown >= limits.max_drawdown_pct:
            return self._reject(
                strategy, RiskRule.DRAWDOWN, f"Maximum drawdown exceeded: {metrics.current_drawdown:.2f}%"
            )

        if expected_slippage_bps > limits.max_slippage_bps:
            return self._reject(
                strategy,
                RiskRule.SLIPPAGE,
                f"Slippage too high: {expected_slippage_bps:.2f}bps > {limits.max_slippage_bps:g}bps",
            )

        if metrics.active_trades >= limits.max_concurrent_trades:
            return self._reject(
                strategy, RiskRule.CONCURRENCY, f"Too many concurrent trades: {metrics.active_trades}"
            )

        adjusted = self.calculate_optimal_position_size(amount_in, token_out, metrics)
        if adjusted <= 0:
            return self._reject(strategy, RiskRule.POSITION_SIZE, "Position size would exceed limits")

        new_exposure = metrics.total_exposure + adjusted
        if new_exposure > limits.max_portfolio_exposure:
            return self._reject(
                strategy, RiskRule.EXPOSURE, f"Portfolio exposure limit exceeded: ${new_exposure:.2f}"
            )

        if metrics.risk_score > metrics.max_risk_score:
            return self._reject(strategy, RiskRule.RISK_SCORE, f"Risk score too high: {metrics.risk_score:.1f}/100")

        new_volume = metrics.daily_volume + adjusted
        if new_volume > limits.daily_volume_limit:
            return self._reject(
                strategy, RiskRule.DAILY_VOLUME, f"Daily volume limit exceeded: ${new_volume:.2f}"
            )

        LOGGER.info(
            "risk allowed strategy=%s trade=%s %s->%s adjusted=%s score=%.1f daily_pnl=%.2f",
            strategy,
            amount_in,
            token_in,
            token_out,
            adjusted,
            metrics.risk_score,
            metrics.daily_pnl,
        )
        return TradeDecision(allowed=True, reason="ok", adjusted_amount=adjusted)

    def _reject(self, strategy: str, rule: RiskRule, reason: str) -> TradeDecision:
        LOGGER.info("risk rejected strategy=%s rule=%s: %s", strategy, rule.value, reason)
        return TradeDecision(allowed=False, reason=reason, rule=rule)

    def calculate_optimal_position_size(
        self,
        requested_amount: float,
        token: str,
        metrics: RiskMetrics | None = None,
    ) -> float:
        limits = self._settings
        if metrics is None:
            metrics = self.get_risk_metrics()

        size = requested_amount * (1 - metrics.risk_score / 200)
        size = min(size, limits.max_position_size)
        size = min(size, limits.max_portfolio_exposure - metrics.total_exposure)

        existing = self._positions.get(token)
        if existing is not None:
            size = min(size, limits.max_position_size - existing.amount)

        return max(0.0, size)

    # -- metrics -----------------------------------------------------------

    def get_risk_metrics(self) -> RiskMetrics:
        self._roll_day()
        limits = self._settings

        total_exposure = sum(position.cost_basis for position in self._positions.values())

        current_balance = self.current_balance
        peak_balance = max(self._daily_start_balance, current_balance)
        drawdown = (peak_balance - current_balance) / peak_balance * 100 if peak_balance > 0 else 0.0

        daily_pnl = self._pnl.daily_pnl
        score = 0.0
        score += min(30.0, total_exposure / limits.max_portfolio_exposure * 30)
        score += min(25.0, drawdown / limits.max_drawdown_pct * 25)
        score += min(20.0, self._pnl.total_trades / 100 * 20)
        score += min(25.0, abs(daily_pnl) / limits.max_daily_loss * 25)

        return RiskMetrics(
            current_drawdown=drawdown,
            daily_pnl=daily_pnl,
            total_exposure=total_exposure,
            active_trades=len(self._positions),
            risk_score=max(0.0, min(100.0, score)),
            max_risk_score=limits.max_risk_score,
            daily_volume=self._pnl.daily_volume,
        )

    def _roll_day(self) -> None:
        today = self._today()
        if today == self._last_reset_date:
            return
        self._daily_start_balance = self.current_balance
        self._pnl.reset_day()
        self._last_reset_date = today
        LOGGER.info("daily risk reset for %s: start balance %.2f", today.isoformat(), self._daily_start_balance)

    # -- ledger ------------------------------------------------------------

    def record_trade_result(self, result: TradeResult) -> None:
        self._roll_day()
        self._pnl.record(result)

    async def update_position(
        self,
        token: str,
        amount: float,
        price: float,
        is_add: bool,
        *,
        quote_token: str | None = None,
    ) -> List[StopLossEvent]:
        now = self._clock()
        existing = self._positions.get(token)

        if is_add:
            if existing is not None:
                total = existing.amount + amount
                avg_price = (existing.avg_price * existing.amount + price * amount) / total if total > 0 else price
                existing.amount = total
                existing.avg_price = avg_price
                existing.timestamp = now
                if existing.quote_token is None:
                    existing.quote_token = quote_token
            else:
                self._positions[token] = PositionInfo(
                    token=token, amount=amount, avg_price=price, timestamp=now, quote_token=quote_token
                )
        elif existing is not None:
            remaining = max(0.0, existing.amount - amount)
            if remaining == 0:
                del self._positions[token]
            else:
                existing.unrealized_pnl *= remaining / existing.amount
                existing.amount = remaining
                existing.timestamp = now

        return await self.check_stop_losses()

    async def mark_price(self, token: str, price: float) -> List[StopLossEvent]:
        position = self._positions.get(token)
        if position is not None:
            position.unrealized_pnl = (price - position.avg_price) * position.amount
            position.timestamp = self._clock()
        return await self.check_stop_losses()

    async def check_stop_losses(self) -> List[StopLossEvent]:
        events: List[StopLossEvent] = []
        for token, position in list(self._positions.items()):
            loss_pct = position.loss_pct
            if loss_pct <= self._settings.stop_loss_threshold_pct:
                continue

            LOGGER.warning("stop-loss triggered for %s: %.2f%% loss", token, loss_pct)
            if self._liquidator is None:
                # Paper mode: drop the ledger entry without a closing trade.
                del self._positions[token]
                events.append(self._stop_event(position, loss_pct, liquidated=False))
                continue

            try:
                receipt = await self._liquidator.liquidate(position)
            except Exception as exc:
                receipt = SwapReceipt(success=False, error=str(exc) or type(exc).__name__)

            if receipt.success:
                del self._positions[token]
                LOGGER.warning("stop-loss liquidated %s tx=%s out=%.6f", token, receipt.transaction_id, receipt.amount_out)
                events.append(self._stop_event(position, loss_pct, liquidated=True))
            else:
                LOGGER.error("stop-loss liquidation failed for %s, position kept: %s", token, receipt.error)
                events.append(self._stop_event(position, loss_pct, liquidated=False, error=receipt.error))
        return events

    def _stop_event(
        self,
        position: PositionInfo,
        loss_pct: float,
        *,
        liquidated: bool,
        error: str | None = None,
    ) -> StopLossEvent:
        return StopLossEvent(
            token=position.token,
            amount=position.amount,
            avg_price=position.avg_price,
            loss_pct=loss_pct,
            liquidated=liquidated,
            timestamp=self._clock(),
            error=error,
        )

    # -- emergency stop ----------------------------------------------------

    def activate_emergency_stop(self, reason: str) -> None:
        self._emergency_stop = True
        self._emergency_reason = reason
        LOGGER.critical("EMERGENCY STOP ACTIVATED: %s", reason)

    def deactivate_emergency_stop(self) -> None:
        self._emergency_stop = False
        self._emergency_reason = ""
        LOGGER.warning("emergency stop cleared")

    # -- reporting ---------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        metrics = self.get_risk_metrics()
        return {
            "current_drawdown": metrics.current_drawdown,
            "daily_pnl": metrics.daily_pnl,
            "daily_volume": metrics.daily_volume,
            "total_exposure": metrics.total_exposure,
            "active_trades": metrics.active_trades,
            "risk_score": metrics.risk_score,
            "max_risk_score": metrics.max_risk_score,
            "daily_start_balance": self._daily_start_balance,
            "last_reset_date": self._last_reset_date.isoformat(),
            "emergency_stop": self._emergency_stop,
            "positions": {
                token: {
                    "amount": position.amount,
                    "avg_price": position.avg_price,
                    "unrealized_pnl": position.unrealized_pnl,
                    "timestamp": position.timestamp,
                }
                for token, position in self._positions.items()
            },
        }

    def risk_report(self) -> str:
        metrics = self.get_risk_metrics()
        limits = self._settings
        lines = [
            "RISK MANAGEMENT REPORT",
            f"  daily P&L:          ${metrics.daily_pnl:.2f}",
            f"  daily volume:       ${metrics.daily_volume:.2f}",
            f"  current drawdown:   {metrics.current_drawdown:.2f}%",
            f"  total exposure:     ${metrics.total_exposure:.2f}",
            f"  active positions:   {metrics.active_trades}",
            f"  risk score:         {metrics.risk_score:.1f}/100",
            "limits:",
            f"  max daily loss:     ${limits.max_daily_loss:g}",
            f"  max position size:  ${limits.max_position_size:g}",
            f"  max exposure:       ${limits.max_portfolio_exposure:g}",
            f"  max slippage:       {limits.max_slippage_bps:g}bps",
            f"  max concurrent:     {limits.max_concurrent_trades}",
            "positions:",
        ]
        for position in self._positions.values():
            lines.append(
                f"  {position.token}: {position.amount:.4f} @ ${position.avg_price:.6f}"
                f" (P&L ${position.unrealized_pnl:.2f})"
            )
        lines.append(f"emergency stop: {'ACTIVE' if self._emergency_stop else 'inactive'}")
        return "\n".join(lines)
