"""Order executor — paired YES/NO leg placement and trade lifecycle.

Trade 상태 머신:
    pending → placed → {partial | filled} → settled
    pending/placed → failed (execution error) | cancelled (explicit cancel)

Trade 는 네트워크 호출 전에 pending 으로 저장된다. ``execute`` 는 예외를
던지지 않고 항상 placed 또는 failed 상태로 반환한다.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from py_clob_client.order_builder.constants import BUY

from polyarb.account import AccountContext
from polyarb.errors import LegExecutionError, NotFoundError, ValidationError
from polyarb.execution.clob_gateway import CANCELLED_STATUSES, FILLED_STATUSES
from polyarb.models.opportunity import Opportunity
from polyarb.models.settings import Settings
from polyarb.models.trade import SETTLEABLE_TRADE_STATUSES, Trade, TradeStatus
from polyarb.monitoring.events import TRADE_CANCELLED, TRADE_CREATED, TRADE_SETTLED
from polyarb.storage.sqlite_repository import utc_today

logger = logging.getLogger(__name__)


@dataclass
class LegResult:
    """One leg's placement outcome."""

    side: str  # "YES" or "NO"
    token_id: str
    order_id: Optional[str] = None
    error: Optional[str] = None
    rejected: bool = False
    timed_out: bool = False

    @property
    def placed(self) -> bool:
        return self.order_id is not None


@dataclass
class ExecutionResult:
    """Execute 결과. 실패해도 trade 는 채워진다 (게이트 거부 제외)."""

    success: bool
    trade: Optional[Trade] = None
    yes_order_id: Optional[str] = None
    no_order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CancelResult:
    trade: Trade
    cancelled_yes: bool = False
    cancelled_no: bool = False


@dataclass
class ReconcileResult:
    trade: Trade
    yes_status: Optional[str]
    no_status: Optional[str]
    new_status: TradeStatus
    changed: bool


@dataclass
class RollbackReport:
    attempts: dict[str, bool] = field(default_factory=dict)

    @property
    def clean(self) -> bool:
        return all(self.attempts.values())


def derive_trade_status(
    current: TradeStatus, yes_status: Optional[str], no_status: Optional[str],
) -> TradeStatus:
    """Leg statuses → trade status. Neither matched nor cancelled: unchanged."""
    yes_matched = yes_status in FILLED_STATUSES
    no_matched = no_status in FILLED_STATUSES
    if yes_matched and no_matched:
        return TradeStatus.FILLED
    if yes_matched or no_matched:
        return TradeStatus.PARTIAL
    if yes_status in CANCELLED_STATUSES or no_status in CANCELLED_STATUSES:
        return TradeStatus.CANCELLED
    return current


class OrderExecutor:
    """Execute paired arbitrage trades for one account.

    Callers hold ``ctx.lock``; the gate check and ``execute`` must run in the
    same critical section.
    """

    def __init__(self, ctx: AccountContext):
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute(
        self, opportunity: Opportunity, settings: Optional[Settings] = None,
    ) -> ExecutionResult:
        """YES 레그 → NO 레그. 실패 시 rollback 후 failed."""
        settings = settings or self.ctx.repository.get_settings()
        repo = self.ctx.repository

        total_cost = opportunity.yes_price + opportunity.no_price
        shares = settings.position_size / total_cost

        logger.info(
            "Executing trade: %s... YES=%.4f NO=%.4f shares=%.4f",
            opportunity.market_question[:50], opportunity.yes_price,
            opportunity.no_price, shares,
        )

        trade = repo.create_trade(Trade(
            market_id=opportunity.market_id,
            market_question=opportunity.market_question,
            yes_token_id=opportunity.yes_token_id,
            no_token_id=opportunity.no_token_id,
            yes_price=opportunity.yes_price,
            no_price=opportunity.no_price,
            total_cost=total_cost,
            position_size=settings.position_size,
            expected_profit=opportunity.expected_profit,
            opportunity_id=opportunity.id,
        ))

        yes_leg = LegResult("YES", opportunity.yes_token_id)
        no_leg = LegResult("NO", opportunity.no_token_id)
        legs: list[LegResult] = []

        try:
            legs.append(yes_leg)
            yes_leg.order_id = await self._place_leg(yes_leg, opportunity.yes_price, shares)
            trade = repo.update_trade(trade.id, yes_order_id=yes_leg.order_id)

            legs.append(no_leg)
            no_leg.order_id = await self._place_leg(no_leg, opportunity.no_price, shares)
            trade = repo.update_trade(
                trade.id, no_order_id=no_leg.order_id, status=TradeStatus.PLACED,
            )
        except asyncio.CancelledError:
            await self._fail(trade, legs, "execution cancelled")
            raise
        except Exception as exc:
            trade = await self._fail(trade, legs, str(exc))
            return ExecutionResult(
                success=False,
                trade=trade,
                yes_order_id=yes_leg.order_id,
                no_order_id=no_leg.order_id,
                error=str(exc),
            )

        logger.info("Trade placed successfully: %s", trade.id)
        self.ctx.alerts.info(
            "trade",
            f"Trade placed: {trade.market_question[:50]}...",
            {"trade_id": trade.id, "spread": opportunity.spread},
        )
        self.ctx.events.publish(TRADE_CREATED, trade.to_dict())
        return ExecutionResult(
            success=True,
            trade=trade,
            yes_order_id=yes_leg.order_id,
            no_order_id=no_leg.order_id,
        )

    async def _place_leg(self, leg: LegResult, price: float, shares: float) -> str:
        try:
            return await self.ctx.gateway.place_order(
                leg.token_id, price, shares, BUY, leg=leg.side,
            )
        except LegExecutionError as exc:
            leg.error = str(exc)
            leg.rejected = exc.rejected
            leg.timed_out = exc.timed_out
            raise
        except Exception as exc:
            leg.error = str(exc)
            raise LegExecutionError(leg.side, str(exc)) from exc

    async def _fail(self, trade: Trade, legs: list[LegResult], error: str) -> Trade:
        logger.error("Trade %s failed: %s", trade.id, error)
        await self.rollback(trade, legs)
        trade = self.ctx.repository.update_trade(
            trade.id, status=TradeStatus.FAILED, error=error,
        )
        self.ctx.alerts.error(
            "error",
            f"Trade failed: {error}",
            {"trade_id": trade.id, "error": error},
        )
        return trade

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, trade: Trade, legs: list[LegResult]) -> RollbackReport:
        """Cancel every attempted leg, each independently.

        Placed leg: cancel by order id. Failed leg that the exchange did not
        explicitly reject (error, timeout): sweep the token's orders in case it
        landed anyway. Failures are logged, never raised.
        """
        logger.info("Rolling back trade %s", trade.id)
        report = RollbackReport()
        for leg in legs:
            if leg.placed:
                ok = await self._safe_cancel(leg.side, leg.order_id)
            elif leg.rejected:
                continue
            else:
                ok = await self._safe_sweep(leg.side, leg.token_id)
            report.attempts[leg.side] = ok
        return report

    async def _safe_cancel(self, side: str, order_id: str) -> bool:
        try:
            ok = await self.ctx.gateway.cancel_order(order_id)
        except Exception as exc:
            logger.error("Failed to cancel %s order %s: %s", side, order_id, exc)
            return False
        if not ok:
            logger.error("Failed to cancel %s order %s", side, order_id)
        return ok

    async def _safe_sweep(self, side: str, token_id: str) -> bool:
        try:
            ok = await self.ctx.gateway.cancel_token_orders(token_id)
        except Exception as exc:
            logger.error("Failed to sweep %s token %s: %s", side, token_id[:16], exc)
            return False
        if not ok:
            logger.error("Failed to sweep %s token %s", side, token_id[:16])
        return ok

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def _get_trade(self, trade_id: int) -> Trade:
        trade = self.ctx.repository.get_trade(trade_id)
        if trade is None:
            raise NotFoundError(f"Trade not found: {trade_id}")
        return trade

    async def cancel_trade(self, trade_id: int) -> CancelResult:
        """Cancel both legs (best-effort) → cancelled regardless of leg results."""
        trade = self._get_trade(trade_id)
        if trade.is_terminal:
            raise ValidationError(f"Trade {trade_id} is already {trade.status.value}")

        logger.info("Cancelling trade %s", trade_id)
        cancelled_yes = cancelled_no = False
        if trade.yes_order_id:
            cancelled_yes = await self._safe_cancel("YES", trade.yes_order_id)
        if trade.no_order_id:
            cancelled_no = await self._safe_cancel("NO", trade.no_order_id)

        trade = self.ctx.repository.update_trade(trade_id, status=TradeStatus.CANCELLED)
        self.ctx.alerts.warning(
            "trade",
            f"Trade cancelled: {trade.market_question[:50]}...",
            {"trade_id": trade_id, "cancelled_yes": cancelled_yes, "cancelled_no": cancelled_no},
        )
        self.ctx.events.publish(TRADE_CANCELLED, trade.to_dict())
        return CancelResult(trade=trade, cancelled_yes=cancelled_yes, cancelled_no=cancelled_no)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def check_order_status(self, trade: Trade) -> ReconcileResult:
        """Query both legs and update the trade status on change."""
        yes_status = no_status = None
        if trade.yes_order_id:
            yes_status = await self.ctx.gateway.get_order_status(trade.yes_order_id)
        if trade.no_order_id:
            no_status = await self.ctx.gateway.get_order_status(trade.no_order_id)

        if trade.is_terminal:
            new_status = trade.status
        else:
            new_status = derive_trade_status(trade.status, yes_status, no_status)

        changed = new_status is not trade.status
        if changed:
            logger.info(
                "Trade %s status updated: %s -> %s",
                trade.id, trade.status.value, new_status.value,
            )
            trade = self.ctx.repository.update_trade(trade.id, status=new_status)

        return ReconcileResult(
            trade=trade,
            yes_status=yes_status,
            no_status=no_status,
            new_status=new_status,
            changed=changed,
        )

    # ------------------------------------------------------------------
    # Settle
    # ------------------------------------------------------------------

    async def process_settlement(self, trade_id: int, result: str) -> Trade:
        """Book the final P&L: shares × (1 − recorded total_cost)."""
        trade = self._get_trade(trade_id)
        if trade.status not in SETTLEABLE_TRADE_STATUSES:
            raise ValidationError(
                f"Trade {trade_id} cannot be settled from {trade.status.value}"
            )

        actual_profit = trade.shares * (1.0 - trade.total_cost)
        trade = self.ctx.repository.update_trade(
            trade_id,
            status=TradeStatus.SETTLED,
            settlement_result=result,
            actual_profit=actual_profit,
            settled_at=datetime.now(tz=timezone.utc),
        )
        self.ctx.repository.record_settlement_pnl(utc_today(), actual_profit)

        self.ctx.alerts.info(
            "settlement",
            f"Trade settled: {result}, Profit: ${actual_profit:.4f}",
            {"trade_id": trade_id, "result": result, "profit": actual_profit},
        )
        self.ctx.events.publish(
            TRADE_SETTLED, {"trade": trade.to_dict(), "profit": actual_profit},
        )
        return trade
