"""Scan orchestrator — scan → detect → dedupe → gate → execute | queue.

한 계정의 모든 상태 변경(스캔 사이클, 승인/거절, 취소, 정산, 킬스위치,
설정 변경)은 ``ctx.lock`` 아래에서 직렬화된다.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from polyarb.account import AccountContext
from polyarb.config import MIN_SCAN_INTERVAL
from polyarb.errors import NotFoundError, TransientSourceError, ValidationError
from polyarb.execution.executor import (
    CancelResult,
    ExecutionResult,
    OrderExecutor,
    ReconcileResult,
)
from polyarb.models.market import OrderBook
from polyarb.models.opportunity import Opportunity, OpportunityStatus
from polyarb.models.settings import Settings
from polyarb.models.trade import DailyPnL, Trade, TradeStatus
from polyarb.monitoring.events import (
    BALANCE_UPDATE,
    OPPORTUNITY_NEW,
    SETTINGS_CHANGED,
)
from polyarb.risk.manager import REASON_MANUAL, RiskManager, RiskStatus
from polyarb.storage.sqlite_repository import utc_today
from polyarb.strategy.detector import OpportunityDetector

logger = logging.getLogger(__name__)

_NUMERIC_SETTINGS = (
    "position_size", "profit_threshold", "daily_loss_limit",
    "max_open_positions", "scan_interval",
)
_EDITABLE_SETTINGS = frozenset(_NUMERIC_SETTINGS) | {"auto_mode", "active_currencies"}


@dataclass
class CycleSummary:
    """한 사이클 결과 요약."""

    cycle_number: int = 0
    skipped: bool = False
    skip_reason: str = ""
    aborted: bool = False
    markets_scanned: int = 0
    opportunities_found: int = 0
    duplicates_skipped: int = 0
    gate_denied: int = 0
    trades_executed: int = 0
    trades_failed: int = 0
    queued_for_approval: int = 0
    expired: int = 0
    balance: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def validate_settings_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """설정 변경 검증 + 정규화. 실패 시 ValidationError (상태 변경 없음)."""
    if "kill_switch" in changes or "kill_switch_reason" in changes:
        raise ValidationError("kill_switch is changed through the kill switch operations")
    unknown = set(changes) - _EDITABLE_SETTINGS
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")

    clean: dict[str, Any] = {}
    for key, value in changes.items():
        if key in _NUMERIC_SETTINGS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{key} must be a number")
            if value <= 0:
                raise ValidationError(f"{key} must be positive")
            if key == "max_open_positions":
                if int(value) != value:
                    raise ValidationError("max_open_positions must be a whole number")
                value = int(value)
            elif key == "scan_interval":
                value = max(float(value), MIN_SCAN_INTERVAL)
            else:
                value = float(value)
        elif key == "auto_mode":
            if not isinstance(value, bool):
                raise ValidationError("auto_mode must be true or false")
        elif key == "active_currencies":
            if isinstance(value, str) or not all(isinstance(c, str) and c.strip() for c in value):
                raise ValidationError("active_currencies must be a list of symbols")
            value = [c.strip().upper() for c in value]
        clean[key] = value
    return clean


class ScanOrchestrator:
    """Top-level loop for one account.

    Args:
        ctx: Account context (repository, gateway, bus, lock, ...).
        risk: Risk manager; built from ``ctx`` when omitted.
        detector: Opportunity detector; built from ``ctx`` when omitted.
        executor: Order executor; built from ``ctx`` when omitted.
    """

    def __init__(
        self,
        ctx: AccountContext,
        risk: Optional[RiskManager] = None,
        detector: Optional[OpportunityDetector] = None,
        executor: Optional[OrderExecutor] = None,
    ):
        self.ctx = ctx
        self.risk = risk or RiskManager(ctx)
        self.detector = detector or OpportunityDetector(
            gateway=ctx.gateway,
            policy=ctx.policy,
            snapshot_sink=ctx.repository.record_snapshot,
        )
        self.executor = executor or OrderExecutor(ctx)

        self._cycle_count = 0
        self._cycle_running = False
        self._stop_token: Optional[asyncio.Event] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._timer_interval: Optional[float] = None
        self._retired_timers: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Scan cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleSummary:
        """One scan cycle. Never raises except on cancellation."""
        if self._cycle_running:
            logger.info("Previous cycle still running, skipping")
            return CycleSummary(skipped=True, skip_reason="cycle already running")

        self._cycle_running = True
        self._cycle_count += 1
        summary = CycleSummary(cycle_number=self._cycle_count)
        try:
            await self._cycle_body(summary)
        except Exception as exc:
            logger.exception("Error in cycle %d", summary.cycle_number)
            summary.error = str(exc)
            self.ctx.alerts.error(
                "error", f"Scan cycle error: {exc}", {"cycle": summary.cycle_number},
            )
        finally:
            self._cycle_running = False

        logger.info(
            "Cycle %d: markets=%d opps=%d executed=%d failed=%d queued=%d denied=%d",
            summary.cycle_number, summary.markets_scanned, summary.opportunities_found,
            summary.trades_executed, summary.trades_failed, summary.queued_for_approval,
            summary.gate_denied,
        )
        return summary

    async def _cycle_body(self, summary: CycleSummary) -> None:
        # 1) Kill switch → skip everything
        settings = self.ctx.repository.get_settings()
        if settings.kill_switch:
            summary.skipped = True
            summary.skip_reason = "kill switch active"
            logger.info("Kill switch active, skipping cycle")
            return

        # 2) Standing risk check
        async with self.ctx.lock:
            triggered = await self.risk.check_risk_conditions()
        if triggered:
            summary.aborted = True
            return

        # 3) Candidate markets
        markets = await self.ctx.scanner.fetch_candidate_markets(settings.active_currencies)
        summary.markets_scanned = len(markets)
        if not markets:
            return

        # 4) Detection
        opportunities = await self.detector.detect_all(markets, settings)
        summary.opportunities_found = len(opportunities)

        # 5) Route each opportunity
        for opp in opportunities:
            async with self.ctx.lock:
                await self._route_opportunity(opp, summary)

        # 6) Expiry
        async with self.ctx.lock:
            summary.expired = self.ctx.repository.expire_pending_opportunities()
        if summary.expired:
            logger.info("Expired %d pending opportunities", summary.expired)

        # 7) Balance
        summary.balance = await self._refresh_balance()

        if self.ctx.config.reconcile_open_trades:
            await self.reconcile_open_trades()

    async def _route_opportunity(self, opp: Opportunity, summary: CycleSummary) -> None:
        if self.ctx.repository.has_pending_opportunity(opp.market_id):
            summary.duplicates_skipped += 1
            logger.debug("Pending opportunity already queued for %s", opp.market_id)
            return

        # settings re-read: mode / limits may have changed mid-cycle
        settings = self.ctx.repository.get_settings()
        gate = await self.risk.can_trade(opp, settings)
        if not gate.allowed:
            summary.gate_denied += 1
            return

        opp.expires_at = self._approval_expiry(opp)
        if settings.auto_mode:
            opp = self.ctx.repository.create_opportunity(opp)
            result = await self._execute_and_mark(opp, settings)
            if result.success:
                summary.trades_executed += 1
            else:
                summary.trades_failed += 1
            return

        opp = self.ctx.repository.create_opportunity(opp)
        summary.queued_for_approval += 1
        self.ctx.events.publish(OPPORTUNITY_NEW, opp.to_dict())
        self.ctx.alerts.info(
            "opportunity",
            f"New opportunity: {opp.market_question[:50]}... "
            f"spread {opp.spread * 100:.2f}%",
            {"opportunity_id": opp.id, "spread": opp.spread},
        )

    def _approval_expiry(self, opp: Opportunity) -> datetime:
        deadline = datetime.now(tz=timezone.utc) + timedelta(seconds=self.ctx.config.approval_ttl)
        if opp.expires_at is not None and opp.expires_at < deadline:
            return opp.expires_at
        return deadline

    async def _execute_and_mark(self, opp: Opportunity, settings: Settings) -> ExecutionResult:
        result = await self.executor.execute(opp, settings)
        status = OpportunityStatus.APPROVED if result.success else OpportunityStatus.FAILED
        self.ctx.repository.update_opportunity_status(opp.id, status)
        return result

    async def _refresh_balance(self) -> Optional[float]:
        try:
            balance = await self.ctx.gateway.get_balance()
        except TransientSourceError as exc:
            logger.warning("Balance refresh failed: %s", exc)
            return None
        self.ctx.events.publish(BALANCE_UPDATE, balance)
        return balance["balance"]

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _resolve_interval(self) -> float:
        if self.ctx.config.scan_interval is not None:
            return self.ctx.config.scan_interval
        return max(self.ctx.repository.get_settings().scan_interval, MIN_SCAN_INTERVAL)

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def interval(self) -> Optional[float]:
        return self._timer_interval

    async def _timer_loop(
        self, stop_token: asyncio.Event, interval: float, run_immediately: bool,
    ) -> None:
        if not run_immediately:
            if await self._wait(stop_token, interval):
                return
        while not stop_token.is_set():
            await self.run_cycle()
            if await self._wait(stop_token, interval):
                return

    @staticmethod
    async def _wait(stop_token: asyncio.Event, interval: float) -> bool:
        """True if stopped during the wait."""
        try:
            await asyncio.wait_for(stop_token.wait(), timeout=interval)
            return True
        except asyncio.TimeoutError:
            return False  # interval elapsed

    def start(self) -> asyncio.Task:
        """Start the periodic scan (first cycle runs immediately)."""
        if self.running:
            return self._timer_task
        return self._spawn_timer(self._resolve_interval(), run_immediately=True)

    def _spawn_timer(self, interval: float, run_immediately: bool) -> asyncio.Task:
        self._stop_token = asyncio.Event()
        self._timer_interval = interval
        self._timer_task = asyncio.create_task(
            self._timer_loop(self._stop_token, interval, run_immediately),
        )
        logger.info("Scan timer started: every %.0fs", interval)
        return self._timer_task

    def restart_timer(self, interval: Optional[float] = None) -> asyncio.Task:
        """Swap in a fresh stop token and timer with the new period.

        A cycle already in flight finishes under the old token; the old task
        is kept so that ``stop_timer`` can still cancel it.
        """
        interval = interval if interval is not None else self._resolve_interval()
        if self._stop_token is not None:
            self._stop_token.set()
        old = self._timer_task
        if old is not None and not old.done():
            self._retired_timers.add(old)
            old.add_done_callback(self._retired_timers.discard)
        return self._spawn_timer(max(interval, MIN_SCAN_INTERVAL), run_immediately=False)

    async def stop_timer(self) -> None:
        """Cancel the timer and any retired timer, including cycles in flight."""
        if self._stop_token is not None:
            self._stop_token.set()
        tasks = list(self._retired_timers)
        if self._timer_task is not None:
            tasks.append(self._timer_task)
        self._timer_task = None
        self._retired_timers.clear()
        for task in tasks:
            if task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Human approval
    # ------------------------------------------------------------------

    def _get_opportunity(self, opportunity_id: int) -> Opportunity:
        opp = self.ctx.repository.get_opportunity(opportunity_id)
        if opp is None:
            raise NotFoundError(f"Opportunity not found: {opportunity_id}")
        return opp

    async def approve_opportunity(self, opportunity_id: int) -> ExecutionResult:
        """Re-run the gate, execute, mark approved | failed.

        Gate denial → ExecutionResult(success=False) with no state change.
        """
        async with self.ctx.lock:
            opp = self._get_opportunity(opportunity_id)
            if opp.status is not OpportunityStatus.PENDING:
                raise ValidationError(
                    f"Opportunity {opportunity_id} is {opp.status.value}, not pending"
                )
            if opp.expires_at is not None and opp.expires_at < datetime.now(tz=timezone.utc):
                self.ctx.repository.update_opportunity_status(
                    opportunity_id, OpportunityStatus.EXPIRED,
                )
                raise ValidationError(f"Opportunity {opportunity_id} has expired")

            settings = self.ctx.repository.get_settings()
            gate = await self.risk.can_trade(opp, settings)
            if not gate.allowed:
                return ExecutionResult(success=False, error=gate.reason)

            logger.info("Opportunity %s approved, executing", opportunity_id)
            return await self._execute_and_mark(opp, settings)

    async def reject_opportunity(self, opportunity_id: int) -> Opportunity:
        async with self.ctx.lock:
            opp = self._get_opportunity(opportunity_id)
            if opp.status is not OpportunityStatus.PENDING:
                raise ValidationError(
                    f"Opportunity {opportunity_id} is {opp.status.value}, not pending"
                )
            logger.info("Opportunity %s rejected", opportunity_id)
            return self.ctx.repository.update_opportunity_status(
                opportunity_id, OpportunityStatus.REJECTED,
            )

    async def execute_trade(self, opportunity: Opportunity) -> ExecutionResult:
        """Gate + execute atomically. ``opportunity`` is persisted first."""
        async with self.ctx.lock:
            settings = self.ctx.repository.get_settings()
            gate = await self.risk.can_trade(opportunity, settings)
            if not gate.allowed:
                return ExecutionResult(success=False, error=gate.reason)
            if opportunity.id is None:
                opportunity.expires_at = self._approval_expiry(opportunity)
                opportunity = self.ctx.repository.create_opportunity(opportunity)
            return await self._execute_and_mark(opportunity, settings)

    # ------------------------------------------------------------------
    # Trade commands
    # ------------------------------------------------------------------

    async def cancel_trade(self, trade_id: int) -> CancelResult:
        async with self.ctx.lock:
            return await self.executor.cancel_trade(trade_id)

    async def settle_trade(self, trade_id: int, result: str) -> Trade:
        """Settlement trigger (manual action or a resolution watcher)."""
        async with self.ctx.lock:
            return await self.executor.process_settlement(trade_id, result)

    async def reconcile_open_trades(self) -> list[ReconcileResult]:
        """placed/partial trades 의 레그 상태를 거래소와 대조."""
        results: list[ReconcileResult] = []
        async with self.ctx.lock:
            trades = self.ctx.repository.list_trades_by_status(
                TradeStatus.PLACED, TradeStatus.PARTIAL,
            )
            for trade in trades:
                results.append(await self.executor.check_order_status(trade))
        changed = sum(1 for r in results if r.changed)
        if changed:
            logger.info("Reconciled %d open trades, %d changed", len(results), changed)
        return results

    # ------------------------------------------------------------------
    # Kill switch / risk
    # ------------------------------------------------------------------

    async def activate_kill_switch(self, reason: str = REASON_MANUAL) -> bool:
        async with self.ctx.lock:
            return await self.risk.activate_kill_switch(reason)

    async def deactivate_kill_switch(self) -> bool:
        async with self.ctx.lock:
            return await self.risk.deactivate_kill_switch()

    async def toggle_kill_switch(self) -> bool:
        async with self.ctx.lock:
            return await self.risk.toggle_kill_switch()

    async def get_risk_status(self) -> RiskStatus:
        return await self.risk.get_risk_status()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def update_settings(self, **changes: Any) -> Settings:
        """Validate + persist. Interval change restarts the timer."""
        clean = validate_settings_changes(changes)
        async with self.ctx.lock:
            before = self.ctx.repository.get_settings()
            settings = self.ctx.repository.update_settings(**clean)
        self.ctx.events.publish(SETTINGS_CHANGED, settings.to_dict())
        logger.info("Settings updated: %s", clean)

        if (
            "scan_interval" in clean
            and settings.scan_interval != before.scan_interval
            and self.running
            and self.ctx.config.scan_interval is None
        ):
            self.restart_timer(settings.scan_interval)
        return settings

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        repo = self.ctx.repository
        today = repo.get_today_pnl() or DailyPnL(date=utc_today())
        settings = repo.get_settings()
        return {
            "today": {**today.to_dict(), "win_rate": today.win_rate},
            "all_time": repo.get_pnl_totals(),
            "active_positions": repo.count_open_trades(),
            "pending_opportunities": len(repo.list_pending_opportunities()),
            "unread_alerts": repo.count_unread_alerts(),
            "kill_switch": settings.kill_switch,
            "auto_mode": settings.auto_mode,
        }

    def get_pnl_history(self, days: int = 30) -> list[DailyPnL]:
        end = utc_today()
        return self.ctx.repository.list_daily_pnl(end - timedelta(days=days - 1), end)

    async def get_order_books(self, yes_token: str, no_token: str) -> tuple[OrderBook, OrderBook]:
        return await self.detector.get_market_order_books(yes_token, no_token)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop the timer first, then sweep open orders unless halted."""
        await self.stop_timer()
        await self.ctx.gateway.wait_late_orders()
        if self.ctx.kill_switch.is_active:
            logger.info("Kill switch active, orders already swept")
            return
        if await self.ctx.gateway.cancel_all_orders():
            logger.info("All outstanding orders cancelled")
        else:
            logger.warning("Shutdown: cancel-all did not complete")
