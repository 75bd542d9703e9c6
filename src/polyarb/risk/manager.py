"""Risk manager — pre-trade gate, kill switch operations, standing check.

Gate order (first failure wins):
    1. kill switch
    2. daily loss limit (auto-activates the kill switch)
    3. open positions
    4. balance
    5. profit threshold
    6. liquidity (each side >= position_size × multiplier)

None of these methods take the account lock; callers hold it.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from polyarb.account import AccountContext
from polyarb.errors import TransientSourceError
from polyarb.models.opportunity import Opportunity
from polyarb.models.settings import Settings
from polyarb.monitoring.events import KILL_SWITCH_ACTIVATED, KILL_SWITCH_DEACTIVATED
from polyarb.risk.kill_switch import KillSwitchCommand

logger = logging.getLogger(__name__)

REASON_DAILY_LOSS = "daily loss limit exceeded"
REASON_LOW_BALANCE = "low balance warning"
REASON_MANUAL = "manual activation"


@dataclass
class GateResult:
    """Pre-trade gate 결과. Denial 은 예외가 아니라 값."""

    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class RiskStatus:
    """Derived snapshot, not persisted."""

    kill_switch: bool
    kill_switch_reason: Optional[str]
    auto_mode: bool
    balance: Optional[float]
    open_positions: int
    max_positions: int
    daily_pnl: float
    daily_loss_limit: float
    loss_limit_remaining: float
    position_size: float
    can_trade: bool
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class RiskManager:
    """Stateful gate over one account's Settings and kill switch."""

    def __init__(self, ctx: AccountContext):
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Kill switch
    # ------------------------------------------------------------------

    @property
    def kill_switch_active(self) -> bool:
        return self.ctx.kill_switch.is_active

    async def activate_kill_switch(self, reason: str = REASON_MANUAL) -> bool:
        """Halt trading. Returns True if the switch was off before.

        Already active: only the reason is re-recorded.
        """
        result = self.ctx.kill_switch.apply(KillSwitchCommand.ACTIVATE, reason)
        if not result.changed:
            return False

        if not await self.ctx.gateway.cancel_all_orders():
            logger.warning("Kill switch: cancel-all did not complete")

        cleared = self.ctx.repository.clear_pending_opportunities()
        if cleared:
            logger.info("Kill switch: cleared %d pending opportunities", cleared)

        self.ctx.alerts.critical(
            "kill_switch",
            f"KILL SWITCH ACTIVATED: {reason}",
            {"reason": reason, "timestamp": datetime.now(tz=timezone.utc).isoformat()},
        )
        self.ctx.events.publish(KILL_SWITCH_ACTIVATED, {"reason": reason})
        return True

    async def deactivate_kill_switch(self) -> bool:
        """Resume trading. Returns True if the switch was on before."""
        result = self.ctx.kill_switch.apply(KillSwitchCommand.DEACTIVATE)
        if not result.changed:
            return False
        self.ctx.alerts.info("kill_switch", "Kill switch deactivated - trading resumed")
        self.ctx.events.publish(KILL_SWITCH_DEACTIVATED, {})
        return True

    async def toggle_kill_switch(self) -> bool:
        """Flip the switch. Returns the new state (True = halted)."""
        if self.kill_switch_active:
            await self.deactivate_kill_switch()
            return False
        await self.activate_kill_switch(REASON_MANUAL)
        return True

    # ------------------------------------------------------------------
    # Pre-trade gate
    # ------------------------------------------------------------------

    def _today_pnl(self) -> float:
        today = self.ctx.repository.get_today_pnl()
        return today.realized_pnl if today else 0.0

    async def can_trade(
        self, opportunity: Opportunity, settings: Optional[Settings] = None,
    ) -> GateResult:
        """Evaluate the gate against current Settings."""
        settings = settings or self.ctx.repository.get_settings()

        # 1) Kill switch
        if settings.kill_switch:
            return self._deny("Kill switch is active")

        # 2) Daily loss
        daily_pnl = self._today_pnl()
        if daily_pnl < -settings.daily_loss_limit:
            await self.activate_kill_switch(REASON_DAILY_LOSS)
            return self._deny("Daily loss limit exceeded")

        # 3) Open positions
        open_positions = self.ctx.repository.count_open_trades()
        if open_positions >= settings.max_open_positions:
            return self._deny(
                f"Maximum open positions reached "
                f"({open_positions}/{settings.max_open_positions})"
            )

        # 4) Balance
        try:
            balance = (await self.ctx.gateway.get_balance())["balance"]
        except TransientSourceError as exc:
            return self._deny(f"Balance unavailable: {exc}")
        if balance < settings.position_size:
            return self._deny(
                f"Insufficient balance: ${balance:.2f} < ${settings.position_size:.2f}"
            )

        # 5) Profit threshold (settings may have changed since detection)
        if opportunity.spread < settings.profit_threshold:
            return self._deny(
                f"Below profit threshold: {opportunity.spread * 100:.2f}% "
                f"< {settings.profit_threshold * 100:.2f}%"
            )

        # 6) Liquidity
        min_liquidity = settings.position_size * self.ctx.policy.liquidity_multiplier
        if opportunity.yes_liquidity < min_liquidity or opportunity.no_liquidity < min_liquidity:
            return self._deny("Insufficient liquidity")

        return GateResult(allowed=True)

    def _deny(self, reason: str) -> GateResult:
        logger.info("Risk rejection: %s", reason)
        return GateResult(allowed=False, reason=reason)

    # ------------------------------------------------------------------
    # Standing evaluation
    # ------------------------------------------------------------------

    async def get_risk_status(self) -> RiskStatus:
        settings = self.ctx.repository.get_settings()
        daily_pnl = self._today_pnl()
        open_positions = self.ctx.repository.count_open_trades()
        remaining = settings.daily_loss_limit + daily_pnl

        reasons: list[str] = []
        balance: Optional[float]
        try:
            balance = (await self.ctx.gateway.get_balance())["balance"]
        except TransientSourceError as exc:
            logger.warning("Risk status without balance: %s", exc)
            balance = None
            reasons.append("balance unavailable")

        if settings.kill_switch:
            reasons.append(f"kill switch: {settings.kill_switch_reason or 'active'}")
        if open_positions >= settings.max_open_positions:
            reasons.append("max open positions reached")
        if balance is not None and balance < settings.position_size:
            reasons.append("insufficient balance")
        if remaining <= 0:
            reasons.append(REASON_DAILY_LOSS)

        return RiskStatus(
            kill_switch=settings.kill_switch,
            kill_switch_reason=settings.kill_switch_reason,
            auto_mode=settings.auto_mode,
            balance=balance,
            open_positions=open_positions,
            max_positions=settings.max_open_positions,
            daily_pnl=daily_pnl,
            daily_loss_limit=settings.daily_loss_limit,
            loss_limit_remaining=remaining,
            position_size=settings.position_size,
            can_trade=not reasons,
            reasons=reasons,
        )

    async def check_risk_conditions(self) -> bool:
        """Once-per-cycle check. Returns True if it activated the kill switch."""
        status = await self.get_risk_status()
        if status.kill_switch:
            return False

        if status.loss_limit_remaining <= 0:
            return await self.activate_kill_switch(REASON_DAILY_LOSS)

        threshold = status.position_size * self.ctx.policy.low_balance_ratio
        if status.balance is not None and status.balance < threshold:
            return await self.activate_kill_switch(REASON_LOW_BALANCE)

        return False
