"""Tests for OrderExecutor — paired placement, rollback, cancel, reconcile, settle."""

from __future__ import annotations

import asyncio

import pytest

from conftest import make_opportunity
from polyarb.errors import LegExecutionError, NotFoundError, ValidationError
from polyarb.execution.executor import OrderExecutor, derive_trade_status
from polyarb.models.trade import Trade, TradeStatus
from polyarb.monitoring.events import TRADE_CANCELLED, TRADE_CREATED, TRADE_SETTLED
from polyarb.storage.sqlite_repository import utc_today


@pytest.fixture
def executor(ctx) -> OrderExecutor:
    return OrderExecutor(ctx)


def _event_names(ctx) -> list[str]:
    return [e.name for e in ctx.events.drain()]


# ===========================================================================
# Execute
# ===========================================================================


class TestExecuteSuccess:
    @pytest.mark.asyncio
    async def test_both_legs_placed(self, ctx, executor, gateway):
        result = await executor.execute(make_opportunity())

        assert result.success
        assert result.yes_order_id == "order-1"
        assert result.no_order_id == "order-2"
        trade = ctx.repository.get_trade(result.trade.id)
        assert trade.status is TradeStatus.PLACED
        assert trade.yes_order_id == "order-1"
        assert trade.no_order_id == "order-2"

    @pytest.mark.asyncio
    async def test_leg_order_and_sizing(self, executor, gateway):
        await executor.execute(make_opportunity())
        shares = 0.5 / 0.97
        assert [p[0] for p in gateway.placed] == ["YES", "NO"]
        assert gateway.placed[0][1:3] == ("tok_yes", 0.45)
        assert gateway.placed[1][1:3] == ("tok_no", 0.52)
        assert gateway.placed[0][3] == pytest.approx(shares)
        assert gateway.placed[1][3] == pytest.approx(shares)

    @pytest.mark.asyncio
    async def test_alert_and_event(self, ctx, executor):
        await executor.execute(make_opportunity())
        assert ctx.repository.list_alerts()[0].message.startswith("Trade placed")
        assert TRADE_CREATED in _event_names(ctx)

    @pytest.mark.asyncio
    async def test_trade_persisted_before_network(self, ctx, executor, gateway):
        seen = []
        original = gateway.place_order

        async def spy(token_id, price, size, side="BUY", leg=""):
            seen.append([t.status for t in ctx.repository.list_trades()])
            return await original(token_id, price, size, side, leg)

        gateway.place_order = spy
        await executor.execute(make_opportunity())
        assert seen[0] == [TradeStatus.PENDING]

    @pytest.mark.asyncio
    async def test_links_opportunity(self, ctx, executor):
        opp = ctx.repository.create_opportunity(make_opportunity())
        result = await executor.execute(opp)
        assert result.trade.opportunity_id == opp.id


class TestExecuteFailure:
    @pytest.mark.asyncio
    async def test_no_leg_error_rolls_back_both(self, ctx, executor, gateway):
        gateway.place_errors["NO"] = RuntimeError("connection reset")

        result = await executor.execute(make_opportunity())

        assert not result.success
        assert "connection reset" in result.error
        assert result.yes_order_id == "order-1"
        assert gateway.cancelled == ["order-1"]
        assert gateway.swept == ["tok_no"]
        trade = ctx.repository.get_trade(result.trade.id)
        assert trade.status is TradeStatus.FAILED
        assert "connection reset" in trade.error
        assert trade.yes_order_id == "order-1"

    @pytest.mark.asyncio
    async def test_rejected_no_leg_not_swept(self, executor, gateway):
        gateway.place_errors["NO"] = LegExecutionError("NO", "not enough balance", rejected=True)
        result = await executor.execute(make_opportunity())
        assert not result.success
        assert gateway.cancelled == ["order-1"]
        assert gateway.swept == []

    @pytest.mark.asyncio
    async def test_yes_leg_failure_stops_before_no(self, ctx, executor, gateway):
        gateway.place_errors["YES"] = RuntimeError("502 bad gateway")

        result = await executor.execute(make_opportunity())

        assert not result.success
        assert len(gateway.placed) == 1
        assert gateway.swept == ["tok_yes"]
        assert gateway.cancelled == []
        assert ctx.repository.get_trade(result.trade.id).status is TradeStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_sweeps_leg(self, executor, gateway):
        gateway.place_errors["NO"] = LegExecutionError("NO", "timed out", timed_out=True)
        await executor.execute(make_opportunity())
        assert gateway.swept == ["tok_no"]

    @pytest.mark.asyncio
    async def test_error_alert(self, ctx, executor, gateway):
        gateway.place_errors["NO"] = RuntimeError("boom")
        await executor.execute(make_opportunity())
        severities = [a.severity for a in ctx.repository.list_alerts()]
        assert "error" in severities
        assert TRADE_CREATED not in _event_names(ctx)

    @pytest.mark.asyncio
    async def test_rollback_cancel_failure_still_marks_failed(self, ctx, executor, gateway):
        gateway.place_errors["NO"] = RuntimeError("boom")
        gateway.cancel_result = False
        result = await executor.execute(make_opportunity())
        assert ctx.repository.get_trade(result.trade.id).status is TradeStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_mid_execution(self, ctx, executor, gateway):
        gateway.place_errors["NO"] = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await executor.execute(make_opportunity())

        trade = ctx.repository.list_trades()[0]
        assert trade.status is TradeStatus.FAILED
        assert trade.error == "execution cancelled"
        assert gateway.cancelled == ["order-1"]


# ===========================================================================
# Cancel
# ===========================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_placed_trade(self, ctx, executor, gateway):
        trade = (await executor.execute(make_opportunity())).trade
        ctx.events.drain()

        result = await executor.cancel_trade(trade.id)

        assert result.cancelled_yes and result.cancelled_no
        assert gateway.cancelled == ["order-1", "order-2"]
        assert ctx.repository.get_trade(trade.id).status is TradeStatus.CANCELLED
        assert TRADE_CANCELLED in _event_names(ctx)

    @pytest.mark.asyncio
    async def test_cancel_marks_cancelled_even_if_exchange_refuses(self, ctx, executor, gateway):
        trade = (await executor.execute(make_opportunity())).trade
        gateway.cancel_result = False
        result = await executor.cancel_trade(trade.id)
        assert not result.cancelled_yes
        assert result.trade.status is TradeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_trade(self, executor):
        with pytest.raises(NotFoundError):
            await executor.cancel_trade(404)

    @pytest.mark.asyncio
    async def test_terminal_trade(self, executor, gateway):
        gateway.place_errors["YES"] = RuntimeError("x")
        trade = (await executor.execute(make_opportunity())).trade
        with pytest.raises(ValidationError):
            await executor.cancel_trade(trade.id)


# ===========================================================================
# Reconcile
# ===========================================================================


class TestDeriveStatus:
    @pytest.mark.parametrize(
        "yes,no,expected",
        [
            ("MATCHED", "MATCHED", TradeStatus.FILLED),
            ("MATCHED", "LIVE", TradeStatus.PARTIAL),
            ("LIVE", "FILLED", TradeStatus.PARTIAL),
            ("CANCELLED", "LIVE", TradeStatus.CANCELLED),
            ("LIVE", "LIVE", TradeStatus.PLACED),
            (None, None, TradeStatus.PLACED),
        ],
    )
    def test_mapping(self, yes, no, expected):
        assert derive_trade_status(TradeStatus.PLACED, yes, no) is expected


class TestCheckOrderStatus:
    @pytest.mark.asyncio
    async def test_updates_on_change(self, ctx, executor, gateway):
        trade = (await executor.execute(make_opportunity())).trade
        gateway.order_statuses = {"order-1": "MATCHED", "order-2": "MATCHED"}

        result = await executor.check_order_status(trade)

        assert result.changed
        assert result.new_status is TradeStatus.FILLED
        assert ctx.repository.get_trade(trade.id).status is TradeStatus.FILLED

    @pytest.mark.asyncio
    async def test_unchanged_not_persisted(self, ctx, executor):
        trade = (await executor.execute(make_opportunity())).trade
        result = await executor.check_order_status(trade)
        assert not result.changed
        assert result.trade.updated_at == trade.updated_at

    @pytest.mark.asyncio
    async def test_terminal_trade_left_alone(self, ctx, executor, gateway):
        trade = (await executor.execute(make_opportunity())).trade
        trade = ctx.repository.update_trade(trade.id, status=TradeStatus.SETTLED)
        gateway.order_statuses = {"order-1": "CANCELLED"}
        result = await executor.check_order_status(trade)
        assert not result.changed
        assert result.new_status is TradeStatus.SETTLED


# ===========================================================================
# Settle
# ===========================================================================


class TestSettlement:
    @pytest.mark.asyncio
    async def test_profit_booked(self, ctx, executor):
        trade = (await executor.execute(make_opportunity())).trade
        ctx.events.drain()

        settled = await executor.process_settlement(trade.id, "YES")

        expected = (0.5 / 0.97) * 0.03
        assert settled.status is TradeStatus.SETTLED
        assert settled.settlement_result == "YES"
        assert settled.actual_profit == pytest.approx(expected)
        assert settled.settled_at is not None
        pnl = ctx.repository.get_daily_pnl(utc_today())
        assert pnl.total_trades == 1
        assert pnl.winning_trades == 1
        assert pnl.realized_pnl == pytest.approx(expected)
        events = ctx.events.drain()
        settled_event = next(e for e in events if e.name == TRADE_SETTLED)
        assert settled_event.payload["profit"] == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_loss_not_counted_as_win(self, ctx, executor):
        trade = ctx.repository.create_trade(Trade(
            market_id="m", market_question="q", yes_token_id="y", no_token_id="n",
            yes_price=0.52, no_price=0.50, total_cost=1.02, position_size=1.02,
            expected_profit=0.0, status=TradeStatus.FILLED,
        ))
        settled = await executor.process_settlement(trade.id, "NO")
        assert settled.actual_profit == pytest.approx(-0.02)
        pnl = ctx.repository.get_today_pnl()
        assert pnl.winning_trades == 0
        assert pnl.realized_pnl == pytest.approx(-0.02)

    @pytest.mark.asyncio
    async def test_settle_pending_rejected(self, ctx, executor):
        trade = ctx.repository.create_trade(Trade(
            market_id="m", market_question="q", yes_token_id="y", no_token_id="n",
            yes_price=0.45, no_price=0.52, total_cost=0.97, position_size=0.5,
            expected_profit=0.015,
        ))
        with pytest.raises(ValidationError):
            await executor.process_settlement(trade.id, "YES")

    @pytest.mark.asyncio
    async def test_settle_twice_rejected(self, executor):
        trade = (await executor.execute(make_opportunity())).trade
        await executor.process_settlement(trade.id, "YES")
        with pytest.raises(ValidationError):
            await executor.process_settlement(trade.id, "YES")

    @pytest.mark.asyncio
    async def test_unknown_trade(self, executor):
        with pytest.raises(NotFoundError):
            await executor.process_settlement(1, "YES")
