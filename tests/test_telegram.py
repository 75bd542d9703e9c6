"""Tests for Telegram alerts.

TelegramAlerter — 이벤트 중계 + no-op 모드 + 전송 실패 격리.
"""

from __future__ import annotations

import re
from unittest.mock import AsyncMock, patch

import pytest
from aioresponses import aioresponses

from polyarb.monitoring.events import (
    ALERT_NEW,
    BALANCE_UPDATE,
    KILL_SWITCH_ACTIVATED,
    OPPORTUNITY_NEW,
    TRADE_SETTLED,
    Event,
)
from polyarb.monitoring.telegram import TELEGRAM_API_URL, TelegramAlerter

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def alerter():
    """Configured TelegramAlerter with mock tokens."""
    return TelegramAlerter(bot_token="fake_token", chat_id="12345")


@pytest.fixture
def disabled_alerter():
    """Disabled TelegramAlerter (no tokens)."""
    return TelegramAlerter()


# ---------------------------------------------------------------------------
# Enabled / disabled
# ---------------------------------------------------------------------------


class TestEnabled:
    def test_enabled_with_both(self, alerter):
        assert alerter.enabled

    def test_disabled_without_chat(self):
        assert not TelegramAlerter(bot_token="t").enabled

    @pytest.mark.asyncio
    async def test_disabled_is_noop(self, disabled_alerter):
        with patch.object(disabled_alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            await disabled_alerter.handle_event(Event(KILL_SWITCH_ACTIVATED, {"reason": "x"}))
            await disabled_alerter.alert_error("boom")
            mock_send.assert_not_called()


# ---------------------------------------------------------------------------
# Event relay
# ---------------------------------------------------------------------------


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_opportunity(self, alerter):
        payload = {
            "id": 7, "market_question": "Will BTC be above $100k?",
            "spread": 0.03, "total_cost": 0.97, "expected_profit": 0.015,
        }
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            await alerter.handle_event(Event(OPPORTUNITY_NEW, payload))
        text = mock_send.call_args[0][0]
        assert "Arb Found" in text
        assert "3.00%" in text
        assert "ID: 7" in text

    @pytest.mark.asyncio
    async def test_settlement(self, alerter):
        payload = {"trade": {"market_question": "q", "settlement_result": "YES"}, "profit": 0.25}
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            await alerter.handle_event(Event(TRADE_SETTLED, payload))
        text = mock_send.call_args[0][0]
        assert "$0.2500" in text
        assert "Result: YES" in text

    @pytest.mark.asyncio
    async def test_kill_switch(self, alerter):
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            await alerter.handle_event(Event(KILL_SWITCH_ACTIVATED, {"reason": "daily loss limit exceeded"}))
        assert "daily loss limit exceeded" in mock_send.call_args[0][0]

    @pytest.mark.asyncio
    async def test_warning_alert_relayed(self, alerter):
        payload = {"type": "trade", "severity": "warning", "message": "Trade cancelled"}
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            await alerter.handle_event(Event(ALERT_NEW, payload))
        assert "WARNING" in mock_send.call_args[0][0]

    @pytest.mark.asyncio
    async def test_info_alert_and_kill_switch_alert_skipped(self, alerter):
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            await alerter.handle_event(Event(ALERT_NEW, {"type": "trade", "severity": "info", "message": "m"}))
            await alerter.handle_event(Event(ALERT_NEW, {"type": "kill_switch", "severity": "critical", "message": "m"}))
            await alerter.handle_event(Event(BALANCE_UPDATE, {"balance": 1.0}))
            mock_send.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_failure_swallowed(self, alerter):
        with patch.object(alerter, "_send_message", new_callable=AsyncMock) as mock_send:
            mock_send.side_effect = RuntimeError("network down")
            await alerter.alert_error("boom")  # must not raise


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_posts_to_bot_api(self, alerter):
        url = f"{TELEGRAM_API_URL}/botfake_token/sendMessage"
        with aioresponses() as mocked:
            mocked.post(url, status=200, payload={"ok": True})
            await alerter._send_message("hello")
            request = next(iter(mocked.requests.values()))[0]
        assert request.kwargs["json"] == {
            "chat_id": "12345", "text": "hello", "parse_mode": "HTML",
        }

    @pytest.mark.asyncio
    async def test_api_error_logged_not_raised(self, alerter):
        with aioresponses() as mocked:
            mocked.post(re.compile(r".*/sendMessage"), status=400, body="Bad Request")
            await alerter._send_message("hello")
