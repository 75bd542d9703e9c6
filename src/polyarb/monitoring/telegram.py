"""Telegram Bot API alerts.

이벤트 버스의 알림을 텔레그램으로 중계.
봇 토큰 미설정 시 모든 메서드가 no-op (크래시 없음).
"""

from __future__ import annotations

import logging

import aiohttp

from polyarb.monitoring.events import (
    ALERT_NEW,
    KILL_SWITCH_ACTIVATED,
    KILL_SWITCH_DEACTIVATED,
    OPPORTUNITY_NEW,
    TRADE_CREATED,
    TRADE_SETTLED,
    Event,
)

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
DEFAULT_TIMEOUT = 10  # seconds

# alert:new 중 이 severity 이상만 중계
_RELAYED_SEVERITIES = {"warning", "error", "critical"}
# kill switch 알림은 전용 이벤트로 보냄
_SKIPPED_ALERT_TYPES = {"kill_switch"}


class TelegramAlerter:
    """Telegram 알림 발송기.

    Args:
        bot_token: Telegram Bot API 토큰. None이면 비활성.
        chat_id: 메시지 대상 채팅 ID. None이면 비활성.
    """

    def __init__(
        self,
        bot_token: str | None = None,
        chat_id: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def enabled(self) -> bool:
        """토큰과 chat_id 모두 설정됐을 때만 활성."""
        return bool(self._bot_token and self._chat_id)

    # ------------------------------------------------------------------
    # Event relay
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """EventBus.relay 핸들러."""
        if not self.enabled:
            return
        payload = event.payload
        if event.name == OPPORTUNITY_NEW:
            await self._safe_send(self._format_opportunity(payload), "opportunity")
        elif event.name == TRADE_CREATED:
            await self._safe_send(self._format_trade(payload), "trade")
        elif event.name == TRADE_SETTLED:
            await self._safe_send(self._format_settlement(payload), "settlement")
        elif event.name == KILL_SWITCH_ACTIVATED:
            await self._safe_send(
                f"🛑 <b>KILL SWITCH ACTIVATED</b>\n{payload.get('reason', '')}", "kill switch",
            )
        elif event.name == KILL_SWITCH_DEACTIVATED:
            await self._safe_send("🟢 Kill switch deactivated - trading resumed", "kill switch")
        elif event.name == ALERT_NEW:
            if (
                payload.get("severity") in _RELAYED_SEVERITIES
                and payload.get("type") not in _SKIPPED_ALERT_TYPES
            ):
                await self.alert_error(payload.get("message", ""), level=payload["severity"])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def alert_error(self, message: str, level: str = "error") -> None:
        """에러/경고 알림."""
        if not self.enabled:
            return
        emoji = "🚨" if level in ("error", "critical") else "⚠️" if level == "warning" else "ℹ️"
        await self._safe_send(f"{emoji} <b>{level.upper()}</b>\n{message}", "error")

    async def _safe_send(self, text: str, kind: str) -> None:
        try:
            await self._send_message(text)
        except Exception as exc:
            logger.error("Failed to send %s alert: %s", kind, exc)

    # ------------------------------------------------------------------
    # Internal: HTTP
    # ------------------------------------------------------------------

    async def _send_message(self, text: str, parse_mode: str = "HTML") -> None:
        """Telegram sendMessage API 호출."""
        url = f"{TELEGRAM_API_URL}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning("Telegram API %d: %s", resp.status, body[:200])

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    def _format_opportunity(self, opp: dict) -> str:
        return (
            f"🔍 <b>Arb Found</b> (approval needed)\n"
            f"{'━' * 24}\n"
            f"Market: {str(opp.get('market_question', ''))[:60]}\n"
            f"Spread: <b>{opp.get('spread', 0) * 100:.2f}%</b>\n"
            f"Cost: ${opp.get('total_cost', 0):.4f}\n"
            f"Expected Profit: ${opp.get('expected_profit', 0):.4f}\n"
            f"ID: {opp.get('id')}"
        )

    def _format_trade(self, trade: dict) -> str:
        return (
            f"✅ <b>Trade Placed</b>\n"
            f"{'━' * 24}\n"
            f"Market: {str(trade.get('market_question', ''))[:60]}\n"
            f"YES ${trade.get('yes_price', 0):.4f} + NO ${trade.get('no_price', 0):.4f}\n"
            f"Shares: {trade.get('shares', 0):.2f}\n"
            f"Expected Profit: ${trade.get('expected_profit', 0):.4f}"
        )

    def _format_settlement(self, payload: dict) -> str:
        trade = payload.get("trade") or {}
        profit = payload.get("profit", 0.0)
        emoji = "💰" if profit > 0 else "📉"
        return (
            f"{emoji} <b>Trade Settled</b>\n"
            f"{'━' * 24}\n"
            f"Market: {str(trade.get('market_question', ''))[:60]}\n"
            f"Result: {trade.get('settlement_result')}\n"
            f"Profit: <b>${profit:.4f}</b>"
        )
