"""Trade lifecycle, daily P&L, alert and snapshot records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional


class TradeStatus(Enum):
    """Trade 상태 머신.

    pending → placed → {partial | filled} → settled
    pending/placed → failed | cancelled
    """

    PENDING = "pending"
    PLACED = "placed"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SETTLED = "settled"


OPEN_TRADE_STATUSES = frozenset({
    TradeStatus.PENDING,
    TradeStatus.PLACED,
    TradeStatus.PARTIAL,
})

TERMINAL_TRADE_STATUSES = frozenset({
    TradeStatus.SETTLED,
    TradeStatus.CANCELLED,
    TradeStatus.FAILED,
})

SETTLEABLE_TRADE_STATUSES = frozenset({
    TradeStatus.PLACED,
    TradeStatus.PARTIAL,
    TradeStatus.FILLED,
})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Trade:
    """Executable / historical record of one paired arbitrage attempt."""

    market_id: str
    market_question: str
    yes_token_id: str
    no_token_id: str
    yes_price: float
    no_price: float
    total_cost: float
    position_size: float
    expected_profit: float
    status: TradeStatus = TradeStatus.PENDING
    yes_order_id: Optional[str] = None
    no_order_id: Optional[str] = None
    opportunity_id: Optional[int] = None
    settlement_result: Optional[str] = None
    actual_profit: Optional[float] = None
    error: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(tz=timezone.utc)
    )
    updated_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    @property
    def shares(self) -> float:
        """각 레그 매수 수량 = position_size / total_cost."""
        return self.position_size / self.total_cost

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TRADE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRADE_STATUSES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["shares"] = self.shares
        data["created_at"] = _iso(self.created_at)
        data["updated_at"] = _iso(self.updated_at)
        data["settled_at"] = _iso(self.settled_at)
        return data


@dataclass
class DailyPnL:
    """일별 실현 손익 집계 (UTC 날짜 키)."""

    date: date
    total_trades: int = 0
    winning_trades: int = 0
    realized_pnl: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.winning_trades / self.total_trades if self.total_trades else 0.0

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "realized_pnl": self.realized_pnl,
        }


@dataclass
class Alert:
    """Persisted audit alert."""

    type: str
    severity: str
    message: str
    data: Optional[dict[str, Any]] = None
    read: bool = False
    id: Optional[int] = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(tz=timezone.utc)
    )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass
class OrderBookSnapshot:
    """Observability snapshot of one token's book at detection time."""

    market_id: str
    token_id: str
    token_type: str  # "YES" or "NO"
    best_bid: Optional[float]
    best_ask: Optional[float]
    bid_depth: float
    ask_depth: float
    spread: Optional[float]  # best_ask - best_bid
