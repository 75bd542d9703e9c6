"""Opportunity and OpportunityStatus data models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class OpportunityStatus(Enum):
    """Opportunity 상태. approved/rejected/expired 이후 불변."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"


FINAL_OPPORTUNITY_STATUSES = frozenset({
    OpportunityStatus.APPROVED,
    OpportunityStatus.REJECTED,
    OpportunityStatus.EXPIRED,
})


@dataclass
class Opportunity:
    """감지된 아비트라지 기회 (YES_ask + NO_ask < 1.0)."""

    market_id: str
    market_question: str
    yes_token_id: str
    no_token_id: str
    yes_price: float         # best ask, YES
    no_price: float          # best ask, NO
    total_cost: float        # yes + no
    spread: float            # 1.0 - total_cost
    expected_profit: float   # (position_size / total_cost) * spread
    yes_liquidity: float     # top-N ask depth (USD)
    no_liquidity: float
    expires_at: Optional[datetime] = None
    status: OpportunityStatus = OpportunityStatus.PENDING
    id: Optional[int] = None
    detected_at: datetime = field(
        default_factory=lambda: datetime.now(tz=timezone.utc)
    )

    @property
    def roi_pct(self) -> float:
        return (self.spread / self.total_cost) * 100.0 if self.total_cost > 0 else 0.0

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_OPPORTUNITY_STATUSES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        data["detected_at"] = self.detected_at.isoformat()
        return data
