"""Market and order book data models."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Market:
    """A single binary YES/NO market. Read-only within a scan."""

    market_id: str
    question: str
    yes_token: str
    no_token: str
    end_date: Optional[datetime] = None
    description: str = ""
    closed: bool = False
    resolved: bool = False

    @property
    def is_open(self) -> bool:
        return not self.closed and not self.resolved

    @property
    def is_expired(self) -> bool:
        """정산 시간이 지났는지 확인."""
        if self.end_date is None:
            return False
        return datetime.now(tz=timezone.utc) >= self.end_date

    @staticmethod
    def extract_token_ids(raw: dict) -> tuple[Optional[str], Optional[str]]:
        """(yes_token, no_token). ``tokens`` outcomes 우선, ``clobTokenIds`` 폴백."""
        yes_token = None
        no_token = None
        for token in raw.get("tokens") or []:
            outcome = str(token.get("outcome", "")).lower()
            if outcome == "yes":
                yes_token = token.get("token_id")
            elif outcome == "no":
                no_token = token.get("token_id")

        if not yes_token and raw.get("clobTokenIds"):
            ids = raw["clobTokenIds"]
            # Gamma 스타일은 JSON 문자열
            if isinstance(ids, str):
                try:
                    ids = json.loads(ids)
                except (json.JSONDecodeError, TypeError):
                    ids = []
            if len(ids) >= 2:
                yes_token, no_token = str(ids[0]), str(ids[1])

        return (
            str(yes_token) if yes_token else None,
            str(no_token) if no_token else None,
        )

    @staticmethod
    def from_clob_response(raw: dict) -> Optional[Market]:
        """CLOB API raw market dict → Market. 파싱 실패 시 None."""
        market_id = raw.get("condition_id") or raw.get("conditionId")
        if not market_id:
            return None

        yes_token, no_token = Market.extract_token_ids(raw)
        if not yes_token or not no_token:
            return None

        end_date = None
        end_date_str = raw.get("end_date_iso") or raw.get("endDateIso")
        if end_date_str:
            try:
                end_date = datetime.fromisoformat(
                    str(end_date_str).replace("Z", "+00:00")
                )
                if end_date.tzinfo is None:
                    end_date = end_date.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.debug("Unparseable end date for %s: %r", market_id, end_date_str)

        return Market(
            market_id=str(market_id),
            question=raw.get("question") or "",
            yes_token=yes_token,
            no_token=no_token,
            end_date=end_date,
            description=raw.get("description") or "",
            closed=bool(raw.get("closed", False)),
            resolved=bool(raw.get("resolved", False)),
        )


@dataclass(frozen=True)
class OrderBookLevel:
    """오더북 한 레벨 (가격 + 수량)."""

    price: float
    size: float  # shares

    @property
    def value_usd(self) -> float:
        """이 레벨의 달러 가치 (price * size)."""
        return self.price * self.size


def _parse_levels(raw_levels) -> list[OrderBookLevel]:
    levels: list[OrderBookLevel] = []
    for raw in raw_levels or []:
        if isinstance(raw, dict):
            price, size = raw.get("price"), raw.get("size")
        else:
            # py_clob_client OrderSummary(price=..., size=...)
            price, size = getattr(raw, "price", None), getattr(raw, "size", None)
        try:
            level = OrderBookLevel(price=float(price), size=float(size))
        except (TypeError, ValueError):
            continue
        if 0.0 < level.price < 1.0 and level.size > 0:
            levels.append(level)
    return levels


@dataclass(frozen=True)
class OrderBook:
    """Two-sided book for one token. Asks ascending, bids descending."""

    token_id: str
    asks: list[OrderBookLevel] = field(default_factory=list)
    bids: list[OrderBookLevel] = field(default_factory=list)

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    def ask_depth(self, levels: int) -> float:
        """Top-N ask levels의 달러 깊이."""
        return sum(lv.value_usd for lv in self.asks[:levels])

    def bid_depth(self, levels: int) -> float:
        return sum(lv.value_usd for lv in self.bids[:levels])

    @classmethod
    def from_levels(
        cls, token_id: str, asks: list, bids: list,
    ) -> OrderBook:
        """Raw levels → 정렬된 OrderBook. API가 정렬을 보장하지 않음."""
        parsed_asks = sorted(_parse_levels(asks), key=lambda lv: lv.price)
        parsed_bids = sorted(_parse_levels(bids), key=lambda lv: lv.price, reverse=True)
        return cls(token_id=token_id, asks=parsed_asks, bids=parsed_bids)

    @classmethod
    def empty(cls, token_id: str) -> OrderBook:
        return cls(token_id=token_id)
