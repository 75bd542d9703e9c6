"""Orderbook-based arbitrage detection.

YES best ask + NO best ask < 1.0 이면 두 레그를 모두 사서 $1 상환을 확보.
spread == profit_threshold 는 통과 (strict ``<`` 만 거부).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from polyarb.config import RiskPolicy
from polyarb.execution.clob_gateway import ClobGateway
from polyarb.models.market import Market, OrderBook
from polyarb.models.opportunity import Opportunity
from polyarb.models.settings import Settings
from polyarb.models.trade import OrderBookSnapshot

logger = logging.getLogger(__name__)

SnapshotSink = Callable[[OrderBookSnapshot], None]

DEFAULT_MAX_CONCURRENT = 5


def build_snapshot(
    market_id: str, book: OrderBook, token_type: str, depth_levels: int,
) -> OrderBookSnapshot:
    best_bid, best_ask = book.best_bid, book.best_ask
    return OrderBookSnapshot(
        market_id=market_id,
        token_id=book.token_id,
        token_type=token_type,
        best_bid=best_bid,
        best_ask=best_ask,
        bid_depth=book.bid_depth(depth_levels),
        ask_depth=book.ask_depth(depth_levels),
        spread=(best_ask - best_bid) if best_bid and best_ask else None,
    )


class OpportunityDetector:
    """Detect Dutch-book arbitrage from two order books.

    Args:
        gateway: Order book source used by the batch scan.
        policy: Supplies the number of ask levels counted as liquidity.
        snapshot_sink: Called with one snapshot per side on detection.
            Errors raised by it are logged and ignored.
        max_concurrent: Markets evaluated in parallel by ``detect_all``.
    """

    def __init__(
        self,
        gateway: Optional[ClobGateway] = None,
        policy: Optional[RiskPolicy] = None,
        snapshot_sink: Optional[SnapshotSink] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ):
        self.gateway = gateway
        self.policy = policy or RiskPolicy()
        self.snapshot_sink = snapshot_sink
        self._semaphore = asyncio.Semaphore(max_concurrent)

    def detect(
        self,
        market: Market,
        yes_book: OrderBook,
        no_book: OrderBook,
        settings: Settings,
    ) -> Optional[Opportunity]:
        """Returns Opportunity if spread >= threshold, None otherwise."""
        yes_ask = yes_book.best_ask
        no_ask = no_book.best_ask
        if yes_ask is None or no_ask is None:
            return None  # no liquidity on one side

        total_cost = yes_ask + no_ask
        spread = 1.0 - total_cost
        if spread < settings.profit_threshold:
            return None

        levels = self.policy.depth_levels
        shares = settings.position_size / total_cost

        opp = Opportunity(
            market_id=market.market_id,
            market_question=market.question,
            yes_token_id=market.yes_token,
            no_token_id=market.no_token,
            yes_price=yes_ask,
            no_price=no_ask,
            total_cost=total_cost,
            spread=spread,
            expected_profit=shares * spread,
            yes_liquidity=yes_book.ask_depth(levels),
            no_liquidity=no_book.ask_depth(levels),
            expires_at=market.end_date,
        )

        self._record_snapshots(market.market_id, yes_book, no_book)
        return opp

    def _record_snapshots(self, market_id: str, yes_book: OrderBook, no_book: OrderBook) -> None:
        if self.snapshot_sink is None:
            return
        levels = self.policy.depth_levels
        try:
            self.snapshot_sink(build_snapshot(market_id, yes_book, "YES", levels))
            self.snapshot_sink(build_snapshot(market_id, no_book, "NO", levels))
        except Exception as exc:
            logger.warning("Snapshot error for %s: %s", market_id, exc)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def get_market_order_books(
        self, yes_token: str, no_token: str,
    ) -> tuple[OrderBook, OrderBook]:
        """YES/NO 오더북 병렬 조회."""
        yes_book, no_book = await asyncio.gather(
            self.gateway.get_order_book(yes_token),
            self.gateway.get_order_book(no_token),
        )
        return yes_book, no_book

    async def _analyze(self, market: Market, settings: Settings) -> Optional[Opportunity]:
        async with self._semaphore:
            yes_book, no_book = await self.get_market_order_books(
                market.yes_token, market.no_token,
            )
        return self.detect(market, yes_book, no_book, settings)

    async def detect_all(
        self, markets: list[Market], settings: Settings,
    ) -> list[Opportunity]:
        """모든 마켓 독립 평가. 마켓별 에러는 '기회 없음'. spread 내림차순."""
        if not markets:
            return []

        results = await asyncio.gather(
            *(self._analyze(m, settings) for m in markets),
            return_exceptions=True,
        )

        opportunities: list[Opportunity] = []
        for market, result in zip(markets, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error("Error analyzing market %s: %s", market.market_id, result)
                continue
            if result is not None:
                logger.info(
                    "Opportunity found: %s... spread=%.2f%%",
                    market.question[:50], result.spread * 100,
                )
                opportunities.append(result)

        opportunities.sort(key=lambda o: o.spread, reverse=True)
        return opportunities
