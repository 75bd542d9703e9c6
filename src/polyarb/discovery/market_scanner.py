"""Market scanner — candidate crypto markets from the CLOB market list.

Active currency 키워드가 question/description 에 포함된 열린 마켓만.
30초 캐시, 에러 시 마지막 결과 반환.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from polyarb.config import TIMEFRAME_PATTERNS
from polyarb.errors import TransientSourceError
from polyarb.execution.clob_gateway import ClobGateway
from polyarb.models.market import Market

logger = logging.getLogger(__name__)


def is_target_market(
    raw: dict,
    active_currencies: Iterable[str],
    require_timeframe: bool = False,
) -> bool:
    """크립토 키워드 + (선택) 15분 타임프레임 + 미정산."""
    text = f"{raw.get('question') or ''} {raw.get('description') or ''}".lower()

    if not any(currency.lower() in text for currency in active_currencies):
        return False

    if require_timeframe and not any(p.search(text) for p in TIMEFRAME_PATTERNS):
        return False

    if raw.get("closed") is True or raw.get("resolved") is True:
        return False

    return True


class MarketScanner:
    """Source of candidate markets.

    Args:
        gateway: Exchange gateway used for the full market list.
        cache_ttl: Seconds a scan result is reused.
        require_timeframe: Only keep 15-minute markets.
    """

    def __init__(
        self,
        gateway: ClobGateway,
        cache_ttl: float = 30.0,
        require_timeframe: bool = False,
    ):
        self.gateway = gateway
        self.cache_ttl = cache_ttl
        self.require_timeframe = require_timeframe
        self._cached: list[Market] = []
        self._cached_key: tuple[str, ...] = ()
        self._last_scan: float = 0.0

    async def fetch_candidate_markets(self, active_currencies: Iterable[str]) -> list[Market]:
        """Active currency 필터를 통과한 마켓 목록. 캐시가 신선하면 재사용."""
        key = tuple(sorted(c.upper() for c in active_currencies))
        now = time.monotonic()
        if (
            self._cached
            and key == self._cached_key
            and (now - self._last_scan) < self.cache_ttl
        ):
            return list(self._cached)

        try:
            raw_markets = await self.gateway.get_all_markets()
        except TransientSourceError as exc:
            # last result only if it was for the same currency set
            cached = self._cached if key == self._cached_key else []
            logger.error("Error scanning markets: %s, using %d cached", exc, len(cached))
            return list(cached)

        markets: list[Market] = []
        for raw in raw_markets:
            if not is_target_market(raw, key, self.require_timeframe):
                continue
            market = Market.from_clob_response(raw)
            if market is not None and market.is_open:
                markets.append(market)

        logger.info(
            "Scanned %d markets, %d match %s", len(raw_markets), len(markets), ",".join(key),
        )
        self._cached = markets
        self._cached_key = key
        self._last_scan = now
        return list(markets)

    def get_cached_market(self, market_id: str) -> Optional[Market]:
        for market in self._cached:
            if market.market_id == market_id:
                return market
        return None

    def invalidate(self) -> None:
        self._last_scan = 0.0
