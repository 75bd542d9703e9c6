"""Data models for polyarb."""

from polyarb.models.market import Market, OrderBook, OrderBookLevel
from polyarb.models.opportunity import Opportunity, OpportunityStatus
from polyarb.models.settings import Settings
from polyarb.models.trade import (
    Alert,
    DailyPnL,
    OrderBookSnapshot,
    Trade,
    TradeStatus,
)

__all__ = [
    "Market",
    "OrderBook",
    "OrderBookLevel",
    "Opportunity",
    "OpportunityStatus",
    "Settings",
    "Alert",
    "DailyPnL",
    "OrderBookSnapshot",
    "Trade",
    "TradeStatus",
]
