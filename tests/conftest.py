"""Shared test fixtures for polyarb."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from polyarb.account import AccountContext
from polyarb.config import BotConfig
from polyarb.models.market import Market, OrderBook
from polyarb.models.opportunity import Opportunity
from polyarb.monitoring.events import EventBus
from polyarb.storage.sqlite_repository import SQLiteRepository


class FakeGateway:
    """In-memory exchange. Records every write call."""

    def __init__(self):
        self.markets_raw: list[dict] = []
        self.books: dict[str, OrderBook] = {}
        self.book_errors: dict[str, Exception] = {}
        self.markets_error: Exception | None = None
        self.balance = 100.0
        self.balance_error: Exception | None = None
        self.place_errors: dict[str, Exception] = {}
        self.order_statuses: dict[str, str] = {}
        self.cancel_result = True

        self.market_calls = 0
        self.placed: list[tuple[str, str, float, float]] = []
        self.cancelled: list[str] = []
        self.swept: list[str] = []
        self.cancel_all_calls = 0
        self.late_order_waits = 0
        self._ids = itertools.count(1)

    async def check_connection(self) -> None:
        return None

    async def get_all_markets(self) -> list[dict]:
        self.market_calls += 1
        if self.markets_error is not None:
            raise self.markets_error
        return list(self.markets_raw)

    async def get_order_book(self, token_id: str) -> OrderBook:
        if token_id in self.book_errors:
            raise self.book_errors[token_id]
        return self.books.get(token_id, OrderBook.empty(token_id))

    async def get_balance(self) -> dict:
        if self.balance_error is not None:
            raise self.balance_error
        return {"balance": self.balance, "allowance": self.balance}

    async def place_order(
        self, token_id: str, price: float, size: float, side: str = "BUY", leg: str = "",
    ) -> str:
        self.placed.append((leg, token_id, price, size))
        if leg in self.place_errors:
            raise self.place_errors[leg]
        return f"order-{next(self._ids)}"

    async def cancel_order(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return self.cancel_result

    async def cancel_token_orders(self, token_id: str) -> bool:
        self.swept.append(token_id)
        return True

    async def cancel_all_orders(self) -> bool:
        self.cancel_all_calls += 1
        return True

    async def get_order_status(self, order_id: str) -> str | None:
        return self.order_statuses.get(order_id, "LIVE")

    async def wait_late_orders(self, timeout: float | None = None) -> None:
        self.late_order_waits += 1


def make_book(token_id: str, asks=(), bids=()) -> OrderBook:
    """(price, size) tuples → OrderBook."""
    return OrderBook.from_levels(
        token_id,
        [{"price": str(p), "size": str(s)} for p, s in asks],
        [{"price": str(p), "size": str(s)} for p, s in bids],
    )


def make_market(
    market_id: str = "0xmarket1",
    question: str = "Will BTC be above $100,000 at 2pm UTC?",
    yes_token: str = "tok_yes",
    no_token: str = "tok_no",
) -> Market:
    return Market(
        market_id=market_id,
        question=question,
        yes_token=yes_token,
        no_token=no_token,
        end_date=datetime.now(tz=timezone.utc) + timedelta(hours=1),
    )


def make_raw_market(
    condition_id: str = "0xmarket1",
    question: str = "Will BTC be above $100,000 at 2pm UTC?",
    yes_token: str = "tok_yes",
    no_token: str = "tok_no",
    **extra,
) -> dict:
    """Raw market dict as returned by the CLOB API."""
    raw = {
        "condition_id": condition_id,
        "question": question,
        "description": "",
        "tokens": [
            {"outcome": "Yes", "token_id": yes_token},
            {"outcome": "No", "token_id": no_token},
        ],
        "end_date_iso": (datetime.now(tz=timezone.utc) + timedelta(hours=1)).isoformat(),
        "closed": False,
        "resolved": False,
    }
    raw.update(extra)
    return raw


def make_opportunity(
    market_id: str = "0xmarket1",
    yes_price: float = 0.45,
    no_price: float = 0.52,
    position_size: float = 0.5,
    liquidity: float = 100.0,
    **extra,
) -> Opportunity:
    total_cost = yes_price + no_price
    spread = 1.0 - total_cost
    fields = dict(
        market_id=market_id,
        market_question="Will BTC be above $100,000 at 2pm UTC?",
        yes_token_id="tok_yes",
        no_token_id="tok_no",
        yes_price=yes_price,
        no_price=no_price,
        total_cost=total_cost,
        spread=spread,
        expected_profit=(position_size / total_cost) * spread,
        yes_liquidity=liquidity,
        no_liquidity=liquidity,
        expires_at=datetime.now(tz=timezone.utc) + timedelta(minutes=5),
    )
    fields.update(extra)
    return Opportunity(**fields)


@pytest.fixture
def repo():
    repository = SQLiteRepository(":memory:")
    yield repository
    repository.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def config() -> BotConfig:
    return BotConfig(db_path=":memory:", approval_ttl=300.0)


@pytest.fixture
def ctx(config, repo, gateway) -> AccountContext:
    return AccountContext.create(
        config, repository=repo, gateway=gateway, events=EventBus(buffered=True),
    )


@pytest.fixture
def arb_gateway(gateway) -> FakeGateway:
    """Gateway with one BTC market priced YES 0.45 / NO 0.52."""
    gateway.markets_raw = [make_raw_market()]
    gateway.books["tok_yes"] = make_book("tok_yes", asks=[(0.45, 100)], bids=[(0.44, 50)])
    gateway.books["tok_no"] = make_book("tok_no", asks=[(0.52, 100)], bids=[(0.51, 50)])
    return gateway
