"""Polymarket CLOB gateway — markets, order books, balance, leg orders.

py_clob_client 는 동기 HTTP 클라이언트. 모든 호출은 worker thread 에서
``asyncio.wait_for`` 타임아웃 아래 실행된다.

dry_run=True: 읽기(마켓/오더북)만 CLOB 호출, 주문/취소는 시뮬레이션.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    OrderArgs,
    OrderType,
)
from py_clob_client.order_builder.constants import BUY

from polyarb.config import CLOB_HOST, POLYGON_CHAIN_ID, BotConfig
from polyarb.errors import InitializationError, LegExecutionError, TransientSourceError
from polyarb.models.market import OrderBook

logger = logging.getLogger(__name__)

# get_markets 페이지네이션 종료 커서
END_CURSOR = "LTE="
START_CURSOR = "MA=="

USDC_DECIMALS = 1_000_000
MAX_MARKET_PAGES = 200

# Statuses that indicate the order is done (filled)
FILLED_STATUSES = {"MATCHED", "FILLED"}
# Statuses that indicate the order was cancelled
CANCELLED_STATUSES = {"CANCELLED", "CANCELED"}


class ClobGateway:
    """Exchange Source over ``py_clob_client.ClobClient``.

    Args:
        client: Configured ClobClient. Level-0 (no key) is enough for reads.
        dry_run: Simulate order placement / cancellation.
        timeout: Seconds allowed for every exchange call.
        paper_balance: Balance reported in dry-run mode.
    """

    def __init__(
        self,
        client: Optional[ClobClient] = None,
        dry_run: bool = True,
        timeout: float = 10.0,
        paper_balance: float = 100.0,
        signature_type: int = 1,
    ):
        self._client = client
        self.dry_run = dry_run
        self.timeout = timeout
        self.paper_balance = paper_balance
        self._signature_type = signature_type
        self._last_balance: Optional[dict] = None
        self._dry_run_ids = itertools.count(1)
        self._late_orders: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: BotConfig) -> ClobGateway:
        """BotConfig 로 ClobClient 초기화. live 모드에서 키 누락 시 InitializationError."""
        if config.dry_run:
            client = ClobClient(host=CLOB_HOST, chain_id=POLYGON_CHAIN_ID)
            return cls(
                client=client,
                dry_run=True,
                timeout=config.request_timeout,
                paper_balance=config.paper_balance,
            )

        if not config.private_key:
            raise InitializationError("POLYMARKET_PRIVATE_KEY is required for live trading")

        client = ClobClient(
            host=CLOB_HOST,
            chain_id=POLYGON_CHAIN_ID,
            key=config.private_key,
            signature_type=config.signature_type,
            funder=config.funder or None,
        )
        try:
            if config.has_api_creds:
                creds = ApiCreds(
                    api_key=config.api_key,
                    api_secret=config.api_secret,
                    api_passphrase=config.api_passphrase,
                )
            else:
                creds = client.create_or_derive_api_creds()
            client.set_api_creds(creds)
        except Exception as exc:
            raise InitializationError(f"Cannot set up CLOB API credentials: {exc}") from exc

        return cls(
            client=client,
            dry_run=False,
            timeout=config.request_timeout,
            signature_type=config.signature_type,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _call(self, label: str, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        """Blocking SDK 호출 → thread + timeout. 실패는 TransientSourceError."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientSourceError(f"{label} timed out after {self.timeout}s") from exc
        except Exception as exc:
            raise TransientSourceError(f"{label} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def check_connection(self) -> None:
        """Start-up probe. 연결 불가 시 InitializationError."""
        try:
            await self._call("get_ok", self._client.get_ok)
        except TransientSourceError as exc:
            raise InitializationError(f"CLOB unreachable: {exc}") from exc

    async def get_all_markets(self) -> list[dict]:
        """전체 마켓 목록 (커서 페이지네이션)."""
        markets: list[dict] = []
        cursor = START_CURSOR
        for _ in range(MAX_MARKET_PAGES):
            page = await self._call("get_markets", self._client.get_markets, next_cursor=cursor)
            markets.extend(page.get("data") or [])
            cursor = page.get("next_cursor")
            if not cursor or cursor == END_CURSOR:
                break
        else:
            logger.warning("Market pagination stopped after %d pages", MAX_MARKET_PAGES)
        return markets

    async def get_order_book(self, token_id: str) -> OrderBook:
        """오더북 조회. 토큰 없음(404)은 빈 오더북."""
        try:
            raw = await self._call("get_order_book", self._client.get_order_book, token_id)
        except TransientSourceError as exc:
            cause = exc.__cause__
            if getattr(cause, "status_code", None) == 404:
                logger.debug("No order book for %s", token_id[:16])
                return OrderBook.empty(token_id)
            raise
        return OrderBook.from_levels(
            token_id,
            getattr(raw, "asks", None) or [],
            getattr(raw, "bids", None) or [],
        )

    async def get_balance(self) -> dict:
        """USDC 잔고 {balance, allowance}. 실패 시 마지막 값, 없으면 raise."""
        if self.dry_run:
            return {"balance": self.paper_balance, "allowance": self.paper_balance}

        params = BalanceAllowanceParams(
            asset_type=AssetType.COLLATERAL,
            signature_type=self._signature_type,
        )
        try:
            raw = await self._call(
                "get_balance_allowance", self._client.get_balance_allowance, params,
            )
        except TransientSourceError:
            if self._last_balance is None:
                raise
            logger.warning("Balance fetch failed, using last known balance")
            return dict(self._last_balance)

        self._last_balance = self._parse_balance(raw)
        return dict(self._last_balance)

    @staticmethod
    def _parse_balance(raw: dict) -> dict:
        balance = float(raw.get("balance", 0) or 0) / USDC_DECIMALS
        if "allowance" in raw:
            allowance = float(raw.get("allowance") or 0) / USDC_DECIMALS
        else:
            # newer API: per-contract allowances
            values = [float(v or 0) for v in (raw.get("allowances") or {}).values()]
            allowance = (min(values) if values else 0.0) / USDC_DECIMALS
        return {"balance": balance, "allowance": allowance}

    async def get_order_status(self, order_id: str) -> Optional[str]:
        """주문 상태 문자열 (대문자). 조회 실패 시 None."""
        if self.dry_run or order_id.startswith("dry-"):
            return "LIVE"
        try:
            order = await self._call("get_order", self._client.get_order, order_id)
        except TransientSourceError as exc:
            logger.warning("Order status lookup failed for %s: %s", order_id, exc)
            return None
        if not isinstance(order, dict):
            return None
        status = order.get("status")
        return str(status).upper() if status else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _sign_and_post(self, order_args: OrderArgs) -> Any:
        signed_order = self._client.create_order(order_args)
        return self._client.post_order(signed_order, OrderType.GTC)

    async def place_order(
        self, token_id: str, price: float, size: float, side: str = BUY, leg: str = "",
    ) -> str:
        """GTC limit 주문 → order id. 거부/에러/타임아웃은 LegExecutionError.

        ``leg`` ("YES"/"NO") labels errors; defaults to the order side.
        """
        leg = leg or side
        if self.dry_run:
            order_id = f"dry-{next(self._dry_run_ids)}"
            logger.info(
                "[DRY RUN] Would submit: %s %.2f shares @ $%.4f | token=%s",
                side, size, price, token_id[:16],
            )
            return order_id

        order_args = OrderArgs(
            token_id=token_id,
            price=round(price, 4),
            size=round(size, 2),
            side=side,
        )
        # the worker thread cannot be interrupted; shield it so a late result
        # is still seen
        worker = asyncio.ensure_future(asyncio.to_thread(self._sign_and_post, order_args))
        try:
            response = await asyncio.wait_for(asyncio.shield(worker), timeout=self.timeout)
        except asyncio.CancelledError:
            self._watch_late_order(worker, leg)
            raise
        except asyncio.TimeoutError as exc:
            self._watch_late_order(worker, leg)
            raise LegExecutionError(
                leg, f"order placement timed out after {self.timeout}s", timed_out=True,
            ) from exc
        except Exception as exc:
            raise LegExecutionError(leg, str(exc)) from exc

        if not isinstance(response, dict):
            raise LegExecutionError(leg, f"invalid response type: {type(response).__name__}")
        order_id = response.get("orderID") or response.get("order_id")
        if response.get("success") is False:
            raise LegExecutionError(
                leg, response.get("errorMsg") or "order rejected", rejected=True,
            )
        if not order_id:
            raise LegExecutionError(leg, "no order id in response")

        logger.info(
            "[LIVE ORDER] Submitted: %s %.2f shares @ $%.4f | order_id=%s",
            side, size, price, order_id,
        )
        return str(order_id)

    def _watch_late_order(self, worker: asyncio.Future, leg: str) -> None:
        task = asyncio.ensure_future(self._cancel_late_order(worker, leg))
        self._late_orders.add(task)
        task.add_done_callback(self._late_orders.discard)

    async def _cancel_late_order(self, worker: asyncio.Future, leg: str) -> None:
        """타임아웃된 레그가 늦게 체결되면 order id 로 취소."""
        try:
            response = await worker
        except Exception as exc:
            logger.info("Timed-out %s leg never landed: %s", leg, exc)
            return
        if not isinstance(response, dict) or response.get("success") is False:
            return
        order_id = response.get("orderID") or response.get("order_id")
        if not order_id:
            return
        logger.warning("Timed-out %s leg landed late as %s, cancelling", leg, order_id)
        await self.cancel_order(str(order_id))

    async def wait_late_orders(self, timeout: Optional[float] = None) -> None:
        """Wait for timed-out legs to resolve (and be cancelled if they landed)."""
        if not self._late_orders:
            return
        _, pending = await asyncio.wait(
            set(self._late_orders), timeout=timeout if timeout is not None else self.timeout,
        )
        if pending:
            logger.warning("%d timed-out orders still unresolved", len(pending))

    async def cancel_order(self, order_id: str) -> bool:
        """Best-effort cancel. Never raises."""
        if self.dry_run or order_id.startswith("dry-"):
            logger.info("[DRY RUN] Would cancel order %s", order_id)
            return True
        try:
            result = await self._call("cancel", self._client.cancel, order_id)
        except TransientSourceError as exc:
            logger.warning("Cancel failed for %s: %s", order_id, exc)
            return False
        if isinstance(result, dict) and result.get("not_canceled"):
            logger.warning("Order %s not cancelled: %s", order_id, result["not_canceled"])
            return False
        return True

    async def cancel_token_orders(self, token_id: str) -> bool:
        """토큰의 모든 주문 취소 (order id 를 모르는 타임아웃 레그용). Never raises."""
        if self.dry_run:
            logger.info("[DRY RUN] Would cancel orders for token %s", token_id[:16])
            return True
        try:
            await self._call(
                "cancel_market_orders", self._client.cancel_market_orders, asset_id=token_id,
            )
        except TransientSourceError as exc:
            logger.warning("Token order sweep failed for %s: %s", token_id[:16], exc)
            return False
        return True

    async def cancel_all_orders(self) -> bool:
        """Best-effort cancel of every outstanding order. Never raises."""
        if self.dry_run:
            logger.info("[DRY RUN] Would cancel all orders")
            return True
        try:
            await self._call("cancel_all", self._client.cancel_all)
        except TransientSourceError as exc:
            logger.warning("Cancel-all failed: %s", exc)
            return False
        return True
