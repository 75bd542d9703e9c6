"""SQLite-backed persistence for settings, trades, opportunities and alerts."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from polyarb.config import DEFAULT_SETTINGS
from polyarb.models.opportunity import Opportunity, OpportunityStatus
from polyarb.models.settings import Settings
from polyarb.models.trade import (
    OPEN_TRADE_STATUSES,
    Alert,
    DailyPnL,
    OrderBookSnapshot,
    Trade,
    TradeStatus,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        position_size REAL NOT NULL,
        profit_threshold REAL NOT NULL,
        daily_loss_limit REAL NOT NULL,
        max_open_positions INTEGER NOT NULL,
        auto_mode INTEGER NOT NULL DEFAULT 0,
        kill_switch INTEGER NOT NULL DEFAULT 0,
        kill_switch_reason TEXT,
        active_currencies TEXT NOT NULL,
        scan_interval REAL NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS opportunities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        market_id TEXT NOT NULL,
        market_question TEXT,
        yes_token_id TEXT NOT NULL,
        no_token_id TEXT NOT NULL,
        yes_price REAL NOT NULL,
        no_price REAL NOT NULL,
        total_cost REAL NOT NULL,
        spread REAL NOT NULL,
        expected_profit REAL NOT NULL,
        yes_liquidity REAL NOT NULL,
        no_liquidity REAL NOT NULL,
        expires_at TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        detected_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        opportunity_id INTEGER,
        market_id TEXT NOT NULL,
        market_question TEXT,
        yes_token_id TEXT NOT NULL,
        no_token_id TEXT NOT NULL,
        yes_order_id TEXT,
        no_order_id TEXT,
        yes_price REAL NOT NULL,
        no_price REAL NOT NULL,
        total_cost REAL NOT NULL,
        position_size REAL NOT NULL,
        expected_profit REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        settlement_result TEXT,
        actual_profit REAL,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        settled_at TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS order_book_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        market_id TEXT NOT NULL,
        token_id TEXT NOT NULL,
        token_type TEXT NOT NULL,
        best_bid REAL,
        best_ask REAL,
        bid_depth REAL,
        ask_depth REAL,
        spread REAL,
        snapshot_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_pnl (
        date TEXT PRIMARY KEY,
        total_trades INTEGER NOT NULL DEFAULT 0,
        winning_trades INTEGER NOT NULL DEFAULT 0,
        realized_pnl REAL NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        severity TEXT NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        data TEXT,
        read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);",
    "CREATE INDEX IF NOT EXISTS idx_trades_created ON trades(created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_opps_status ON opportunities(status, market_id);",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_market ON order_book_snapshots(market_id, snapshot_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_alerts_unread ON alerts(read, created_at DESC);",
]

_TRADE_COLUMNS = {
    "opportunity_id", "yes_order_id", "no_order_id", "status",
    "settlement_result", "actual_profit", "error", "settled_at",
}

_SETTINGS_COLUMNS = {
    "position_size", "profit_threshold", "daily_loss_limit",
    "max_open_positions", "auto_mode", "kill_switch", "kill_switch_reason",
    "active_currencies", "scan_interval",
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """UTC ISO 문자열. 문자열 비교가 시간 순서와 일치하도록 포맷 고정."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def utc_today() -> date:
    """현재 UTC 날짜."""
    return _now().date()


class SQLiteRepository:
    """Repository contract used by the core: read/update by primary key plus
    the status-filtered list queries.

    One database per account. ``db_path=":memory:"`` is supported for tests.
    """

    def __init__(
        self,
        db_path: Path | str = Path("data/polyarb.db"),
        defaults: Optional[dict] = None,
    ) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(str(db_path), check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()
        self._seed_settings(defaults or {})

    def _configure(self) -> None:
        with self._lock:
            try:
                self._connection.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass

    def _create_schema(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self._connection.execute(statement)
            self._connection.commit()

    def _seed_settings(self, overrides: dict) -> None:
        values = {**DEFAULT_SETTINGS, **overrides}
        with self._lock:
            self._connection.execute(
                """
                INSERT OR IGNORE INTO settings (
                    id, position_size, profit_threshold, daily_loss_limit,
                    max_open_positions, auto_mode, kill_switch, active_currencies,
                    scan_interval, updated_at
                ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    values["position_size"],
                    values["profit_threshold"],
                    values["daily_loss_limit"],
                    values["max_open_positions"],
                    int(values["auto_mode"]),
                    int(values["kill_switch"]),
                    json.dumps(values["active_currencies"]),
                    values["scan_interval"],
                    _ts(_now()),
                ),
            )
            self._connection.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._connection.execute(sql, params)
            self._connection.commit()
            return cursor

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(sql, params).fetchall()

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> Settings:
        row = self._fetchone("SELECT * FROM settings WHERE id = 1")
        return Settings(
            position_size=row["position_size"],
            profit_threshold=row["profit_threshold"],
            daily_loss_limit=row["daily_loss_limit"],
            max_open_positions=row["max_open_positions"],
            auto_mode=bool(row["auto_mode"]),
            kill_switch=bool(row["kill_switch"]),
            kill_switch_reason=row["kill_switch_reason"],
            active_currencies=json.loads(row["active_currencies"] or "[]"),
            scan_interval=row["scan_interval"],
        )

    def update_settings(self, **changes: Any) -> Settings:
        unknown = set(changes) - _SETTINGS_COLUMNS
        if unknown:
            raise KeyError(f"Unknown settings field(s): {sorted(unknown)}")

        fields: list[str] = []
        values: list[Any] = []
        for key, value in changes.items():
            if key in ("auto_mode", "kill_switch"):
                value = int(bool(value))
            elif key == "active_currencies":
                value = json.dumps(list(value))
            fields.append(f"{key} = ?")
            values.append(value)

        if fields:
            fields.append("updated_at = ?")
            values.append(_ts(_now()))
            self._execute(
                f"UPDATE settings SET {', '.join(fields)} WHERE id = 1", tuple(values),
            )
        return self.get_settings()

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> Trade:
        return Trade(
            id=row["id"],
            opportunity_id=row["opportunity_id"],
            market_id=row["market_id"],
            market_question=row["market_question"] or "",
            yes_token_id=row["yes_token_id"],
            no_token_id=row["no_token_id"],
            yes_order_id=row["yes_order_id"],
            no_order_id=row["no_order_id"],
            yes_price=row["yes_price"],
            no_price=row["no_price"],
            total_cost=row["total_cost"],
            position_size=row["position_size"],
            expected_profit=row["expected_profit"],
            status=TradeStatus(row["status"]),
            settlement_result=row["settlement_result"],
            actual_profit=row["actual_profit"],
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            settled_at=_parse_ts(row["settled_at"]),
        )

    def create_trade(self, trade: Trade) -> Trade:
        cursor = self._execute(
            """
            INSERT INTO trades (
                opportunity_id, market_id, market_question, yes_token_id,
                no_token_id, yes_order_id, no_order_id, yes_price, no_price,
                total_cost, position_size, expected_profit, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.opportunity_id,
                trade.market_id,
                trade.market_question,
                trade.yes_token_id,
                trade.no_token_id,
                trade.yes_order_id,
                trade.no_order_id,
                trade.yes_price,
                trade.no_price,
                trade.total_cost,
                trade.position_size,
                trade.expected_profit,
                trade.status.value,
                _ts(trade.created_at),
            ),
        )
        return self.get_trade(cursor.lastrowid)

    def get_trade(self, trade_id: int) -> Optional[Trade]:
        row = self._fetchone("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return self._row_to_trade(row) if row else None

    def update_trade(self, trade_id: int, **changes: Any) -> Trade:
        unknown = set(changes) - _TRADE_COLUMNS
        if unknown:
            raise KeyError(f"Unknown trade field(s): {sorted(unknown)}")

        fields: list[str] = ["updated_at = ?"]
        values: list[Any] = [_ts(_now())]
        for key, value in changes.items():
            if isinstance(value, TradeStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = _ts(value)
            fields.append(f"{key} = ?")
            values.append(value)
        values.append(trade_id)
        self._execute(
            f"UPDATE trades SET {', '.join(fields)} WHERE id = ?", tuple(values),
        )
        return self.get_trade(trade_id)

    def list_trades(self, limit: int = 100, offset: int = 0) -> list[Trade]:
        rows = self._fetchall(
            "SELECT * FROM trades ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_trade(r) for r in rows]

    def list_trades_by_status(self, *statuses: TradeStatus) -> list[Trade]:
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._fetchall(
            f"SELECT * FROM trades WHERE status IN ({placeholders}) "
            "ORDER BY created_at DESC, id DESC",
            tuple(s.value for s in statuses),
        )
        return [self._row_to_trade(r) for r in rows]

    def list_active_trades(self) -> list[Trade]:
        """status ∈ {pending, placed, partial}."""
        return self.list_trades_by_status(*OPEN_TRADE_STATUSES)

    def count_open_trades(self) -> int:
        placeholders = ", ".join("?" for _ in OPEN_TRADE_STATUSES)
        row = self._fetchone(
            f"SELECT COUNT(*) AS n FROM trades WHERE status IN ({placeholders})",
            tuple(s.value for s in OPEN_TRADE_STATUSES),
        )
        return row["n"]

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_opportunity(row: sqlite3.Row) -> Opportunity:
        return Opportunity(
            id=row["id"],
            market_id=row["market_id"],
            market_question=row["market_question"] or "",
            yes_token_id=row["yes_token_id"],
            no_token_id=row["no_token_id"],
            yes_price=row["yes_price"],
            no_price=row["no_price"],
            total_cost=row["total_cost"],
            spread=row["spread"],
            expected_profit=row["expected_profit"],
            yes_liquidity=row["yes_liquidity"],
            no_liquidity=row["no_liquidity"],
            expires_at=_parse_ts(row["expires_at"]),
            status=OpportunityStatus(row["status"]),
            detected_at=_parse_ts(row["detected_at"]),
        )

    def create_opportunity(self, opp: Opportunity) -> Opportunity:
        cursor = self._execute(
            """
            INSERT INTO opportunities (
                market_id, market_question, yes_token_id, no_token_id,
                yes_price, no_price, total_cost, spread, expected_profit,
                yes_liquidity, no_liquidity, expires_at, status, detected_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                opp.market_id,
                opp.market_question,
                opp.yes_token_id,
                opp.no_token_id,
                opp.yes_price,
                opp.no_price,
                opp.total_cost,
                opp.spread,
                opp.expected_profit,
                opp.yes_liquidity,
                opp.no_liquidity,
                _ts(opp.expires_at),
                opp.status.value,
                _ts(opp.detected_at),
            ),
        )
        return self.get_opportunity(cursor.lastrowid)

    def get_opportunity(self, opportunity_id: int) -> Optional[Opportunity]:
        row = self._fetchone(
            "SELECT * FROM opportunities WHERE id = ?", (opportunity_id,),
        )
        return self._row_to_opportunity(row) if row else None

    def list_pending_opportunities(self) -> list[Opportunity]:
        rows = self._fetchall(
            "SELECT * FROM opportunities WHERE status = 'pending' "
            "ORDER BY detected_at DESC, id DESC"
        )
        return [self._row_to_opportunity(r) for r in rows]

    def has_pending_opportunity(self, market_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM opportunities WHERE status = 'pending' AND market_id = ? LIMIT 1",
            (market_id,),
        )
        return row is not None

    def update_opportunity_status(
        self, opportunity_id: int, status: OpportunityStatus,
    ) -> Opportunity:
        self._execute(
            "UPDATE opportunities SET status = ? WHERE id = ?",
            (status.value, opportunity_id),
        )
        return self.get_opportunity(opportunity_id)

    def expire_pending_opportunities(self, now: Optional[datetime] = None) -> int:
        """expires_at 이 지난 pending → expired. 반환: 변경 건수."""
        cursor = self._execute(
            "UPDATE opportunities SET status = 'expired' "
            "WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at < ?",
            (_ts(now or _now()),),
        )
        return cursor.rowcount

    def clear_pending_opportunities(self) -> int:
        """pending 만 삭제. approved/rejected/expired/failed 는 유지."""
        cursor = self._execute("DELETE FROM opportunities WHERE status = 'pending'")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Order book snapshots
    # ------------------------------------------------------------------

    def record_snapshot(self, snapshot: OrderBookSnapshot) -> None:
        self._execute(
            """
            INSERT INTO order_book_snapshots (
                market_id, token_id, token_type, best_bid, best_ask,
                bid_depth, ask_depth, spread, snapshot_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.market_id,
                snapshot.token_id,
                snapshot.token_type,
                snapshot.best_bid,
                snapshot.best_ask,
                snapshot.bid_depth,
                snapshot.ask_depth,
                snapshot.spread,
                _ts(_now()),
            ),
        )

    def list_snapshots(self, market_id: str, limit: int = 100) -> list[OrderBookSnapshot]:
        rows = self._fetchall(
            "SELECT * FROM order_book_snapshots WHERE market_id = ? "
            "ORDER BY snapshot_at DESC, id DESC LIMIT ?",
            (market_id, limit),
        )
        return [
            OrderBookSnapshot(
                market_id=r["market_id"],
                token_id=r["token_id"],
                token_type=r["token_type"],
                best_bid=r["best_bid"],
                best_ask=r["best_ask"],
                bid_depth=r["bid_depth"],
                ask_depth=r["ask_depth"],
                spread=r["spread"],
            )
            for r in rows
        ]

    def cleanup_snapshots(self, days_old: int = 7) -> int:
        cutoff = _now() - timedelta(days=days_old)
        cursor = self._execute(
            "DELETE FROM order_book_snapshots WHERE snapshot_at < ?", (_ts(cutoff),),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Daily P&L
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_pnl(row: sqlite3.Row) -> DailyPnL:
        return DailyPnL(
            date=date.fromisoformat(row["date"]),
            total_trades=row["total_trades"],
            winning_trades=row["winning_trades"],
            realized_pnl=row["realized_pnl"],
        )

    def get_daily_pnl(self, day: date) -> Optional[DailyPnL]:
        row = self._fetchone("SELECT * FROM daily_pnl WHERE date = ?", (day.isoformat(),))
        return self._row_to_pnl(row) if row else None

    def get_today_pnl(self) -> Optional[DailyPnL]:
        return self.get_daily_pnl(utc_today())

    def record_settlement_pnl(self, day: date, profit: float) -> DailyPnL:
        """trade 1건 정산 반영: count +1, win +1 (profit > 0), pnl += profit."""
        win = 1 if profit > 0 else 0
        self._execute(
            """
            INSERT INTO daily_pnl (date, total_trades, winning_trades, realized_pnl)
            VALUES (?, 1, ?, ?)
            ON CONFLICT(date) DO UPDATE SET
                total_trades = total_trades + 1,
                winning_trades = winning_trades + excluded.winning_trades,
                realized_pnl = realized_pnl + excluded.realized_pnl
            """,
            (day.isoformat(), win, profit),
        )
        return self.get_daily_pnl(day)

    def list_daily_pnl(self, start: date, end: date) -> list[DailyPnL]:
        rows = self._fetchall(
            "SELECT * FROM daily_pnl WHERE date BETWEEN ? AND ? ORDER BY date DESC",
            (start.isoformat(), end.isoformat()),
        )
        return [self._row_to_pnl(r) for r in rows]

    def get_pnl_totals(self) -> dict:
        """All-time 합계."""
        row = self._fetchone(
            "SELECT COALESCE(SUM(total_trades), 0) AS total_trades, "
            "COALESCE(SUM(winning_trades), 0) AS winning_trades, "
            "COALESCE(SUM(realized_pnl), 0) AS realized_pnl FROM daily_pnl"
        )
        total = row["total_trades"]
        return {
            "total_trades": total,
            "winning_trades": row["winning_trades"],
            "realized_pnl": row["realized_pnl"],
            "win_rate": row["winning_trades"] / total if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_alert(row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            type=row["type"],
            severity=row["severity"],
            message=row["message"],
            data=json.loads(row["data"]) if row["data"] else None,
            read=bool(row["read"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def create_alert(self, alert: Alert) -> Alert:
        cursor = self._execute(
            "INSERT INTO alerts (type, severity, message, data, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                alert.type,
                alert.severity,
                alert.message,
                json.dumps(alert.data, default=str) if alert.data else None,
                _ts(alert.created_at),
            ),
        )
        row = self._fetchone("SELECT * FROM alerts WHERE id = ?", (cursor.lastrowid,))
        return self._row_to_alert(row)

    def list_alerts(self, limit: int = 50, offset: int = 0) -> list[Alert]:
        rows = self._fetchall(
            "SELECT * FROM alerts ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_alert(r) for r in rows]

    def list_unread_alerts(self) -> list[Alert]:
        rows = self._fetchall(
            "SELECT * FROM alerts WHERE read = 0 ORDER BY created_at DESC, id DESC"
        )
        return [self._row_to_alert(r) for r in rows]

    def count_unread_alerts(self) -> int:
        return self._fetchone("SELECT COUNT(*) AS n FROM alerts WHERE read = 0")["n"]

    def mark_alert_read(self, alert_id: int) -> None:
        self._execute("UPDATE alerts SET read = 1 WHERE id = ?", (alert_id,))

    def mark_all_alerts_read(self) -> None:
        self._execute("UPDATE alerts SET read = 1 WHERE read = 0")
