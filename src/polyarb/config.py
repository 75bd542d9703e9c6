"""Bot configuration — env-based process config, risk policy, market filters."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Settings 기본값 (첫 실행 시 DB에 seed)
# ---------------------------------------------------------------------------

DEFAULT_SETTINGS: dict = {
    "position_size": 0.5,        # $ per trade pair
    "profit_threshold": 0.01,    # 1% minimum spread
    "daily_loss_limit": 50.0,    # $ max daily loss
    "max_open_positions": 10,
    "auto_mode": False,
    "kill_switch": False,
    "active_currencies": ["BTC", "ETH"],
    "scan_interval": 30.0,       # seconds
}

MIN_SCAN_INTERVAL = 5.0  # seconds

# ---------------------------------------------------------------------------
# 마켓 필터 패턴
# ---------------------------------------------------------------------------

TIMEFRAME_PATTERNS: list[re.Pattern] = [
    re.compile(r"15[\s-]?min", re.IGNORECASE),
    re.compile(r"15m", re.IGNORECASE),
    re.compile(r"fifteen.?minute", re.IGNORECASE),
]

CLOB_HOST = "https://clob.polymarket.com"
POLYGON_CHAIN_ID = 137


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() not in ("false", "0", "no")


# ---------------------------------------------------------------------------
# RiskPolicy: 고정 정책 상수 (설정 가능)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskPolicy:
    """Policy constants consulted by the detector and risk manager.

    Args:
        liquidity_multiplier: Required ask depth per side, as a multiple of
            position_size.
        depth_levels: Ask levels summed when measuring liquidity.
        low_balance_ratio: Standing check halts trading when balance falls
            below position_size × this ratio.
    """

    liquidity_multiplier: float = 2.0
    depth_levels: int = 5
    low_balance_ratio: float = 0.5

    @classmethod
    def from_env(cls) -> RiskPolicy:
        return cls(
            liquidity_multiplier=float(
                os.environ.get("POLYARB_LIQUIDITY_MULTIPLIER", "2.0")
            ),
            depth_levels=int(os.environ.get("POLYARB_DEPTH_LEVELS", "5")),
            low_balance_ratio=float(
                os.environ.get("POLYARB_LOW_BALANCE_RATIO", "0.5")
            ),
        )


# ---------------------------------------------------------------------------
# BotConfig: 환경변수 기반 설정
# ---------------------------------------------------------------------------


@dataclass
class BotConfig:
    """프로세스 전체 설정. 환경변수 또는 기본값."""

    dry_run: bool = True
    account_id: str = "default"
    db_path: str = "data/polyarb.db"
    request_timeout: float = 10.0     # seconds, every exchange call
    market_cache_ttl: float = 30.0    # seconds
    require_timeframe: bool = False   # only 15-minute markets
    approval_ttl: float = 300.0       # seconds a pending opportunity stays open
    scan_interval: float | None = None  # overrides stored settings when set
    auto_mode: bool | None = None
    reconcile_open_trades: bool = True
    paper_balance: float = 100.0      # dry-run USDC balance
    private_key: str = ""
    funder: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""
    signature_type: int = 1  # POLY_GNOSIS_SAFE
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    policy: RiskPolicy = field(default_factory=RiskPolicy)

    def __post_init__(self):
        if self.scan_interval is not None and self.scan_interval < MIN_SCAN_INTERVAL:
            self.scan_interval = MIN_SCAN_INTERVAL

    @property
    def has_api_creds(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)

    @classmethod
    def from_env(cls) -> BotConfig:
        """환경변수에서 설정 로드. 없으면 안전한 기본값."""
        return cls(
            dry_run=_env_bool("POLYARB_DRY_RUN", "true"),
            account_id=os.environ.get("POLYARB_ACCOUNT", "default"),
            db_path=os.environ.get("POLYARB_DB_PATH", "data/polyarb.db"),
            request_timeout=float(os.environ.get("POLYARB_REQUEST_TIMEOUT", "10")),
            market_cache_ttl=float(os.environ.get("POLYARB_MARKET_CACHE_TTL", "30")),
            require_timeframe=_env_bool("POLYARB_REQUIRE_TIMEFRAME", "false"),
            approval_ttl=float(os.environ.get("POLYARB_APPROVAL_TTL", "300")),
            paper_balance=float(os.environ.get("POLYARB_PAPER_BALANCE", "100")),
            private_key=os.environ.get("POLYMARKET_PRIVATE_KEY", ""),
            funder=os.environ.get("POLYMARKET_FUNDER", ""),
            api_key=os.environ.get("POLYMARKET_API_KEY", ""),
            api_secret=os.environ.get("POLYMARKET_API_SECRET", ""),
            api_passphrase=os.environ.get("POLYMARKET_API_PASSPHRASE", ""),
            signature_type=int(os.environ.get("POLYMARKET_SIGNATURE_TYPE", "1")),
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
            policy=RiskPolicy.from_env(),
        )
