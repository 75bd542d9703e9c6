"""Per-account context threaded through every component."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from polyarb.config import BotConfig, RiskPolicy
from polyarb.discovery.market_scanner import MarketScanner
from polyarb.execution.clob_gateway import ClobGateway
from polyarb.monitoring.alerts import AlertService
from polyarb.monitoring.events import EventBus
from polyarb.risk.kill_switch import KillSwitch
from polyarb.storage.sqlite_repository import SQLiteRepository

logger = logging.getLogger(__name__)


@dataclass
class AccountContext:
    """Everything one account's decisions touch.

    ``lock`` serialises state-mutating commands for this account: the scan
    cycle, approvals, cancels, settlements, kill-switch and settings writes.
    """

    account_id: str
    repository: SQLiteRepository
    gateway: ClobGateway
    scanner: MarketScanner
    events: EventBus
    alerts: AlertService
    kill_switch: KillSwitch
    config: BotConfig = field(default_factory=BotConfig)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def policy(self) -> RiskPolicy:
        return self.config.policy

    @classmethod
    def create(
        cls,
        config: BotConfig,
        repository: Optional[SQLiteRepository] = None,
        gateway: Optional[ClobGateway] = None,
        events: Optional[EventBus] = None,
    ) -> AccountContext:
        """Wire the collaborators for ``config.account_id``."""
        repository = repository or SQLiteRepository(config.db_path)
        gateway = gateway or ClobGateway.from_config(config)
        events = events or EventBus()
        logger.info(
            "Account %s: db=%s, dry_run=%s", config.account_id, config.db_path, config.dry_run,
        )
        return cls(
            account_id=config.account_id,
            repository=repository,
            gateway=gateway,
            scanner=MarketScanner(
                gateway,
                cache_ttl=config.market_cache_ttl,
                require_timeframe=config.require_timeframe,
            ),
            events=events,
            alerts=AlertService(repository, events),
            kill_switch=KillSwitch(repository),
            config=config,
        )

    def close(self) -> None:
        self.repository.close()
