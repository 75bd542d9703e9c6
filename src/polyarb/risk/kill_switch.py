"""Kill switch — account-wide halt as a two-state machine.

    TRADING ──activate(reason)──▶ HALTED(reason)
    HALTED  ──activate(reason)──▶ HALTED(reason)   (reason re-recorded only)
    HALTED  ──deactivate()─────▶ TRADING
    TRADING ──deactivate()─────▶ TRADING           (no-op)

``transition`` is the only place the state changes; both the pre-trade gate
and the standing risk check go through it. State is persisted in the
Settings row so it survives restarts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from polyarb.models.settings import Settings
from polyarb.storage.sqlite_repository import SQLiteRepository

logger = logging.getLogger(__name__)


class KillSwitchState(Enum):
    TRADING = "trading"
    HALTED = "halted"


class KillSwitchCommand(Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"


@dataclass(frozen=True)
class KillSwitchStatus:
    state: KillSwitchState
    reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state is KillSwitchState.HALTED

    @classmethod
    def from_settings(cls, settings: Settings) -> KillSwitchStatus:
        if settings.kill_switch:
            return cls(KillSwitchState.HALTED, settings.kill_switch_reason)
        return cls(KillSwitchState.TRADING)


TRADING = KillSwitchStatus(KillSwitchState.TRADING)


def halted(reason: str) -> KillSwitchStatus:
    return KillSwitchStatus(KillSwitchState.HALTED, reason)


@dataclass(frozen=True)
class Transition:
    """Result of one transition: new status + whether the state flipped."""

    status: KillSwitchStatus
    changed: bool


def transition(
    current: KillSwitchStatus,
    command: KillSwitchCommand,
    reason: Optional[str] = None,
) -> Transition:
    """Pure transition function."""
    if command is KillSwitchCommand.ACTIVATE:
        return Transition(halted(reason or "manual activation"), not current.is_active)
    return Transition(TRADING, current.is_active)


class KillSwitch:
    """Persisted kill switch for one account.

    Args:
        repository: Holds the Settings row carrying the flag and reason.
    """

    def __init__(self, repository: SQLiteRepository):
        self._repository = repository

    @property
    def status(self) -> KillSwitchStatus:
        return KillSwitchStatus.from_settings(self._repository.get_settings())

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def reason(self) -> Optional[str]:
        return self.status.reason

    def apply(self, command: KillSwitchCommand, reason: Optional[str] = None) -> Transition:
        """Run ``transition`` against the stored state and persist the result."""
        result = transition(self.status, command, reason)
        self._repository.update_settings(
            kill_switch=result.status.is_active,
            kill_switch_reason=result.status.reason,
        )
        if command is KillSwitchCommand.ACTIVATE:
            logger.critical("🛑 KILL SWITCH ACTIVATED: %s", result.status.reason)
        elif result.changed:
            logger.info("Kill switch deactivated")
        return result
