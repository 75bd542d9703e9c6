"""Settings singleton model."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional

from polyarb.config import DEFAULT_SETTINGS


@dataclass
class Settings:
    """Account-level mutable configuration.

    Read fresh on every decision; a write only affects later decisions.
    """

    position_size: float = DEFAULT_SETTINGS["position_size"]
    profit_threshold: float = DEFAULT_SETTINGS["profit_threshold"]
    daily_loss_limit: float = DEFAULT_SETTINGS["daily_loss_limit"]
    max_open_positions: int = DEFAULT_SETTINGS["max_open_positions"]
    auto_mode: bool = DEFAULT_SETTINGS["auto_mode"]
    kill_switch: bool = DEFAULT_SETTINGS["kill_switch"]
    kill_switch_reason: Optional[str] = None
    active_currencies: list[str] = field(
        default_factory=lambda: list(DEFAULT_SETTINGS["active_currencies"])
    )
    scan_interval: float = DEFAULT_SETTINGS["scan_interval"]

    def to_dict(self) -> dict:
        return asdict(self)
