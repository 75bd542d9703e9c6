"""Error taxonomy for polyarb.

Risk denials are not exceptions; they come back as ``GateResult``.
"""

from __future__ import annotations


class PolyArbError(Exception):
    """Base class for all polyarb errors."""


class NotFoundError(PolyArbError):
    """Unknown trade / opportunity id."""


class ValidationError(PolyArbError):
    """Request rejected before any state change."""


class TransientSourceError(PolyArbError):
    """Network / rate-limit / timeout talking to the exchange."""


class LegExecutionError(PolyArbError):
    """A leg order placement failed (rejected, errored or timed out)."""

    def __init__(
        self, side: str, message: str, timed_out: bool = False, rejected: bool = False,
    ):
        super().__init__(f"{side} leg failed: {message}")
        self.side = side
        self.timed_out = timed_out
        # exchange answered with an explicit rejection: nothing can have landed
        self.rejected = rejected


class InitializationError(PolyArbError):
    """Cannot reach the exchange or credentials are missing at start-up."""
