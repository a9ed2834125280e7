"""
Exception hierarchy for the liquidation counter-trader.

    LiqTraderError
    ├── VenueRejection       - venue answered with a non-zero retCode
    ├── TransientIOFailure   - network error or timeout, outcome unknown
    ├── ChannelUnavailable   - low-latency order channel not usable
    ├── UnmatchedSettlement  - no closed-PnL record found for a close
    └── InvariantViolation   - local and remote state disagree impossibly

Gating failures are not exceptions: they end as ExecutionResult(SKIPPED).
None of these escape the engine; each one becomes a terminal outcome and a
log line.
"""

from typing import Any, Dict, Optional


class LiqTraderError(Exception):
    """Base exception for the bot."""
    pass


class VenueRejection(LiqTraderError):
    """The venue rejected the request."""

    def __init__(self, message: str, ret_code: Optional[int] = None,
                 response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.ret_code = ret_code
        self.response = response or {}


class TransientIOFailure(LiqTraderError):
    """Network failure or timeout. Reads may be retried; writes are not."""
    pass


class ChannelUnavailable(LiqTraderError):
    """The websocket order channel is disconnected or disabled."""
    pass


class UnmatchedSettlement(LiqTraderError):
    """No venue settlement record could be matched to a local close."""
    pass


class InvariantViolation(LiqTraderError):
    """Local state contradicts the venue (e.g. a closed symbol reappearing)."""
    pass
