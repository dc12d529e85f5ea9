"""
Exception hierarchy for the trade bot.

Call sites retry only what a RetryPolicy marks retryable; everything else
propagates to the component boundary (intake, buy, monitor tick, tranche).
"""

from __future__ import annotations

from typing import Optional


class TradebotError(Exception):
    """Base class for every error raised by the bot."""


class ConfigError(TradebotError):
    pass


class QuoteError(TradebotError):
    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code

    @property
    def transient(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class NoRouteError(QuoteError):
    """The aggregator has no route for the pair at this size."""

    @property
    def transient(self) -> bool:
        return False


class RateLimitedError(QuoteError):
    pass


class SwapBuildError(TradebotError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def transient(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class TransactionError(TradebotError):
    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class TransactionFailedError(TransactionError):
    """Transaction landed but its execution failed on-chain."""


class TransactionNotFoundError(TransactionError):
    """Confirmation window expired and the transaction never showed up."""


class BalanceUnavailableError(TradebotError):
    pass


class InsufficientBalanceError(TradebotError):
    def __init__(self, have: float, need: float):
        super().__init__(f"insufficient balance: have {have:.2f}, need {need:.2f}")
        self.have = have
        self.need = need


class RiskProviderUnavailableError(TradebotError):
    pass


class BuyError(TradebotError):
    pass


class DuplicatePositionError(TradebotError):
    pass
