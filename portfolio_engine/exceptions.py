"""Exception hierarchy for the engine."""

from __future__ import annotations


class PortfolioEngineError(RuntimeError):
    """Base class for engine errors."""


class ExchangeRateError(PortfolioEngineError):
    """Raised when a conversion rate cannot be determined."""


class UnsupportedCurrencyError(ExchangeRateError):
    """Raised when a currency has no USD pivot quote configured."""

    def __init__(self, currency: str) -> None:
        super().__init__(f"Unsupported currency: {currency}")
        self.currency = currency


__all__ = ["PortfolioEngineError", "ExchangeRateError", "UnsupportedCurrencyError"]
