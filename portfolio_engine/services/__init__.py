"""Valuation, history and return services."""

from .fx import CurrencyConverter
from .portfolio import InMemoryLedgerStore, LedgerStore, PortfolioEngine
from .positions import build_positions
from .prices import InMemoryPriceOracle, PriceOracle, PriceResolver
from .returns import compute_detailed_returns, compute_returns
from .series import build_series
from .timeranges import TimeRange, aggregate_by_time_range, filter_by_time_range

__all__ = [
    "CurrencyConverter",
    "InMemoryLedgerStore",
    "InMemoryPriceOracle",
    "LedgerStore",
    "PortfolioEngine",
    "PriceOracle",
    "PriceResolver",
    "TimeRange",
    "aggregate_by_time_range",
    "build_positions",
    "build_series",
    "compute_detailed_returns",
    "compute_returns",
    "filter_by_time_range",
]
