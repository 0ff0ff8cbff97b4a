"""Portfolio valuation and return engine."""

from .models import AssetType, HoldingType, Position, SymbolInfo, Transaction, TransactionType
from .schemas import DetailedReturnMetrics, HistoricalDataPoint, PortfolioSummary, ReturnMetrics
from .services import (
    CurrencyConverter,
    InMemoryLedgerStore,
    InMemoryPriceOracle,
    PortfolioEngine,
    PriceResolver,
    build_positions,
    build_series,
    compute_returns,
)

__all__ = [
    "AssetType",
    "CurrencyConverter",
    "DetailedReturnMetrics",
    "HistoricalDataPoint",
    "HoldingType",
    "InMemoryLedgerStore",
    "InMemoryPriceOracle",
    "PortfolioEngine",
    "PortfolioSummary",
    "Position",
    "PriceResolver",
    "ReturnMetrics",
    "SymbolInfo",
    "Transaction",
    "TransactionType",
    "build_positions",
    "build_series",
    "compute_returns",
]
