"""Pydantic schemas for ledger rows and engine results."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from portfolio_engine.dates import coerce_date
from portfolio_engine.models import (
    ASSET_TYPES,
    AssetType,
    HoldingType,
    SymbolInfo,
    Transaction,
    TransactionType,
)


class TransactionRecord(BaseModel):
    """Raw ledger row as handed over by the ledger store."""

    model_config = ConfigDict(extra="ignore")

    symbol: str = Field(..., min_length=1, examples=["AAPL"])
    type: TransactionType
    date: date
    quantity: float = 0.0
    price_per_unit: float = 0.0
    currency: str = Field(default="USD", min_length=3, max_length=3)
    amount: Optional[float] = None
    fees: Optional[float] = 0.0
    id: Optional[str] = None

    @field_validator("symbol", "currency", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        return coerce_date(value) if value is not None else value

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if value is not None else None

    def to_domain(self) -> Transaction:
        # Some ledgers sign sells negatively; the type carries the direction.
        return Transaction(
            symbol=self.symbol,
            type=self.type,
            date=self.date,
            quantity=abs(self.quantity),
            price_per_unit=self.price_per_unit,
            currency=self.currency,
            amount=self.amount,
            fees=self.fees or 0.0,
            id=self.id,
        )


class SymbolRecord(BaseModel):
    """Raw symbol row as handed over by the ledger store."""

    model_config = ConfigDict(extra="ignore")

    symbol: str = Field(..., min_length=1)
    asset_type: AssetType = AssetType.OTHER
    currency: str = Field(default="USD", min_length=3, max_length=3)
    is_custom: bool = False
    holding_type: HoldingType = HoldingType.SECURITY
    last_price: Optional[float] = None
    name: Optional[str] = None

    @field_validator("symbol", "currency", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("asset_type", mode="before")
    @classmethod
    def _asset_type(cls, value: Any) -> Any:
        if value is None:
            return AssetType.OTHER
        if isinstance(value, str):
            normalized = value.strip().lower()
            return normalized if normalized in ASSET_TYPES else AssetType.OTHER
        return value

    @field_validator("holding_type", mode="before")
    @classmethod
    def _holding_type(cls, value: Any) -> Any:
        # Older rows store "standard" for ordinary securities.
        if value is None or (isinstance(value, str) and value.strip().lower() in {"", "standard"}):
            return HoldingType.SECURITY
        return value.strip().lower() if isinstance(value, str) else value

    def to_domain(self) -> SymbolInfo:
        return SymbolInfo(
            symbol=self.symbol,
            asset_type=self.asset_type,
            currency=self.currency,
            is_custom=self.is_custom,
            holding_type=self.holding_type,
            last_price=self.last_price,
            name=self.name,
        )


class _ResultModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _empty_buckets() -> dict[str, float]:
    return {asset_type: 0.0 for asset_type in ASSET_TYPES}


class HistoricalDataPoint(_ResultModel):
    date: date
    total_value: float
    asset_type_values: dict[str, float] = Field(default_factory=_empty_buckets)
    asset_type_allocations: dict[str, float] = Field(default_factory=_empty_buckets)
    cost_basis: float = 0.0
    cumulative_dividends: float = 0.0


class ReturnMetrics(_ResultModel):
    total_value: float = 0.0
    total_pnl: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    capital_gains: float = 0.0
    dividends: float = 0.0
    cost_basis: float = 0.0
    total_invested: float = 0.0
    time_weighted_return: float = Field(default=0.0, description="Annualized, as a fraction")
    money_weighted_return: float = Field(default=0.0, description="Annualized XIRR, as a fraction")
    total_return_percentage: float = 0.0
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    period_years: float = 0.0

    @classmethod
    def empty(cls) -> "ReturnMetrics":
        """The all-zero result returned when there is not enough history."""

        return cls()

    @property
    def is_empty(self) -> bool:
        return self.start_date is None and self.end_date is None


class CapitalGainsBreakdown(_ResultModel):
    realized: float = 0.0
    unrealized: float = 0.0
    realized_percentage: float = 0.0
    unrealized_percentage: float = 0.0
    annualized_rate: float = 0.0


class DividendIncomeBreakdown(_ResultModel):
    total: float = 0.0
    percentage: float = 0.0
    annualized_yield: float = 0.0


class RealizedVsUnrealized(_ResultModel):
    total_realized: float = 0.0
    total_unrealized: float = 0.0
    realized_percentage: float = 0.0
    unrealized_percentage: float = 0.0


class InvestmentSummary(_ResultModel):
    total_invested: float = 0.0
    current_value: float = 0.0
    total_withdrawn: float = 0.0


class DetailedReturnMetrics(ReturnMetrics):
    capital_gains_breakdown: CapitalGainsBreakdown = Field(default_factory=CapitalGainsBreakdown)
    dividend_income: DividendIncomeBreakdown = Field(default_factory=DividendIncomeBreakdown)
    realized_vs_unrealized: RealizedVsUnrealized = Field(default_factory=RealizedVsUnrealized)
    investment_summary: InvestmentSummary = Field(default_factory=InvestmentSummary)
    annualized_volatility: float = 0.0


class PositionSummary(_ResultModel):
    symbol: str
    asset_type: AssetType
    currency: str
    quantity: float
    avg_cost: float
    total_cost: float
    dividend_income: float = 0.0
    current_price: Optional[float] = None
    value: float = 0.0
    unrealized_pnl: float = 0.0
    is_custom: bool = False
    is_account: bool = False


class PortfolioSummary(_ResultModel):
    currency: str
    as_of: date
    total_value: float = 0.0
    total_cost: float = 0.0
    unrealized_pnl: float = 0.0
    positions: list[PositionSummary] = Field(default_factory=list)


__all__ = [
    "CapitalGainsBreakdown",
    "DetailedReturnMetrics",
    "DividendIncomeBreakdown",
    "HistoricalDataPoint",
    "InvestmentSummary",
    "PortfolioSummary",
    "PositionSummary",
    "RealizedVsUnrealized",
    "ReturnMetrics",
    "SymbolRecord",
    "TransactionRecord",
]
