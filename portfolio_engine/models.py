"""Domain models used by the valuation and return engine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    DIVIDEND = "dividend"
    BONUS = "bonus"


class AssetType(str, Enum):
    STOCK = "stock"
    ETF = "etf"
    CRYPTO = "crypto"
    REAL_ESTATE = "real_estate"
    CASH = "cash"
    CURRENCY = "currency"
    OTHER = "other"


class HoldingType(str, Enum):
    SECURITY = "security"
    ACCOUNT = "account"


ASSET_TYPES: tuple[str, ...] = tuple(item.value for item in AssetType)


def _normalize_codes(instance: object) -> None:
    """Upper-case ``symbol`` and ``currency`` on a frozen dataclass."""

    for name in ("symbol", "currency"):
        value = getattr(instance, name)
        if isinstance(value, str) and value != value.strip().upper():
            object.__setattr__(instance, name, value.strip().upper())


@dataclass(frozen=True)
class Transaction:
    """A single ledger entry. Quantities are always positive; the type carries the direction."""

    symbol: str
    type: TransactionType
    date: date
    quantity: float
    price_per_unit: float
    currency: str = "USD"
    amount: Optional[float] = None
    fees: float = 0.0
    id: Optional[str] = None

    def __post_init__(self) -> None:
        _normalize_codes(self)

    @property
    def gross_value(self) -> float:
        return self.quantity * self.price_per_unit

    @property
    def is_stock_dividend(self) -> bool:
        return self.type == TransactionType.DIVIDEND and self.quantity > 0

    def cash_amount(self) -> float:
        """Return the cash value carried by a deposit, withdrawal or cash dividend.

        Stock dividends carry no cash. Otherwise ``amount`` wins when present;
        cash dividends recorded with a zero quantity and no amount carry the
        total in ``price_per_unit``.
        """

        if self.is_stock_dividend:
            return 0.0
        if self.amount is not None:
            return self.amount
        if self.type == TransactionType.DIVIDEND:
            return self.price_per_unit
        return self.gross_value


@dataclass(frozen=True)
class SymbolInfo:
    """Descriptor for a tracked symbol."""

    symbol: str
    asset_type: AssetType = AssetType.OTHER
    currency: str = "USD"
    is_custom: bool = False
    holding_type: HoldingType = HoldingType.SECURITY
    last_price: Optional[float] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        _normalize_codes(self)

    @property
    def is_account(self) -> bool:
        return self.holding_type == HoldingType.ACCOUNT


@dataclass(frozen=True)
class Position:
    """Weighted-average position for one symbol as of a date."""

    symbol: str
    quantity: float
    avg_cost: float
    total_cost: float
    dividend_income: float = 0.0

    @property
    def is_closed(self) -> bool:
        return self.quantity <= 0


@dataclass
class Lot:
    """Open FIFO lot."""

    quantity: float
    cost_per_unit: float

    @property
    def cost_total(self) -> float:
        return self.quantity * self.cost_per_unit


__all__ = [
    "ASSET_TYPES",
    "AssetType",
    "HoldingType",
    "Lot",
    "Position",
    "SymbolInfo",
    "Transaction",
    "TransactionType",
]
