"""Price oracle protocol and the per-invocation price resolver.

The resolver never fetches on its own: it asks the injected oracle for a
symbol's full history once, keeps it as a sorted pandas series and answers
"latest price on or before" lookups from memory. A resolver is meant to live
for one engine call; nothing is shared across invocations.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import date
from typing import Any, Iterable, Mapping, Protocol

import pandas as pd

from portfolio_engine.dates import coerce_date
from portfolio_engine.models import SymbolInfo

logger = logging.getLogger(__name__)


class PriceOracle(Protocol):
    """Source of daily prices keyed by date."""

    async def get_price_series(self, symbol: str) -> Mapping[date, float]:
        """Market closes (or account balances) for ``symbol``."""
        ...

    async def get_manual_prices(self, symbol: str) -> Mapping[date, float]:
        """User-entered prices for custom symbols."""
        ...


class InMemoryPriceOracle:
    """Simple price oracle for tests and examples."""

    def __init__(
        self,
        prices: Mapping[str, Mapping[Any, Any]] | None = None,
        manual_prices: Mapping[str, Mapping[Any, Any]] | None = None,
    ):
        self._prices = {symbol.upper(): dict(series) for symbol, series in (prices or {}).items()}
        self._manual = {symbol.upper(): dict(series) for symbol, series in (manual_prices or {}).items()}
        self.calls: list[tuple[str, str]] = []

    def set_price(self, symbol: str, on: date, value: float) -> None:
        self._prices.setdefault(symbol.upper(), {})[on] = value

    def set_manual_price(self, symbol: str, on: date, value: float) -> None:
        self._manual.setdefault(symbol.upper(), {})[on] = value

    async def get_price_series(self, symbol: str) -> Mapping[date, float]:
        self.calls.append(("market", symbol.upper()))
        return dict(self._prices.get(symbol.upper(), {}))

    async def get_manual_prices(self, symbol: str) -> Mapping[date, float]:
        self.calls.append(("manual", symbol.upper()))
        return dict(self._manual.get(symbol.upper(), {}))


def _coerce_price(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


class PriceHistory:
    """Sorted daily prices for one symbol, with as-of lookups."""

    def __init__(self, prices: Mapping[Any, Any] | None = None):
        rows: list[tuple[pd.Timestamp, float]] = []
        for raw_date, raw_value in (prices or {}).items():
            value = _coerce_price(raw_value)
            if value is None:
                continue
            rows.append((pd.Timestamp(coerce_date(raw_date)), value))

        if rows:
            frame = pd.DataFrame(rows, columns=["date", "price"])
            frame = frame.drop_duplicates(subset="date", keep="last").set_index("date").sort_index()
            self._series: pd.Series = frame["price"].astype("float64")
        else:
            self._series = pd.Series(dtype="float64")

    def __len__(self) -> int:
        return len(self._series)

    @property
    def empty(self) -> bool:
        return self._series.empty

    @property
    def first_date(self) -> date | None:
        return None if self.empty else self._series.index[0].date()

    def asof(self, on: date) -> float | None:
        """Latest price dated on or before ``on``; ``None`` before the first quote."""

        if self.empty:
            return None
        stamp = pd.Timestamp(on)
        if stamp < self._series.index[0]:
            return None
        value = self._series.asof(stamp)
        return None if pd.isna(value) else float(value)

    def latest(self) -> float | None:
        if self.empty:
            return None
        return float(self._series.iloc[-1])

    def to_series(self) -> pd.Series:
        return self._series.copy()


class PriceResolver:
    """Resolve prices for symbols through a :class:`PriceOracle`.

    Histories are memoized per ``(symbol, custom)`` on this instance, so a
    series build touches the oracle once per symbol.
    """

    def __init__(self, oracle: PriceOracle, *, memoize: bool = True):
        self.oracle = oracle
        self._memoize = memoize
        self._histories: dict[tuple[str, bool], PriceHistory] = {}

    async def history(self, symbol: str, *, custom: bool = False) -> PriceHistory:
        key = (symbol.upper(), custom)
        if self._memoize and key in self._histories:
            return self._histories[key]

        if custom:
            raw = await self.oracle.get_manual_prices(key[0])
        else:
            raw = await self.oracle.get_price_series(key[0])
        history = PriceHistory(raw)
        logger.debug("Loaded %d %s prices for %s", len(history), "manual" if custom else "market", key[0])

        if self._memoize:
            self._histories[key] = history
        return history

    async def history_for(self, descriptor: SymbolInfo) -> PriceHistory:
        return await self.history(descriptor.symbol, custom=descriptor.is_custom)

    async def prefetch(self, descriptors: Iterable[SymbolInfo]) -> None:
        """Load every distinct symbol's history concurrently."""

        unique: dict[tuple[str, bool], SymbolInfo] = {}
        for descriptor in descriptors:
            unique.setdefault((descriptor.symbol.upper(), descriptor.is_custom), descriptor)
        await asyncio.gather(*(self.history_for(descriptor) for descriptor in unique.values()))

    async def price_at(
        self,
        symbol: str,
        on: date,
        descriptor: SymbolInfo | None = None,
    ) -> float | None:
        """Latest usable price for ``symbol`` on or before ``on``.

        Custom symbols read the manual series; everything else reads the
        market series. For account holdings the number is the balance.
        """

        descriptor = descriptor or SymbolInfo(symbol=symbol)
        history = await self.history(symbol, custom=descriptor.is_custom)
        return history.asof(on)

    async def current_price(self, descriptor: SymbolInfo) -> float | None:
        if not descriptor.is_custom:
            cached = _coerce_price(descriptor.last_price)
            if cached is not None:
                return cached
        history = await self.history_for(descriptor)
        return history.latest()

    @staticmethod
    def position_value(quantity: float, price: float, descriptor: SymbolInfo | None = None) -> float:
        if descriptor is not None and descriptor.is_account:
            return price
        return quantity * price


__all__ = [
    "InMemoryPriceOracle",
    "PriceHistory",
    "PriceOracle",
    "PriceResolver",
]
