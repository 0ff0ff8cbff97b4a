"""Daily portfolio / holding value series in a target currency.

For every calendar day from the first relevant transaction to ``end_date`` the
ledger is replayed into positions, each position is priced and converted
concurrently, and the results are bucketed by asset type. Days are processed
sequentially; all mutable state lives inside one ``build_series`` call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date

from portfolio_engine.core.telemetry import missing_price_counter, tracer
from portfolio_engine.dates import iter_days, today_utc
from portfolio_engine.models import ASSET_TYPES, AssetType, Position, SymbolInfo, Transaction, TransactionType
from portfolio_engine.schemas import HistoricalDataPoint
from portfolio_engine.services.fx import CurrencyConverter
from portfolio_engine.services.positions import build_positions
from portfolio_engine.services.prices import PriceResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Valuation:
    symbol: str
    asset_type: str
    value: float | None
    cost_basis: float


def _symbol_map(symbols: Mapping[str, SymbolInfo] | Iterable[SymbolInfo]) -> dict[str, SymbolInfo]:
    infos = symbols.values() if isinstance(symbols, Mapping) else symbols
    return {info.symbol: info for info in infos}


def _asset_bucket(descriptor: SymbolInfo) -> str:
    raw = getattr(descriptor.asset_type, "value", descriptor.asset_type)
    return raw if raw in ASSET_TYPES else AssetType.OTHER.value


class _MissingPriceTracker:
    """Warn once per symbol, count every miss."""

    def __init__(self) -> None:
        self._warned: set[str] = set()

    def record(self, symbol: str, on: date) -> None:
        missing_price_counter.add(1, {"symbol": symbol})
        if symbol in self._warned:
            logger.debug("No price for %s on %s", symbol, on)
            return
        self._warned.add(symbol)
        logger.warning("No price for %s on %s; excluding it from the value until one is available", symbol, on)


async def _value_position(
    position: Position,
    descriptor: SymbolInfo,
    on: date,
    target_currency: str,
    resolver: PriceResolver,
    converter: CurrencyConverter,
) -> _Valuation:
    price = await resolver.price_at(position.symbol, on, descriptor)
    rate = await converter.rate(descriptor.currency, target_currency, on)
    value = None
    if price is not None:
        value = resolver.position_value(position.quantity, price, descriptor) * rate
    return _Valuation(
        symbol=position.symbol,
        asset_type=_asset_bucket(descriptor),
        value=value,
        cost_basis=position.total_cost * rate,
    )


async def _dividend_events(
    transactions: Sequence[Transaction],
    target_currency: str,
    converter: CurrencyConverter,
) -> list[tuple[date, float]]:
    cash_dividends = [tx for tx in transactions if tx.type == TransactionType.DIVIDEND and not tx.is_stock_dividend]

    async def convert(tx: Transaction) -> tuple[date, float]:
        return tx.date, await converter.convert(tx.cash_amount(), tx.currency, target_currency, tx.date)

    events = await asyncio.gather(*(convert(tx) for tx in cash_dividends))
    return sorted(events, key=lambda event: event[0])


def _build_point(
    on: date,
    valuations: Sequence[_Valuation],
    cumulative_dividends: float,
    single_holding: bool,
) -> HistoricalDataPoint:
    values = {asset_type: 0.0 for asset_type in ASSET_TYPES}
    total_value = 0.0
    for valuation in valuations:
        if valuation.value is None:
            continue
        values[valuation.asset_type] += valuation.value
        total_value += valuation.value

    allocations = {asset_type: 0.0 for asset_type in ASSET_TYPES}
    if single_holding:
        bucket = valuations[0].asset_type
        values = {asset_type: 0.0 for asset_type in ASSET_TYPES}
        values[bucket] = total_value
        allocations[bucket] = 100.0
    elif total_value > 0:
        for asset_type, value in values.items():
            allocations[asset_type] = value / total_value * 100

    return HistoricalDataPoint(
        date=on,
        total_value=total_value,
        asset_type_values=values,
        asset_type_allocations=allocations,
        cost_basis=sum(valuation.cost_basis for valuation in valuations),
        cumulative_dividends=cumulative_dividends,
    )


async def build_series(
    transactions: Iterable[Transaction],
    symbols: Mapping[str, SymbolInfo] | Iterable[SymbolInfo],
    target_currency: str,
    *,
    resolver: PriceResolver,
    converter: CurrencyConverter,
    target_symbol: str | None = None,
    end_date: date | None = None,
) -> list[HistoricalDataPoint]:
    """Build one :class:`HistoricalDataPoint` per priced day.

    Whole-portfolio series drop closed positions, so the series stops once
    everything is sold. Single-holding series (``target_symbol``) keep the
    closed position and continue at zero value.
    """

    target_currency = target_currency.upper()
    if target_symbol is not None:
        target_symbol = target_symbol.upper()
    symbol_map = _symbol_map(symbols)
    relevant = sorted(
        (tx for tx in transactions if target_symbol is None or tx.symbol == target_symbol),
        key=lambda tx: tx.date,
    )
    if not relevant:
        return []

    start = relevant[0].date
    end = end_date or today_utc()
    if start > end:
        return []

    with tracer.start_as_current_span("portfolio_engine.build_series") as span:
        span.set_attribute("portfolio_engine.target_currency", target_currency)
        span.set_attribute("portfolio_engine.target_symbol", target_symbol or "")
        span.set_attribute("portfolio_engine.transactions", len(relevant))

        descriptors = {tx.symbol: symbol_map.get(tx.symbol) or SymbolInfo(symbol=tx.symbol) for tx in relevant}
        await resolver.prefetch(descriptors.values())
        dividends = await _dividend_events(relevant, target_currency, converter)

        include_closed = target_symbol is not None
        accounts = [info for info in descriptors.values() if info.is_account]
        missing = _MissingPriceTracker()
        points: list[HistoricalDataPoint] = []
        dividend_index = 0
        cumulative_dividends = 0.0

        for day in iter_days(start, end):
            while dividend_index < len(dividends) and dividends[dividend_index][0] <= day:
                cumulative_dividends += dividends[dividend_index][1]
                dividend_index += 1

            positions = build_positions(relevant, day, target_symbol, include_closed, accounts)
            if not positions:
                continue

            valuations = await asyncio.gather(
                *(
                    _value_position(
                        position, descriptors[position.symbol], day, target_currency, resolver, converter
                    )
                    for position in positions
                )
            )
            for valuation in valuations:
                if valuation.value is None:
                    missing.record(valuation.symbol, day)
            if all(valuation.value is None for valuation in valuations):
                logger.debug("Skipping %s: no priced positions", day)
                continue

            single_holding = target_symbol is not None and len(positions) == 1
            points.append(_build_point(day, valuations, cumulative_dividends, single_holding))

        span.set_attribute("portfolio_engine.points", len(points))
        logger.debug("Built %d points from %s to %s in %s", len(points), start, end, target_currency)
        return points


__all__ = ["build_series"]
