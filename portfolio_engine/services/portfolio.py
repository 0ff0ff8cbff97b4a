"""Portfolio facade wiring a ledger store and a price oracle to the engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import date
from typing import Any, Protocol

from portfolio_engine.config import EngineSettings, get_settings
from portfolio_engine.dates import today_utc
from portfolio_engine.models import Position, SymbolInfo, Transaction
from portfolio_engine.schemas import (
    DetailedReturnMetrics,
    HistoricalDataPoint,
    PortfolioSummary,
    PositionSummary,
    ReturnMetrics,
    SymbolRecord,
    TransactionRecord,
)
from portfolio_engine.services.fx import CurrencyConverter
from portfolio_engine.services.positions import build_positions
from portfolio_engine.services.prices import PriceOracle, PriceResolver
from portfolio_engine.services.returns import compute_detailed_returns, compute_returns
from portfolio_engine.services.series import build_series
from portfolio_engine.services.timeranges import TimeRange, aggregate_by_time_range, filter_by_time_range

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    """Read access to a user's transactions and symbol descriptors."""

    async def get_transactions(self, user_id: str) -> Sequence[Transaction]:
        ...

    async def get_symbols(self, user_id: str) -> Sequence[SymbolInfo]:
        ...


class InMemoryLedgerStore:
    """Ledger kept in memory; raw rows are validated through the pydantic records."""

    def __init__(self) -> None:
        self._transactions: dict[str, list[Transaction]] = {}
        self._symbols: dict[str, dict[str, SymbolInfo]] = {}

    def add_transaction(self, user_id: str, transaction: Transaction | Mapping[str, Any]) -> Transaction:
        if not isinstance(transaction, Transaction):
            transaction = TransactionRecord.model_validate(transaction).to_domain()
        self._transactions.setdefault(user_id, []).append(transaction)
        return transaction

    def add_transactions(self, user_id: str, transactions: Iterable[Transaction | Mapping[str, Any]]) -> None:
        for transaction in transactions:
            self.add_transaction(user_id, transaction)

    def add_symbol(self, user_id: str, symbol: SymbolInfo | Mapping[str, Any]) -> SymbolInfo:
        if not isinstance(symbol, SymbolInfo):
            symbol = SymbolRecord.model_validate(symbol).to_domain()
        self._symbols.setdefault(user_id, {})[symbol.symbol] = symbol
        return symbol

    async def get_transactions(self, user_id: str) -> Sequence[Transaction]:
        return list(self._transactions.get(user_id, []))

    async def get_symbols(self, user_id: str) -> Sequence[SymbolInfo]:
        return list(self._symbols.get(user_id, {}).values())


class PortfolioEngine:
    """Entry point for positions, history and returns of one user's ledger.

    A fresh :class:`PriceResolver` and :class:`CurrencyConverter` are built
    for every call, so no price data leaks between requests.
    """

    def __init__(self, ledger: LedgerStore, oracle: PriceOracle, settings: EngineSettings | None = None):
        self.ledger = ledger
        self.oracle = oracle
        self.settings = settings or get_settings()

    def _collaborators(self, symbols: Sequence[SymbolInfo]) -> tuple[PriceResolver, CurrencyConverter]:
        resolver = PriceResolver(self.oracle)
        return resolver, CurrencyConverter(resolver, self.settings, symbols)

    async def _load(self, user_id: str) -> tuple[list[Transaction], list[SymbolInfo]]:
        transactions, symbols = await asyncio.gather(
            self.ledger.get_transactions(user_id),
            self.ledger.get_symbols(user_id),
        )
        return list(transactions), list(symbols)

    async def get_positions(
        self,
        user_id: str,
        *,
        target_currency: str | None = None,
        as_of: date | None = None,
    ) -> PortfolioSummary:
        """Open positions valued at current prices (or at ``as_of`` when given)."""

        currency = (target_currency or self.settings.base_currency).upper()
        transactions, symbols = await self._load(user_id)
        symbol_map = {info.symbol: info for info in symbols}
        resolver, converter = self._collaborators(symbols)

        positions = build_positions(transactions, as_of or today_utc(), symbols=symbols)
        descriptors = [symbol_map.get(position.symbol) or SymbolInfo(symbol=position.symbol) for position in positions]
        await resolver.prefetch(descriptors)

        async def summarize(position: Position, descriptor: SymbolInfo) -> PositionSummary:
            if as_of is None:
                price = await resolver.current_price(descriptor)
            else:
                price = await resolver.price_at(descriptor.symbol, as_of, descriptor)
            rate = await converter.rate(descriptor.currency, currency, as_of)
            total_cost = position.total_cost * rate
            value = 0.0
            unrealized = 0.0
            if price is not None:
                value = resolver.position_value(position.quantity, price, descriptor) * rate
                unrealized = value - total_cost
            else:
                logger.warning("No current price for %s; reporting zero value", descriptor.symbol)
            return PositionSummary(
                symbol=position.symbol,
                asset_type=descriptor.asset_type,
                currency=currency,
                quantity=position.quantity,
                avg_cost=position.avg_cost * rate,
                total_cost=total_cost,
                dividend_income=position.dividend_income * rate,
                current_price=None if price is None else price * rate,
                value=value,
                unrealized_pnl=unrealized,
                is_custom=descriptor.is_custom,
                is_account=descriptor.is_account,
            )

        summaries = await asyncio.gather(
            *(summarize(position, descriptor) for position, descriptor in zip(positions, descriptors))
        )
        total_value = sum(summary.value for summary in summaries)
        total_cost = sum(summary.total_cost for summary in summaries)
        return PortfolioSummary(
            currency=currency,
            as_of=as_of or today_utc(),
            total_value=total_value,
            total_cost=total_cost,
            unrealized_pnl=total_value - total_cost,
            positions=list(summaries),
        )

    async def get_historical_data(
        self,
        user_id: str,
        *,
        symbol: str | None = None,
        target_currency: str | None = None,
        time_range: TimeRange | str | None = None,
        end_date: date | None = None,
    ) -> list[HistoricalDataPoint]:
        """Daily series for the portfolio or one holding, optionally ranged and bucketed."""

        currency = (target_currency or self.settings.base_currency).upper()
        transactions, symbols = await self._load(user_id)
        resolver, converter = self._collaborators(symbols)
        series = await build_series(
            transactions,
            symbols,
            currency,
            resolver=resolver,
            converter=converter,
            target_symbol=symbol,
            end_date=end_date,
        )
        if time_range is None:
            return series

        filtered = filter_by_time_range(series, time_range, end_date)
        return aggregate_by_time_range(filtered, time_range)

    async def get_returns(
        self,
        user_id: str,
        *,
        symbol: str | None = None,
        target_currency: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        detailed: bool = False,
    ) -> ReturnMetrics | DetailedReturnMetrics:
        """Return metrics in ``target_currency`` for the portfolio or one holding."""

        currency = (target_currency or self.settings.base_currency).upper()
        transactions, symbols = await self._load(user_id)
        if symbol is not None:
            symbol = symbol.upper()
            transactions = [tx for tx in transactions if tx.symbol == symbol]
        resolver, converter = self._collaborators(symbols)

        series = await build_series(
            transactions,
            symbols,
            currency,
            resolver=resolver,
            converter=converter,
            target_symbol=symbol,
            end_date=end_date,
        )
        converted = await convert_transactions(transactions, currency, converter)
        logger.debug("Computing returns for %s over %d points in %s", symbol or "portfolio", len(series), currency)

        calculate = compute_detailed_returns if detailed else compute_returns
        return calculate(converted, series, start_date, end_date, settings=self.settings)


async def convert_transactions(
    transactions: Sequence[Transaction],
    target_currency: str,
    converter: CurrencyConverter,
) -> list[Transaction]:
    """Restate monetary fields in ``target_currency`` at each transaction's own date."""

    async def convert(tx: Transaction) -> Transaction:
        rate = await converter.rate(tx.currency, target_currency, tx.date)
        if rate == 1.0 and tx.currency.upper() == target_currency:
            return tx
        return replace(
            tx,
            price_per_unit=tx.price_per_unit * rate,
            fees=tx.fees * rate,
            amount=None if tx.amount is None else tx.amount * rate,
            currency=target_currency,
        )

    return list(await asyncio.gather(*(convert(tx) for tx in transactions)))


__all__ = ["InMemoryLedgerStore", "LedgerStore", "PortfolioEngine", "convert_transactions"]
