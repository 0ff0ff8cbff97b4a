"""Replay the ledger into weighted-average positions as of a date."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date

from portfolio_engine.models import Position, SymbolInfo, Transaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass
class _PositionState:
    symbol: str
    quantity: float = 0.0
    total_cost: float = 0.0
    avg_cost: float = 0.0
    dividend_income: float = 0.0

    def add_shares(self, quantity: float, price: float) -> None:
        self.quantity += quantity
        self.total_cost += quantity * price
        self.avg_cost = self.total_cost / self.quantity if self.quantity > 0 else 0.0

    def to_position(self) -> Position:
        return Position(
            symbol=self.symbol,
            quantity=self.quantity,
            avg_cost=self.avg_cost,
            total_cost=self.total_cost,
            dividend_income=self.dividend_income,
        )


class PositionBuilder:
    """Mutable replay state for a single ``build_positions`` call."""

    def __init__(self, *, include_closed: bool = False):
        self.include_closed = include_closed
        self._states: dict[str, _PositionState] = {}

    def _state(self, symbol: str) -> _PositionState:
        state = self._states.get(symbol)
        if state is None:
            state = self._states[symbol] = _PositionState(symbol=symbol)
        return state

    def apply(self, tx: Transaction) -> None:
        state = self._state(tx.symbol)

        if tx.type == TransactionType.BUY:
            state.add_shares(tx.quantity, tx.price_per_unit)
        elif tx.type == TransactionType.SELL:
            state.quantity -= tx.quantity
            if state.quantity <= 0:
                if not self.include_closed:
                    del self._states[tx.symbol]
                    return
                state.total_cost = 0.0
                state.avg_cost = 0.0
            else:
                state.total_cost = state.quantity * state.avg_cost
        elif tx.type == TransactionType.DEPOSIT:
            state.total_cost += tx.cash_amount()
        elif tx.type == TransactionType.WITHDRAWAL:
            state.total_cost = max(0.0, state.total_cost - tx.cash_amount())
        elif tx.type in (TransactionType.DIVIDEND, TransactionType.BONUS):
            if tx.type == TransactionType.BONUS or tx.is_stock_dividend:
                state.add_shares(tx.quantity, tx.price_per_unit)
            else:
                state.dividend_income += tx.cash_amount()
        else:  # pragma: no cover - enum is exhaustive
            logger.debug("Ignoring transaction %s of type %s", tx.id, tx.type)

    def positions(self, accounts: set[str] | frozenset[str] = frozenset()) -> list[Position]:
        result: list[Position] = []
        for symbol, state in self._states.items():
            if state.quantity > 0 or self.include_closed or symbol in accounts:
                result.append(state.to_position())
        return result


def _account_symbols(symbols: Mapping[str, SymbolInfo] | Iterable[SymbolInfo] | None) -> set[str]:
    if symbols is None:
        return set()
    infos = symbols.values() if isinstance(symbols, Mapping) else symbols
    return {info.symbol for info in infos if info.is_account}


def build_positions(
    transactions: Iterable[Transaction],
    as_of: date,
    target_symbol: str | None = None,
    include_closed: bool = False,
    symbols: Mapping[str, SymbolInfo] | Iterable[SymbolInfo] | None = None,
) -> list[Position]:
    """Return the positions held at the end of ``as_of``.

    Transactions are replayed in date order (stable for same-day rows). Buys
    and share-bearing dividends/bonuses are averaged into the cost; sells keep
    the average cost and scale the total. A sell that takes the quantity to
    zero or below removes the position unless ``include_closed`` is set, in
    which case it is kept with a zero cost (and a negative quantity if the
    sell exceeded the holding).
    """

    if target_symbol is not None:
        target_symbol = target_symbol.upper()
    relevant = [
        tx
        for tx in transactions
        if tx.date <= as_of and (target_symbol is None or tx.symbol == target_symbol)
    ]
    relevant.sort(key=lambda tx: tx.date)

    builder = PositionBuilder(include_closed=include_closed)
    for tx in relevant:
        builder.apply(tx)
    return builder.positions(_account_symbols(symbols))


__all__ = ["PositionBuilder", "build_positions"]
