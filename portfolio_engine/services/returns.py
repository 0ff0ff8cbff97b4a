"""Return metrics over a historical value series.

Realized P&L uses true FIFO lots, independent of the weighted-average cost
kept by the position builder. Time-weighted return chains sub-period returns
between consecutive points; money-weighted return is the XIRR of the ledger's
cash flows solved with Newton's method. All rates are fractions
(``0.10`` == 10 %/yr) except fields named ``*_percentage``.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Deque

import pandas as pd

from portfolio_engine.config import EngineSettings, get_settings
from portfolio_engine.core.telemetry import tracer
from portfolio_engine.dates import years_between
from portfolio_engine.models import Lot, Transaction, TransactionType
from portfolio_engine.schemas import (
    CapitalGainsBreakdown,
    DetailedReturnMetrics,
    DividendIncomeBreakdown,
    HistoricalDataPoint,
    InvestmentSummary,
    RealizedVsUnrealized,
    ReturnMetrics,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CashFlow:
    date: date
    amount: float


@dataclass
class FifoResult:
    realized_pnl: float = 0.0
    lots: dict[str, Deque[Lot]] = field(default_factory=dict)

    @property
    def remaining_cost(self) -> float:
        return sum(lot.cost_total for queue in self.lots.values() for lot in queue)

    @property
    def open_quantity(self) -> float:
        return sum(lot.quantity for queue in self.lots.values() for lot in queue)

    def remaining_quantity(self, symbol: str) -> float:
        return sum(lot.quantity for lot in self.lots.get(symbol, ()))


def _sorted(transactions: Iterable[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda tx: tx.date)


def _is_cash_dividend(tx: Transaction) -> bool:
    return tx.type == TransactionType.DIVIDEND and not tx.is_stock_dividend


def _buy_cost(tx: Transaction) -> float:
    return tx.quantity * tx.price_per_unit + tx.fees


def _sell_proceeds(tx: Transaction) -> float:
    return tx.quantity * tx.price_per_unit - tx.fees


def replay_fifo(
    transactions: Iterable[Transaction],
    start: date | None = None,
    end: date | None = None,
) -> FifoResult:
    """Replay ``transactions`` up to ``end`` through per-symbol FIFO lots.

    Only sells dated within ``[start, end]`` contribute realized P&L; earlier
    sells still consume lots. Sells beyond the open lots are left unmatched.
    """

    result = FifoResult()
    for tx in _sorted(transactions):
        if end is not None and tx.date > end:
            break
        if tx.quantity <= 0:
            continue
        lots = result.lots.setdefault(tx.symbol, deque())

        if tx.type == TransactionType.BUY:
            lots.append(Lot(quantity=tx.quantity, cost_per_unit=tx.price_per_unit + tx.fees / tx.quantity))
        elif tx.type == TransactionType.BONUS or tx.is_stock_dividend:
            lots.append(Lot(quantity=tx.quantity, cost_per_unit=0.0))
        elif tx.type == TransactionType.SELL:
            counts = start is None or tx.date >= start
            sale_price = tx.price_per_unit - tx.fees / tx.quantity
            remaining = tx.quantity
            while remaining > 0 and lots:
                lot = lots[0]
                matched = min(remaining, lot.quantity)
                if counts:
                    result.realized_pnl += matched * (sale_price - lot.cost_per_unit)
                lot.quantity -= matched
                remaining -= matched
                if lot.quantity <= 0:
                    lots.popleft()
            if remaining > 0:
                logger.debug("Sell of %s on %s exceeds open lots by %s", tx.symbol, tx.date, remaining)
    return result


def _twr_flow(tx: Transaction) -> float:
    if tx.type == TransactionType.BUY:
        return _buy_cost(tx)
    if tx.type == TransactionType.SELL:
        return -_sell_proceeds(tx)
    if _is_cash_dividend(tx):
        return -tx.cash_amount()
    return 0.0


def chain_growth(points: Sequence[HistoricalDataPoint], transactions: Iterable[Transaction]) -> float:
    """Compound ``V_end / (V_start + cf)`` over consecutive points.

    ``cf`` nets the flows dated after the earlier point and on or before the
    later one. Sub-periods with a non-positive denominator are skipped.
    """

    flows = [(tx.date, _twr_flow(tx)) for tx in _sorted(transactions)]
    growth = 1.0
    index = 0
    for previous, current in zip(points, points[1:]):
        while index < len(flows) and flows[index][0] <= previous.date:
            index += 1
        cash_flow = 0.0
        while index < len(flows) and flows[index][0] <= current.date:
            cash_flow += flows[index][1]
            index += 1
        denominator = previous.total_value + cash_flow
        if denominator <= 0:
            continue
        growth *= current.total_value / denominator
    return growth


def annualize(growth: float, years: float) -> float:
    if years <= 0:
        return 0.0
    if growth <= 0:
        return -1.0
    return growth ** (1 / years) - 1


def xirr(cash_flows: Sequence[CashFlow], settings: EngineSettings | None = None) -> float:
    """Annualized internal rate of return for dated cash flows.

    Returns 0 when there are fewer than two flows or the flows never change
    sign, since no rate can balance them.
    """

    settings = settings or get_settings()
    flows = sorted((flow for flow in cash_flows if flow.amount), key=lambda flow: flow.date)
    if len(flows) < 2:
        return 0.0
    if all(flow.amount > 0 for flow in flows) or all(flow.amount < 0 for flow in flows):
        return 0.0

    origin = flows[0].date
    timed = [((flow.date - origin).days / settings.days_per_year, flow.amount) for flow in flows]

    rate = settings.xirr_initial_guess
    for _ in range(settings.xirr_max_iterations):
        npv = 0.0
        derivative = 0.0
        for years, amount in timed:
            factor = (1 + rate) ** years
            npv += amount / factor
            derivative -= years * amount / (factor * (1 + rate))
        if abs(npv) < settings.xirr_tolerance:
            return rate
        if derivative == 0:
            break
        rate = min(max(rate - npv / derivative, settings.xirr_min_rate), settings.xirr_max_rate)
    logger.debug("XIRR did not converge; returning %.6f", rate)
    return rate


def money_weighted_flows(
    transactions: Iterable[Transaction],
    points: Sequence[HistoricalDataPoint],
    end: date,
    ending_value: float | None = None,
) -> list[CashFlow]:
    """Investor cash flows for XIRR, closed by the ending value.

    When the ledger starts before the first point, that point's value opens the
    window as an outflow and only later transactions are counted.
    ``ending_value`` defaults to the last point's value.
    """

    first = points[0]
    if ending_value is None:
        ending_value = points[-1].total_value
    ordered = [tx for tx in _sorted(transactions) if tx.date <= end]
    flows: list[CashFlow] = []
    window_start = first.date
    if any(tx.date < first.date for tx in ordered) and first.total_value > 0:
        flows.append(CashFlow(first.date, -first.total_value))
        ordered = [tx for tx in ordered if tx.date > first.date]
    else:
        ordered = [tx for tx in ordered if tx.date >= window_start]

    for tx in ordered:
        if tx.type == TransactionType.BUY:
            amount = -_buy_cost(tx)
        elif tx.type == TransactionType.SELL:
            amount = _sell_proceeds(tx)
        elif tx.type == TransactionType.DEPOSIT:
            amount = -tx.cash_amount()
        elif tx.type == TransactionType.WITHDRAWAL:
            amount = tx.cash_amount()
        elif _is_cash_dividend(tx):
            amount = tx.cash_amount()
        else:
            continue
        if amount:
            flows.append(CashFlow(tx.date, amount))

    if ending_value > 0:
        flows.append(CashFlow(end, ending_value))
    return flows


def annualized_volatility(points: Sequence[HistoricalDataPoint], trading_days: int = 252) -> float:
    """Sample standard deviation of daily returns scaled to a year."""

    values = pd.Series([point.total_value for point in points], dtype="float64")
    previous = values.shift(1)
    mask = previous > 0
    daily = (values[mask] - previous[mask]) / previous[mask]
    if len(daily) < 2:
        return 0.0
    return float(daily.std(ddof=1) * math.sqrt(trading_days))


@dataclass
class _ReturnContext:
    """Intermediate figures shared by the summary and detailed results."""

    points: list[HistoricalDataPoint]
    start: date
    end: date
    ending_value: float
    period_years: float
    realized: float
    unrealized: float
    cost_basis: float
    dividends: float
    total_invested: float
    total_proceeds: float
    total_withdrawn: float
    time_weighted: float
    money_weighted: float

    @property
    def capital_gains(self) -> float:
        return self.realized + self.unrealized

    @property
    def total_pnl(self) -> float:
        return self.capital_gains + self.dividends

    @property
    def total_value(self) -> float:
        return self.ending_value

    def percentage_of_invested(self, amount: float) -> float:
        return amount / self.total_invested * 100 if self.total_invested > 0 else 0.0


def _liquidation_date(
    transactions: Sequence[Transaction],
    last: HistoricalDataPoint,
    horizon: date,
) -> date | None:
    """Date of the final sale when every lot was sold after the last point.

    Whole-portfolio series stop before the day the last holding is sold, so
    such a sale never appears as a zero-value point.
    """

    tail_sells = [
        tx for tx in transactions if tx.type == TransactionType.SELL and last.date < tx.date <= horizon
    ]
    if not tail_sells:
        return None
    if replay_fifo(transactions, end=horizon).open_quantity > 0:
        return None
    return max(tx.date for tx in tail_sells)


def _window(
    historical_series: Iterable[HistoricalDataPoint],
    start_date: date | None,
    end_date: date | None,
) -> list[HistoricalDataPoint]:
    return sorted(
        (
            point
            for point in historical_series
            if (start_date is None or point.date >= start_date) and (end_date is None or point.date <= end_date)
        ),
        key=lambda point: point.date,
    )


def _build_context(
    transactions: Sequence[Transaction],
    historical_series: Iterable[HistoricalDataPoint],
    start_date: date | None,
    end_date: date | None,
    settings: EngineSettings,
) -> _ReturnContext | None:
    points = _window(historical_series, start_date, end_date)
    if len(points) < 2:
        logger.debug("Not enough points for returns (%d)", len(points))
        return None

    first, last = points[0], points[-1]
    horizon = end_date or max((tx.date for tx in transactions), default=last.date)
    liquidated_on = _liquidation_date(transactions, last, horizon)
    # FIFO, flows and the ending value all stop at the same date.
    end = liquidated_on or last.date
    ending_value = 0.0 if liquidated_on else last.total_value

    period_years = years_between(first.date, end, settings.days_per_year)
    if period_years <= 0:
        return None

    start = start_date or first.date
    in_range = [tx for tx in transactions if start <= tx.date <= end]

    fifo = replay_fifo(transactions, start, end)
    cost_basis = fifo.remaining_cost
    dividends = sum(tx.cash_amount() for tx in in_range if _is_cash_dividend(tx))
    total_invested = sum(_buy_cost(tx) for tx in in_range if tx.type == TransactionType.BUY and tx.quantity > 0)
    sell_proceeds = sum(_sell_proceeds(tx) for tx in in_range if tx.type == TransactionType.SELL)
    withdrawals = sum(tx.cash_amount() for tx in in_range if tx.type == TransactionType.WITHDRAWAL)
    total_proceeds = sell_proceeds + dividends

    if ending_value == 0:
        # Fully closed: chained returns degenerate, use proceeds over cost instead.
        growth = total_proceeds / total_invested if total_invested > 0 else 1.0
        time_weighted = annualize(growth, period_years)
    else:
        time_weighted = annualize(chain_growth(points, in_range), period_years)

    money_weighted = xirr(money_weighted_flows(transactions, points, end, ending_value), settings)

    return _ReturnContext(
        points=points,
        start=first.date,
        end=end,
        ending_value=ending_value,
        period_years=period_years,
        realized=fifo.realized_pnl,
        unrealized=ending_value - cost_basis,
        cost_basis=cost_basis,
        dividends=dividends,
        total_invested=total_invested,
        total_proceeds=total_proceeds,
        total_withdrawn=sell_proceeds + withdrawals,
        time_weighted=time_weighted,
        money_weighted=money_weighted,
    )


def _summary_fields(context: _ReturnContext) -> dict[str, object]:
    return {
        "total_value": context.total_value,
        "total_pnl": context.total_pnl,
        "realized_pnl": context.realized,
        "unrealized_pnl": context.unrealized,
        "capital_gains": context.capital_gains,
        "dividends": context.dividends,
        "cost_basis": context.cost_basis,
        "total_invested": context.total_invested,
        "time_weighted_return": context.time_weighted,
        "money_weighted_return": context.money_weighted,
        "total_return_percentage": context.percentage_of_invested(context.total_pnl),
        "start_date": context.start,
        "end_date": context.end,
        "period_years": context.period_years,
    }


def compute_returns(
    transactions: Iterable[Transaction],
    historical_series: Iterable[HistoricalDataPoint],
    start_date: date | None = None,
    end_date: date | None = None,
    *,
    settings: EngineSettings | None = None,
) -> ReturnMetrics:
    """Summarize performance over the points between ``start_date`` and ``end_date``.

    Returns :meth:`ReturnMetrics.empty` when fewer than two points fall in the
    window or the window spans no time.
    """

    settings = settings or get_settings()
    with tracer.start_as_current_span("portfolio_engine.compute_returns"):
        context = _build_context(list(transactions), historical_series, start_date, end_date, settings)
        if context is None:
            return ReturnMetrics.empty()
        return ReturnMetrics(**_summary_fields(context))


def compute_detailed_returns(
    transactions: Iterable[Transaction],
    historical_series: Iterable[HistoricalDataPoint],
    start_date: date | None = None,
    end_date: date | None = None,
    *,
    settings: EngineSettings | None = None,
) -> DetailedReturnMetrics:
    """Like :func:`compute_returns`, with capital-gain, dividend and volatility breakdowns.

    Breakdown ``*_percentage``, ``annualized_rate`` and ``annualized_yield``
    fields are percentages.
    """

    settings = settings or get_settings()
    with tracer.start_as_current_span("portfolio_engine.compute_detailed_returns"):
        context = _build_context(list(transactions), historical_series, start_date, end_date, settings)
        if context is None:
            return DetailedReturnMetrics.empty()

        total_realized = context.realized + context.dividends
        share_base = abs(context.total_pnl) if context.total_pnl > 0 else 0.0
        dividend_yield = (
            context.percentage_of_invested(context.dividends) / context.period_years
            if context.period_years > 0
            else 0.0
        )
        return DetailedReturnMetrics(
            **_summary_fields(context),
            capital_gains_breakdown=CapitalGainsBreakdown(
                realized=context.realized,
                unrealized=context.unrealized,
                realized_percentage=context.percentage_of_invested(context.realized),
                unrealized_percentage=context.percentage_of_invested(context.unrealized),
                annualized_rate=context.time_weighted * 100,
            ),
            dividend_income=DividendIncomeBreakdown(
                total=context.dividends,
                percentage=context.percentage_of_invested(context.dividends),
                annualized_yield=dividend_yield,
            ),
            realized_vs_unrealized=RealizedVsUnrealized(
                total_realized=total_realized,
                total_unrealized=context.unrealized,
                realized_percentage=total_realized / share_base * 100 if share_base else 0.0,
                unrealized_percentage=context.unrealized / share_base * 100 if share_base else 0.0,
            ),
            investment_summary=InvestmentSummary(
                total_invested=context.total_invested,
                current_value=context.total_value,
                total_withdrawn=context.total_withdrawn,
            ),
            annualized_volatility=annualized_volatility(context.points, settings.trading_days_per_year),
        )


__all__ = [
    "CashFlow",
    "FifoResult",
    "annualize",
    "annualized_volatility",
    "chain_growth",
    "compute_detailed_returns",
    "compute_returns",
    "money_weighted_flows",
    "replay_fifo",
    "xirr",
]
