from __future__ import annotations

import math
from datetime import date, timedelta

import pytest

from portfolio_engine.models import AssetType, SymbolInfo, Transaction, TransactionType
from portfolio_engine.schemas import DetailedReturnMetrics, HistoricalDataPoint, ReturnMetrics
from portfolio_engine.services.fx import CurrencyConverter
from portfolio_engine.services.positions import build_positions
from portfolio_engine.services.prices import InMemoryPriceOracle, PriceResolver
from portfolio_engine.services.returns import (
    CashFlow,
    annualize,
    annualized_volatility,
    chain_growth,
    compute_detailed_returns,
    compute_returns,
    replay_fifo,
    xirr,
)
from portfolio_engine.services.series import build_series

DAY0 = date(2023, 1, 2)


def day(offset: int) -> date:
    return DAY0 + timedelta(days=offset)


def tx(type_, offset, quantity=0.0, price=0.0, symbol="AAPL", **kwargs):
    return Transaction(
        symbol=symbol,
        type=type_,
        date=day(offset),
        quantity=quantity,
        price_per_unit=price,
        **kwargs,
    )


def point(offset: int, value: float) -> HistoricalDataPoint:
    return HistoricalDataPoint(date=day(offset), total_value=value)


def test_fifo_consumes_oldest_lots_first():
    ledger = [
        tx(TransactionType.BUY, 0, 10, 100),
        tx(TransactionType.BUY, 1, 10, 120),
        tx(TransactionType.SELL, 2, 12, 150),
    ]
    result = replay_fifo(ledger)
    assert result.realized_pnl == pytest.approx(10 * (150 - 100) + 2 * (150 - 120))
    assert result.realized_pnl == pytest.approx(560)
    assert result.remaining_quantity("AAPL") == pytest.approx(8)
    assert result.remaining_cost == pytest.approx(8 * 120)


def test_fifo_spreads_fees_over_units():
    ledger = [
        tx(TransactionType.BUY, 0, 10, 100, fees=10),
        tx(TransactionType.SELL, 1, 5, 110, fees=5),
    ]
    result = replay_fifo(ledger)
    assert result.realized_pnl == pytest.approx(5 * ((110 - 1) - (100 + 1)))


def test_fifo_only_realizes_sells_inside_the_window():
    ledger = [
        tx(TransactionType.BUY, 0, 10, 100),
        tx(TransactionType.SELL, 5, 4, 130),
        tx(TransactionType.SELL, 20, 4, 140),
        tx(TransactionType.SELL, 40, 2, 150),
    ]
    result = replay_fifo(ledger, start=day(10), end=day(30))
    assert result.realized_pnl == pytest.approx(4 * 40)
    # The later sell is past the window and leaves its lot open.
    assert result.remaining_quantity("AAPL") == pytest.approx(2)


def test_fifo_bonus_and_stock_dividend_lots_enter_at_zero_cost():
    ledger = [
        tx(TransactionType.BUY, 0, 10, 100),
        tx(TransactionType.BONUS, 1, 5, 80),
        tx(TransactionType.DIVIDEND, 2, 2, 90),
    ]
    assert replay_fifo(ledger).remaining_cost == pytest.approx(1000)
    assert replay_fifo(ledger).remaining_quantity("AAPL") == pytest.approx(17)

    result = replay_fifo(ledger + [tx(TransactionType.SELL, 3, 12, 60)])
    assert result.realized_pnl == pytest.approx(10 * (60 - 100) + 2 * 60)
    assert result.remaining_cost == 0


def test_fifo_ignores_unmatched_oversell():
    ledger = [tx(TransactionType.BUY, 0, 5, 100), tx(TransactionType.SELL, 1, 8, 110)]
    result = replay_fifo(ledger)
    assert result.realized_pnl == pytest.approx(50)
    assert result.remaining_cost == 0


def test_xirr_of_ten_percent_year(settings):
    flows = [CashFlow(date(2023, 1, 1), -1000), CashFlow(date(2024, 1, 1), 1100)]
    assert xirr(flows, settings) == pytest.approx(0.10, abs=1e-3)


def test_xirr_without_sign_change_or_enough_flows_is_zero(settings):
    assert xirr([CashFlow(date(2023, 1, 1), -1000)], settings) == 0
    outflows = [CashFlow(date(2023, 1, 1), -1000), CashFlow(date(2023, 6, 1), -500)]
    assert xirr(outflows, settings) == 0


def test_xirr_handles_losses(settings):
    flows = [CashFlow(date(2023, 1, 1), -1000), CashFlow(date(2024, 1, 1), 800)]
    assert xirr(flows, settings) == pytest.approx(-0.2, abs=1e-3)


def test_chain_growth_neutralizes_contributions():
    points = [point(0, 1000), point(1, 2100), point(2, 2310)]
    # The 1000 added on day 1 is a flow, not performance.
    ledger = [tx(TransactionType.BUY, 1, 10, 100)]
    assert chain_growth(points, ledger) == pytest.approx(1.05 * 1.10)


def test_chain_growth_skips_non_positive_denominators():
    points = [point(0, 0), point(1, 1000), point(2, 1100)]
    ledger = [tx(TransactionType.BUY, 0, 10, 100)]
    assert chain_growth(points, ledger) == pytest.approx(1.1)


def test_annualize_guards():
    assert annualize(1.21, 2) == pytest.approx(0.1)
    assert annualize(-0.5, 1) == -1.0
    assert annualize(1.5, 0) == 0.0


def test_annualized_volatility_uses_sample_deviation():
    points = [point(0, 100), point(1, 110), point(2, 99)]
    expected = math.sqrt(0.02) * math.sqrt(252)
    assert annualized_volatility(points) == pytest.approx(expected)
    assert annualized_volatility(points[:2]) == 0.0


def test_not_enough_history_returns_empty_metrics(settings):
    ledger = [tx(TransactionType.BUY, 0, 10, 100)]
    assert compute_returns(ledger, [point(0, 1000)], settings=settings) == ReturnMetrics.empty()
    assert compute_returns(ledger, [], settings=settings).is_empty
    same_day = [point(0, 1000), point(0, 1000)]
    assert compute_returns(ledger, same_day, settings=settings).is_empty


def test_fully_closed_position_uses_proceeds_over_invested(settings):
    ledger = [
        tx(TransactionType.BUY, 0, 10, 100),
        tx(TransactionType.SELL, 365, 10, 121),
    ]
    points = [point(0, 1000), point(180, 1100), point(365, 0)]
    metrics = compute_returns(ledger, points, settings=settings)

    years = 365 / 365.25
    assert metrics.period_years == pytest.approx(years)
    assert metrics.time_weighted_return == pytest.approx(1.21 ** (1 / years) - 1)
    assert metrics.realized_pnl == pytest.approx(210)
    assert metrics.unrealized_pnl == pytest.approx(0)
    assert metrics.total_return_percentage == pytest.approx(21)


async def build_aapl_scenario(settings):
    """Buy 100 @ 100 (fee 10), $25 dividend, sell 25 @ 150 (fee 10), 5 bonus shares."""

    ledger = [
        tx(TransactionType.BUY, 0, 100, 100, fees=10),
        tx(TransactionType.DIVIDEND, 150, 0, 0, amount=25.0),
        tx(TransactionType.SELL, 365, 25, 150, fees=10),
        tx(TransactionType.BONUS, 400, 5, 0),
    ]
    prices = {day(0): 100.0}
    prices.update({day(offset): 150.0 for offset in range(1, 401)})
    symbols = [SymbolInfo(symbol="AAPL", asset_type=AssetType.STOCK)]
    resolver = PriceResolver(InMemoryPriceOracle({"AAPL": prices}))
    converter = CurrencyConverter(resolver, settings, symbols)
    series = await build_series(
        ledger, symbols, "USD", resolver=resolver, converter=converter, end_date=day(400)
    )
    return ledger, series


@pytest.mark.asyncio
async def test_aapl_scenario(settings):
    ledger, series = await build_aapl_scenario(settings)

    position = build_positions(ledger, day(400))[0]
    assert position.quantity == pytest.approx(80)

    metrics = compute_returns(ledger, series, settings=settings)
    assert not metrics.is_empty
    assert metrics.start_date == day(0)
    assert metrics.end_date == day(400)
    assert metrics.period_years == pytest.approx(1.1, abs=0.01)
    assert metrics.realized_pnl == pytest.approx(25 * ((150 - 0.4) - (100 + 0.1)))
    assert metrics.dividends == pytest.approx(25)
    assert metrics.total_value == pytest.approx(80 * 150)
    assert metrics.cost_basis == pytest.approx(75 * 100.1)
    assert metrics.unrealized_pnl == pytest.approx(80 * 150 - 75 * 100.1)
    assert metrics.total_invested == pytest.approx(10_010)
    assert metrics.total_pnl == pytest.approx(metrics.capital_gains + 25)
    assert metrics.total_return_percentage == pytest.approx(metrics.total_pnl / 10_010 * 100)
    assert metrics.time_weighted_return > 0
    assert metrics.money_weighted_return > 0


@pytest.mark.asyncio
async def test_aapl_scenario_detailed_breakdown(settings):
    ledger, series = await build_aapl_scenario(settings)
    detailed = compute_detailed_returns(ledger, series, settings=settings)

    assert isinstance(detailed, DetailedReturnMetrics)
    assert detailed.capital_gains_breakdown.realized == pytest.approx(1237.5)
    assert detailed.dividend_income.total == pytest.approx(25)
    assert detailed.dividend_income.percentage == pytest.approx(25 / 10_010 * 100)
    assert detailed.realized_vs_unrealized.total_realized == pytest.approx(1262.5)
    assert detailed.investment_summary.current_value == pytest.approx(12_000)
    assert detailed.investment_summary.total_withdrawn == pytest.approx(25 * 150 - 10)
    assert detailed.annualized_volatility > 0


def test_window_limits_the_points_considered(settings):
    ledger = [tx(TransactionType.BUY, 0, 10, 100)]
    points = [point(offset, 1000 + offset) for offset in range(0, 100)]
    metrics = compute_returns(ledger, points, start_date=day(10), end_date=day(50), settings=settings)

    assert metrics.start_date == day(10)
    assert metrics.end_date == day(50)
    assert metrics.total_value == pytest.approx(1050)
    # The buy predates the window, so nothing was invested inside it.
    assert metrics.total_invested == 0
    assert metrics.money_weighted_return > 0


@pytest.mark.asyncio
async def test_liquidated_portfolio_ends_at_the_final_sale(settings):
    ledger = [
        tx(TransactionType.BUY, 0, 10, 100),
        tx(TransactionType.BUY, 0, 5, 200, symbol="MSFT"),
        tx(TransactionType.SELL, 5, 10, 120),
        tx(TransactionType.SELL, 8, 5, 220, symbol="MSFT"),
    ]
    prices = {
        "AAPL": {day(0): 100.0, day(5): 120.0},
        "MSFT": {day(0): 200.0, day(8): 220.0},
    }
    symbols = [
        SymbolInfo(symbol="AAPL", asset_type=AssetType.STOCK),
        SymbolInfo(symbol="MSFT", asset_type=AssetType.STOCK),
    ]
    resolver = PriceResolver(InMemoryPriceOracle(prices))
    converter = CurrencyConverter(resolver, settings, symbols)
    series = await build_series(ledger, symbols, "USD", resolver=resolver, converter=converter, end_date=day(20))

    # The whole-portfolio series stops before the last holding is sold.
    assert series[-1].date == day(7)
    assert series[-1].total_value > 0

    metrics = compute_returns(ledger, series, settings=settings)
    assert metrics.end_date == day(8)
    assert metrics.total_value == 0
    assert metrics.realized_pnl == pytest.approx(200 + 100)
    assert metrics.unrealized_pnl == 0
    assert metrics.total_pnl == pytest.approx(300)
    assert metrics.total_return_percentage == pytest.approx(15)
    assert metrics.time_weighted_return == pytest.approx(annualize(2300 / 2000, 8 / 365.25))
    assert metrics.money_weighted_return > 0
