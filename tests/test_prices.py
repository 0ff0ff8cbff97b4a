from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from portfolio_engine.models import HoldingType, SymbolInfo
from portfolio_engine.services.prices import InMemoryPriceOracle, PriceHistory, PriceResolver


def test_history_ignores_unusable_prices():
    history = PriceHistory(
        {
            date(2024, 1, 1): 10,
            date(2024, 1, 2): 0,
            date(2024, 1, 3): -4,
            date(2024, 1, 4): "n/a",
            date(2024, 1, 5): float("nan"),
            date(2024, 1, 6): "12.5",
            date(2024, 1, 7): Decimal("13.25"),
            date(2024, 1, 8): None,
        }
    )
    assert len(history) == 3
    assert history.asof(date(2024, 1, 5)) == pytest.approx(10)
    assert history.asof(date(2024, 1, 6)) == pytest.approx(12.5)
    assert history.latest() == pytest.approx(13.25)


def test_history_asof_is_none_before_first_quote_and_carries_forward():
    history = PriceHistory({date(2024, 1, 10): 100, date(2024, 1, 3): 90})
    assert history.first_date == date(2024, 1, 3)
    assert history.asof(date(2024, 1, 2)) is None
    assert history.asof(date(2024, 1, 3)) == pytest.approx(90)
    assert history.asof(date(2024, 1, 9)) == pytest.approx(90)
    assert history.asof(date(2024, 2, 1)) == pytest.approx(100)


def test_empty_history():
    history = PriceHistory({})
    assert history.empty
    assert history.asof(date(2024, 1, 1)) is None
    assert history.latest() is None


def test_history_accepts_iso_string_keys():
    history = PriceHistory({"2024-01-05": 7.0})
    assert history.asof(date(2024, 1, 5)) == pytest.approx(7.0)


@pytest.mark.asyncio
async def test_resolver_memoizes_histories():
    oracle = InMemoryPriceOracle({"AAPL": {date(2024, 1, 1): 100, date(2024, 1, 5): 110}})
    resolver = PriceResolver(oracle)

    assert await resolver.price_at("AAPL", date(2024, 1, 3)) == pytest.approx(100)
    assert await resolver.price_at("AAPL", date(2024, 1, 6)) == pytest.approx(110)
    assert oracle.calls == [("market", "AAPL")]


@pytest.mark.asyncio
async def test_resolver_without_memoization_asks_every_time():
    oracle = InMemoryPriceOracle({"AAPL": {date(2024, 1, 1): 100}})
    resolver = PriceResolver(oracle, memoize=False)

    await resolver.price_at("AAPL", date(2024, 1, 3))
    await resolver.price_at("AAPL", date(2024, 1, 3))
    assert len(oracle.calls) == 2


@pytest.mark.asyncio
async def test_custom_symbols_read_manual_prices():
    oracle = InMemoryPriceOracle(
        prices={"HOUSE": {date(2024, 1, 1): 999}},
        manual_prices={"HOUSE": {date(2024, 1, 1): 250_000}},
    )
    resolver = PriceResolver(oracle)
    house = SymbolInfo(symbol="HOUSE", is_custom=True)

    assert await resolver.price_at("HOUSE", date(2024, 3, 1), house) == pytest.approx(250_000)
    assert await resolver.price_at("HOUSE", date(2023, 12, 31), house) is None


@pytest.mark.asyncio
async def test_current_price_prefers_cached_last_price_for_market_symbols():
    oracle = InMemoryPriceOracle(
        prices={"AAPL": {date(2024, 1, 1): 100}},
        manual_prices={"HOUSE": {date(2024, 1, 1): 200, date(2024, 2, 1): 210}},
    )
    resolver = PriceResolver(oracle)

    assert await resolver.current_price(SymbolInfo(symbol="AAPL", last_price=123.0)) == pytest.approx(123)
    assert await resolver.current_price(SymbolInfo(symbol="AAPL")) == pytest.approx(100)
    custom = SymbolInfo(symbol="HOUSE", is_custom=True, last_price=1.0)
    assert await resolver.current_price(custom) == pytest.approx(210)


@pytest.mark.asyncio
async def test_prefetch_loads_each_symbol_once():
    oracle = InMemoryPriceOracle({"AAPL": {date(2024, 1, 1): 1}, "MSFT": {date(2024, 1, 1): 2}})
    resolver = PriceResolver(oracle)
    descriptors = [SymbolInfo(symbol="AAPL"), SymbolInfo(symbol="MSFT"), SymbolInfo(symbol="AAPL")]

    await resolver.prefetch(descriptors)
    await resolver.price_at("MSFT", date(2024, 1, 2))

    assert sorted(oracle.calls) == [("market", "AAPL"), ("market", "MSFT")]


def test_account_value_is_the_balance():
    account = SymbolInfo(symbol="SAVINGS", holding_type=HoldingType.ACCOUNT)
    assert PriceResolver.position_value(0, 5000.0, account) == 5000.0
    assert PriceResolver.position_value(3, 10.0, SymbolInfo(symbol="AAPL")) == 30.0
