"""Currency conversion through USD pivot quotes."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date

from portfolio_engine.config import EngineSettings, get_settings
from portfolio_engine.core.telemetry import fx_fallback_counter
from portfolio_engine.exceptions import ExchangeRateError, UnsupportedCurrencyError
from portfolio_engine.models import AssetType, SymbolInfo
from portfolio_engine.services.prices import PriceResolver

logger = logging.getLogger(__name__)

PIVOT_CURRENCY = "USD"


def pair_symbol(currency: str) -> str:
    """Pseudo-symbol quoting USD per unit of ``currency`` (e.g. ``EURUSD``)."""

    return f"{currency.upper()}{PIVOT_CURRENCY}"


class CurrencyConverter:
    """Convert amounts between supported currencies for a given date.

    Every non-USD currency is quoted against USD through its ``<CCY>USD``
    pseudo-symbol; cross rates divide the two USD quotes. A conversion that
    cannot be priced degrades to ``1.0`` instead of failing the whole build.
    """

    def __init__(
        self,
        resolver: PriceResolver,
        settings: EngineSettings | None = None,
        symbols: Mapping[str, SymbolInfo] | Iterable[SymbolInfo] | None = None,
    ):
        self.resolver = resolver
        self.settings = settings or get_settings()
        self._supported = {currency.upper() for currency in self.settings.supported_currencies}
        self._fallbacks = {currency.upper(): rate for currency, rate in self.settings.fallback_usd_rates.items()}
        if isinstance(symbols, Mapping):
            self._symbols = {key.upper(): value for key, value in symbols.items()}
        else:
            self._symbols = {info.symbol.upper(): info for info in symbols or ()}

    def _pair_descriptor(self, currency: str) -> SymbolInfo:
        pair = pair_symbol(currency)
        return self._symbols.get(pair) or SymbolInfo(
            symbol=pair, asset_type=AssetType.CURRENCY, currency=PIVOT_CURRENCY
        )

    async def usd_rate(self, currency: str, on: date | None = None) -> float:
        """USD per unit of ``currency`` on ``on`` (or currently when ``on`` is None)."""

        currency = currency.upper()
        if currency == PIVOT_CURRENCY:
            return 1.0
        if currency not in self._supported:
            raise UnsupportedCurrencyError(currency)

        descriptor = self._pair_descriptor(currency)
        if on is None:
            quote = await self.resolver.current_price(descriptor)
        else:
            quote = await self.resolver.price_at(descriptor.symbol, on, descriptor)
        if quote is not None:
            return quote

        fallback = self._fallbacks.get(currency)
        if fallback is None:
            raise ExchangeRateError(f"No {descriptor.symbol} quote and no fallback rate configured")
        logger.debug("No %s quote for %s; using fallback %.4f", descriptor.symbol, on, fallback)
        return fallback

    async def rate(self, from_currency: str, to_currency: str, on: date | None = None) -> float:
        """Multiplier converting ``from_currency`` amounts into ``to_currency``."""

        source = from_currency.upper()
        target = to_currency.upper()
        if source == target:
            return 1.0

        try:
            from_usd = await self.usd_rate(source, on)
            to_usd = await self.usd_rate(target, on)
        except Exception as exc:  # noqa: BLE001 - any lookup failure degrades this one conversion
            reason = "unsupported_currency" if isinstance(exc, UnsupportedCurrencyError) else "lookup_failed"
            logger.warning("Exchange rate %s->%s on %s unavailable (%s); using 1.0", source, target, on, exc)
            fx_fallback_counter.add(1, {"from": source, "to": target, "reason": reason})
            return 1.0
        return from_usd / to_usd

    async def convert(
        self,
        amount: float,
        from_currency: str,
        to_currency: str,
        on: date | None = None,
    ) -> float:
        if not amount:
            return 0.0
        return amount * await self.rate(from_currency, to_currency, on)


__all__ = ["CurrencyConverter", "PIVOT_CURRENCY", "pair_symbol"]
