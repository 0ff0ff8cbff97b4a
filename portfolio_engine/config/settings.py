"""Engine configuration and environment helpers."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_CURRENCY = "USD"
DEFAULT_FALLBACK_USD_RATES = {"EUR": 1.0856, "GBP": 1.2845}


class EngineSettings(BaseSettings):
    """Configuration options for the valuation and return engine."""

    model_config = SettingsConfigDict(
        env_prefix="PORTFOLIO_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field(default="Portfolio Valuation Engine")
    base_currency: str = Field(default=DEFAULT_BASE_CURRENCY)
    supported_currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP"])
    fallback_usd_rates: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_FALLBACK_USD_RATES),
        description="USD per unit of currency used when no CCYUSD quote is available.",
    )

    days_per_year: float = Field(default=365.25, gt=0)
    trading_days_per_year: int = Field(default=252, gt=0)

    xirr_max_iterations: int = Field(default=100, gt=0)
    xirr_tolerance: float = Field(default=1e-6, gt=0)
    xirr_initial_guess: float = Field(default=0.1)
    xirr_min_rate: float = Field(default=-0.99)
    xirr_max_rate: float = Field(default=10.0)

    log_level: str = Field(default="INFO")

    telemetry_enabled: bool = Field(default=False)
    telemetry_service_name: str = Field(default="portfolio-engine")
    telemetry_otlp_endpoint: str | None = Field(default=None)
    telemetry_otlp_insecure: bool = Field(default=True)
    telemetry_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    telemetry_metric_interval_ms: int = Field(default=10000, gt=0)

    def dict_for_logging(self) -> dict[str, Any]:
        """Return a sanitized dict for logging purposes."""

        hidden = {"telemetry_otlp_endpoint"}
        return {k: ("***" if k in hidden and v else v) for k, v in self.model_dump().items()}


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> EngineSettings:
    """Return cached engine settings with optional overrides."""

    if overrides:
        return EngineSettings(**overrides)
    return EngineSettings()


__all__ = [
    "EngineSettings",
    "DEFAULT_BASE_CURRENCY",
    "DEFAULT_FALLBACK_USD_RATES",
    "get_settings",
]
