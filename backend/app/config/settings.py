from __future__ import annotations

from typing import List

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SymbolConfig(BaseModel):
    symbol: str
    name: str
    type: str = "Stock"


class UpstreamSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MARKETDESK_UPSTREAM_",
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    base_url: str = "https://api.twelvedata.com"
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TWELVE_DATA_API_KEY", "MARKETDESK_UPSTREAM_API_KEY"),
    )
    request_timeout_seconds: float = 10.0
    user_agent: str = "Market-Dashboard/1.0"


class CoordinationSettings(BaseModel):
    freshness_window_seconds: float = 45 * 60
    min_request_interval_seconds: float = 60.0
    breaker_cooldown_seconds: float = 3 * 60
    request_spacing_seconds: float = 5.0
    queue_item_timeout_seconds: float = 30.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MARKETDESK_",
        env_file=("../.env", ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "MARKETDESK_REDIS_URL"),
    )
    log_level: str = "INFO"

    symbols: List[SymbolConfig] = Field(
        default_factory=lambda: [
            SymbolConfig(symbol="SPY", name="SPDR S&P 500 ETF", type="ETF"),
            SymbolConfig(symbol="QQQ", name="Invesco QQQ Trust", type="ETF"),
            SymbolConfig(symbol="AAPL", name="Apple Inc.", type="Stock"),
            SymbolConfig(symbol="MSFT", name="Microsoft Corporation", type="Stock"),
            SymbolConfig(symbol="NVDA", name="NVIDIA Corporation", type="Stock"),
        ]
    )
    snapshot_include_series: bool = False
    series_interval: str = "1min"
    series_outputsize: int = 390
    snapshot_max_age_seconds: float = 5 * 60
    snapshot_stale_after_seconds: float = 10 * 60
    refresh_interval_seconds: float = 0.0

    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    coordination: CoordinationSettings = Field(default_factory=CoordinationSettings)

    @property
    def symbol_list(self) -> list[str]:
        return [item.symbol for item in self.symbols]

    def symbol_info(self, symbol: str) -> SymbolConfig | None:
        for item in self.symbols:
            if item.symbol == symbol:
                return item
        return None


settings = Settings()
