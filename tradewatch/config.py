from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


KNOWN_SOURCES = ("binance", "coingecko")


class AppConfig(BaseModel):
    env: str = "dev"
    timezone: str = "UTC"
    log_level: str = "INFO"


class CryptoSeed(BaseModel):
    symbol: str
    name: str


class StorageConfig(BaseModel):
    sqlite_path: str = "./db/tradewatch.db"
    busy_timeout_ms: int = 5000
    seed_cryptocurrencies: List[CryptoSeed] = Field(
        default_factory=lambda: [
            CryptoSeed(symbol="BTC", name="Bitcoin"),
            CryptoSeed(symbol="ETH", name="Ethereum"),
        ]
    )


class MarketDataConfig(BaseModel):
    sources: List[str] = Field(default_factory=lambda: ["binance", "coingecko"])
    binance_rest_base: str = "https://api.binance.com"
    binance_quote_asset: str = "USDT"
    coingecko_base: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: str = ""
    timeout_s: float = 5.0
    cache_ttl_s: float = 60.0
    max_stale_s: float = 300.0
    coingecko_ids: Dict[str, str] = Field(
        default_factory=lambda: {
            "BTC": "bitcoin",
            "ETH": "ethereum",
            "DOGE": "dogecoin",
            "XRP": "ripple",
            "SOL": "solana",
            "ADA": "cardano",
            "DOT": "polkadot",
            "LINK": "chainlink",
            "MATIC": "matic-network",
            "UNI": "uniswap",
            "AAVE": "aave",
            "PEPE": "pepe",
        }
    )

    @model_validator(mode="after")
    def _check_windows(self) -> "MarketDataConfig":
        if not self.sources:
            raise ValueError("market_data.sources must not be empty")
        unknown = [s for s in self.sources if s not in KNOWN_SOURCES]
        if unknown:
            raise ValueError(f"market_data.sources has unknown entries: {unknown}")
        if self.timeout_s <= 0:
            raise ValueError("market_data.timeout_s must be > 0")
        if self.cache_ttl_s <= 0:
            raise ValueError("market_data.cache_ttl_s must be > 0")
        if self.max_stale_s < self.cache_ttl_s:
            raise ValueError("market_data.max_stale_s must be >= cache_ttl_s")
        return self


class AlertsConfig(BaseModel):
    enabled: bool = True
    poll_interval_s: float = 60.0
    default_trade_type: str = "buy"  # buy | sell
    default_trade_amount: float = 0.01

    @field_validator("default_trade_type")
    @classmethod
    def _validate_trade_type(cls, v: str) -> str:
        v = v.lower()
        if v not in ("buy", "sell"):
            raise ValueError("alerts.default_trade_type must be buy or sell")
        return v


class TelegramChannelConfig(BaseModel):
    enabled: bool = False
    token: str = ""
    chat_id: str = ""


class BarkChannelConfig(BaseModel):
    enabled: bool = False
    url: str = ""
    key: str = ""


class WeComChannelConfig(BaseModel):
    enabled: bool = False
    webhook: str = ""


class WebhookChannelConfig(BaseModel):
    enabled: bool = False
    url: str = ""


class NotificationsConfig(BaseModel):
    enabled: bool = True
    dedup_ttl_ms: int = 300000
    timeout_s: float = 10.0
    buffer_size: int = 500
    telegram: TelegramChannelConfig = Field(default_factory=TelegramChannelConfig)
    bark: BarkChannelConfig = Field(default_factory=BarkChannelConfig)
    wecom: WeComChannelConfig = Field(default_factory=WeComChannelConfig)
    webhook: WebhookChannelConfig = Field(default_factory=WebhookChannelConfig)


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    base_path: str = ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("alerts")
    @classmethod
    def _validate_alerts(cls, v: AlertsConfig) -> AlertsConfig:
        if v.poll_interval_s <= 0:
            raise ValueError("alerts.poll_interval_s must be > 0")
        if v.default_trade_amount <= 0:
            raise ValueError("alerts.default_trade_amount must be > 0")
        return v

    @field_validator("storage")
    @classmethod
    def _validate_storage(cls, v: StorageConfig) -> StorageConfig:
        if v.sqlite_path == ":memory:":
            # every unit of work opens its own connection
            raise ValueError("storage.sqlite_path must be a file path")
        if v.busy_timeout_ms < 0:
            raise ValueError("storage.busy_timeout_ms must be >= 0")
        return v


def load_settings(config_path: Optional[str] = None) -> Settings:
    path = Path(config_path or "./configs/config.yaml")
    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    def deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
        for k, v in src.items():
            if isinstance(v, dict) and isinstance(dst.get(k), dict):
                deep_update(dst[k], v)
            else:
                dst[k] = v
        return dst

    def env_overrides() -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        valid_roots = set(Settings.model_fields.keys())
        for key, value in os.environ.items():
            if "__" not in key:
                continue
            parts = [p.strip().lower() for p in key.split("__") if p.strip()]
            if not parts or parts[0] not in valid_roots:
                continue
            cur = out
            for part in parts[:-1]:
                nxt = cur.get(part)
                if not isinstance(nxt, dict):
                    nxt = {}
                    cur[part] = nxt
                cur = nxt
            cur[parts[-1]] = value
        return out

    merged = deep_update(data, env_overrides())
    return Settings(**merged)
