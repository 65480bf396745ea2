from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..models import Quote


logger = logging.getLogger(__name__)


class BinanceRestClient:
    name = "binance"

    def __init__(
        self,
        base_url: str,
        quote_asset: str = "USDT",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._quote_asset = quote_asset.upper()
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "BinanceRestClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        client = self._ensure_client()
        resp = await client.get(
            "/api/v3/ticker/24hr", params={"symbol": f"{symbol}{self._quote_asset}"}
        )
        resp.raise_for_status()
        return resp.json()

    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        wanted = list(dict.fromkeys(symbols))
        results = await asyncio.gather(
            *(self.fetch_ticker(s) for s in wanted), return_exceptions=True
        )
        now = time.time()
        quotes: Dict[str, Quote] = {}
        for symbol, raw in zip(wanted, results):
            if isinstance(raw, BaseException):
                logger.warning("Binance ticker failed for %s: %s", symbol, raw)
                continue
            try:
                quotes[symbol] = Quote(
                    symbol=symbol,
                    price=float(raw["lastPrice"]),
                    change_24h=float(raw.get("priceChangePercent", 0.0)),
                    fetched_at=now,
                    source=self.name,
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Binance ticker malformed for %s: %r", symbol, raw)
        return quotes

    async def ping(self) -> bool:
        client = self._ensure_client()
        resp = await client.get("/api/v3/ping")
        resp.raise_for_status()
        return True


class CoinGeckoClient:
    name = "coingecko"

    def __init__(
        self,
        base_url: str,
        ids: Dict[str, str],
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._ids = {k.upper(): v for k, v in ids.items()}
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"x-cg-demo-api-key": self._api_key} if self._api_key else None
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def coin_id(self, symbol: str) -> str:
        return self._ids.get(symbol.upper(), symbol.lower())

    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        wanted: List[str] = list(dict.fromkeys(symbols))
        if not wanted:
            return {}
        by_id = {self.coin_id(s): s for s in wanted}
        client = self._ensure_client()
        resp = await client.get(
            "/simple/price",
            params={
                "ids": ",".join(by_id.keys()),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
            },
        )
        resp.raise_for_status()
        data = resp.json()
        now = time.time()
        quotes: Dict[str, Quote] = {}
        for coin_id, symbol in by_id.items():
            entry = data.get(coin_id)
            if not entry or entry.get("usd") is None:
                continue
            quotes[symbol] = Quote(
                symbol=symbol,
                price=float(entry["usd"]),
                change_24h=float(entry.get("usd_24h_change") or 0.0),
                fetched_at=now,
                source=self.name,
            )
        return quotes

    async def ping(self) -> bool:
        client = self._ensure_client()
        resp = await client.get("/ping")
        resp.raise_for_status()
        return True
