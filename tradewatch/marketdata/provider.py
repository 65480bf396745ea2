from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

import httpx

from ..config import MarketDataConfig
from ..errors import QuoteUnavailable
from ..models import Quote, normalize_symbol
from .rest import BinanceRestClient, CoinGeckoClient


logger = logging.getLogger(__name__)


class MarketDataProvider:
    """Read-through quote cache over an ordered list of upstream sources.

    A source is anything with ``name``, ``async fetch_quotes(symbols)``,
    ``async ping()`` and ``async aclose()``. Sources are tried in order for the
    symbols still missing; each call is bounded by ``timeout_s``. When every
    source fails, a cached quote younger than ``max_stale_s`` is served instead.
    """

    def __init__(
        self,
        sources: List,
        cache_ttl_s: float = 60.0,
        max_stale_s: float = 300.0,
        timeout_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not sources:
            raise ValueError("MarketDataProvider needs at least one source")
        self._sources = list(sources)
        self._cache_ttl_s = cache_ttl_s
        self._max_stale_s = max_stale_s
        self._timeout_s = timeout_s
        self._clock = clock
        self._cache: Dict[str, Quote] = {}

    @classmethod
    def from_config(
        cls, cfg: MarketDataConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "MarketDataProvider":
        sources = []
        for name in cfg.sources:
            if name == "binance":
                sources.append(
                    BinanceRestClient(
                        cfg.binance_rest_base,
                        quote_asset=cfg.binance_quote_asset,
                        timeout=cfg.timeout_s,
                        transport=transport,
                    )
                )
            elif name == "coingecko":
                sources.append(
                    CoinGeckoClient(
                        cfg.coingecko_base,
                        ids=cfg.coingecko_ids,
                        api_key=cfg.coingecko_api_key,
                        timeout=cfg.timeout_s,
                        transport=transport,
                    )
                )
        return cls(
            sources,
            cache_ttl_s=cfg.cache_ttl_s,
            max_stale_s=cfg.max_stale_s,
            timeout_s=cfg.timeout_s,
        )

    @property
    def source_names(self) -> List[str]:
        return [s.name for s in self._sources]

    def cached(self, symbol: str) -> Optional[Quote]:
        return self._cache.get(symbol.upper())

    async def get_current_price(self, symbol: str) -> Quote:
        symbol = normalize_symbol(symbol)
        quotes = await self.get_current_prices([symbol])
        return quotes[symbol]

    async def get_current_prices(
        self, symbols: Iterable[str], allow_partial: bool = False
    ) -> Dict[str, Quote]:
        """Return a quote per symbol.

        Raises ``QuoteUnavailable`` naming every symbol without a usable quote,
        unless ``allow_partial`` is set, in which case those symbols are omitted.
        """
        wanted = list(dict.fromkeys(normalize_symbol(s) for s in symbols))
        now = self._clock()
        result: Dict[str, Quote] = {}
        missing: List[str] = []
        for symbol in wanted:
            cached = self._cache.get(symbol)
            if cached is not None and cached.age(now) < self._cache_ttl_s:
                result[symbol] = cached
            else:
                missing.append(symbol)

        for source in self._sources:
            if not missing:
                break
            fetched = await self._fetch_from(source, missing)
            for symbol, quote in fetched.items():
                if symbol not in missing or quote.price <= 0:
                    continue
                self._cache[symbol] = quote
                result[symbol] = quote
            missing = [s for s in missing if s not in result]

        if missing:
            now = self._clock()
            for symbol in list(missing):
                stale = self._cache.get(symbol)
                if stale is not None and stale.age(now) <= self._max_stale_s:
                    logger.warning(
                        "Serving last-known-good quote for %s (age=%.1fs)", symbol, stale.age(now)
                    )
                    result[symbol] = stale
                    missing.remove(symbol)

        if missing:
            logger.error("Quote unavailable for %s", ",".join(missing))
            if not allow_partial:
                raise QuoteUnavailable(missing, "all sources failed and no fresh cached quote")
        return result

    async def _fetch_from(self, source, symbols: List[str]) -> Dict[str, Quote]:
        try:
            return await asyncio.wait_for(source.fetch_quotes(list(symbols)), self._timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Quote source %s timed out after %.1fs", source.name, self._timeout_s)
        except Exception as exc:
            logger.warning("Quote source %s failed: %s", source.name, exc)
        return {}

    async def check_health(self) -> Dict[str, bool]:
        status: Dict[str, bool] = {}
        for source in self._sources:
            try:
                status[source.name] = bool(
                    await asyncio.wait_for(source.ping(), self._timeout_s)
                )
            except Exception as exc:
                logger.warning("Health check failed for %s: %s", source.name, exc)
                status[source.name] = False
        return status

    async def close(self) -> None:
        for source in self._sources:
            try:
                await source.aclose()
            except Exception:
                logger.exception("Close quote source failed (%s)", source.name)
