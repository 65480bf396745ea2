from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .db import Database
from .marketdata.provider import MarketDataProvider
from .notifications import NotificationDispatcher, NotificationSink
from .services import AlertEvaluator, AlertMonitor, PortfolioCalculator, TradeExecutor


logger = logging.getLogger(__name__)


class RuntimeEngine:
    def __init__(
        self,
        settings: Settings,
        market_data: Optional[MarketDataProvider] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.db = Database(settings.storage.sqlite_path, settings.storage.busy_timeout_ms)
        self.market_data = market_data or MarketDataProvider.from_config(
            settings.market_data, transport=http_transport
        )
        self.sink = NotificationSink(settings.notifications, transport=http_transport)
        self.notifier = NotificationDispatcher(self.sink, timeout_s=settings.notifications.timeout_s)
        self.executor = TradeExecutor(self.db, self.market_data, self.notifier)
        self.evaluator = AlertEvaluator(
            self.db, self.executor, self.market_data, self.notifier, settings.alerts
        )
        self.portfolio = PortfolioCalculator(self.db, self.market_data)
        self.monitor = AlertMonitor(self.evaluator, settings.alerts.poll_interval_s)

    async def start(self) -> None:
        await self.db.connect()
        await self.db.init_schema()
        await self.db.seed_cryptocurrencies(
            (c.symbol, c.name) for c in self.settings.storage.seed_cryptocurrencies
        )
        if self.settings.alerts.enabled:
            self.monitor.start()
        logger.info(
            "Runtime engine started sources=%s alerts=%s",
            ",".join(self.market_data.source_names),
            "on" if self.settings.alerts.enabled else "off",
        )

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.notifier.drain()
        await self.market_data.close()
        await self.db.close()
        logger.info("Runtime engine stopped")

    async def health(self) -> Dict[str, Any]:
        storage_ok = True
        try:
            await self.db.fetchone("SELECT 1")
        except Exception:
            logger.exception("Storage health check failed")
            storage_ok = False
        sources = await self.market_data.check_health()
        ok = storage_ok and any(sources.values())
        return {
            "status": "ok" if ok else "degraded",
            "storage": storage_ok,
            "marketData": sources,
            "alertMonitor": self.monitor.running,
        }
