"""
Shared fixtures: a file-backed ledger per test, a scripted quote source and a
recording notifier. No network access is needed by any test.
"""

import asyncio
import time
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from tradewatch.config import AlertsConfig
from tradewatch.db import Database
from tradewatch.marketdata.provider import MarketDataProvider
from tradewatch.models import Alert, Quote, Trade
from tradewatch.services import AlertEvaluator, PortfolioCalculator, TradeExecutor

SEED = [("BTC", "Bitcoin"), ("ETH", "Ethereum"), ("SOL", "Solana")]


class ScriptedQuoteSource:
    """In-memory upstream whose prices, failures and latency tests control."""

    def __init__(self, prices: Dict[str, float], name: str = "scripted") -> None:
        self.name = name
        self.prices = dict(prices)
        self.change_24h = 1.5
        self.fail = False
        self.delay = 0.0
        self.calls: List[List[str]] = []
        self.clock = time.time

    async def fetch_quotes(self, symbols) -> Dict[str, Quote]:
        self.calls.append(list(symbols))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.name} upstream down")
        now = self.clock()
        return {
            s: Quote(symbol=s, price=self.prices[s], change_24h=self.change_24h, fetched_at=now, source=self.name)
            for s in symbols
            if s in self.prices
        }

    async def ping(self) -> bool:
        if self.fail:
            raise RuntimeError(f"{self.name} upstream down")
        return True

    async def aclose(self) -> None:
        return None


class RecordingNotifier:
    def __init__(self) -> None:
        self.trades: List[Trade] = []
        self.alerts: List[Tuple[Alert, float]] = []

    def notify_trade_executed(self, trade: Trade) -> None:
        self.trades.append(trade)

    def notify_alert_fired(self, alert: Alert, current_price: float) -> None:
        self.alerts.append((alert, current_price))


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "ledger.db")


@pytest_asyncio.fixture
async def db(db_path):
    database = Database(db_path, busy_timeout_ms=5000)
    await database.init_schema()
    await database.seed_cryptocurrencies(SEED)
    yield database
    await database.close()


@pytest_asyncio.fixture
async def user_id(db) -> int:
    return await db.insert_user("alice", "alice@example.com", "hash")


@pytest_asyncio.fixture
async def other_user_id(db) -> int:
    return await db.insert_user("bob", "bob@example.com", "hash")


@pytest.fixture
def quotes() -> ScriptedQuoteSource:
    return ScriptedQuoteSource({"BTC": 50000.0, "ETH": 3000.0})


@pytest.fixture
def market_data(quotes) -> MarketDataProvider:
    # zero TTL: every call reaches the source, so price changes apply at once
    return MarketDataProvider([quotes], cache_ttl_s=0.0, max_stale_s=300.0, timeout_s=1.0)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def executor(db, market_data, notifier) -> TradeExecutor:
    return TradeExecutor(db, market_data, notifier)


@pytest.fixture
def alerts_config() -> AlertsConfig:
    return AlertsConfig(enabled=False, poll_interval_s=0.05)


@pytest.fixture
def evaluator(db, executor, market_data, notifier, alerts_config) -> AlertEvaluator:
    return AlertEvaluator(db, executor, market_data, notifier, alerts_config)


@pytest.fixture
def portfolio(db, market_data) -> PortfolioCalculator:
    return PortfolioCalculator(db, market_data)


@pytest.fixture
def count_trades(db):
    async def _count(user: Optional[int] = None) -> int:
        if user is None:
            row = await db.fetchone("SELECT COUNT(*) AS n FROM trades")
        else:
            row = await db.fetchone("SELECT COUNT(*) AS n FROM trades WHERE user_id=?", (user,))
        return int(row["n"])

    return _count
