from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..db import Database
from ..errors import InvalidCryptocurrency
from ..models import (
    Holding,
    Performance,
    Portfolio,
    SymbolPerformance,
    Timeframe,
    Trade,
    TradeType,
    WalletReconciliation,
    normalize_symbol,
    now_ms,
    round_amount,
)


class PortfolioCalculator:
    def __init__(self, db: Database, market_data) -> None:
        self._db = db
        self._market_data = market_data
        self._logger = logging.getLogger(__name__)

    async def calculate_portfolio(self, user_id: int) -> Portfolio:
        rows = await self._db.get_wallets(user_id, positive_only=True)
        ts = now_ms()
        if not rows:
            return Portfolio(total_value=0.0, holdings=[], last_updated=ts)

        quotes = await self._market_data.get_current_prices([r["symbol"] for r in rows])
        holdings: List[Holding] = []
        total_value = 0.0
        for r in rows:
            quote = quotes[r["symbol"]]
            balance = float(r["balance"])
            value = balance * quote.price
            total_value += value
            holdings.append(
                Holding(
                    symbol=r["symbol"],
                    name=r["name"],
                    balance=balance,
                    price=quote.price,
                    change_24h=quote.change_24h,
                    value=value,
                )
            )

        if total_value <= 0:
            return Portfolio(total_value=0.0, holdings=[], last_updated=ts)

        for h in holdings:
            h.allocation = h.value / total_value * 100
        holdings.sort(key=lambda h: (-h.value, h.symbol))
        return Portfolio(total_value=total_value, holdings=holdings, last_updated=ts)

    async def sync_portfolio(self, user_id: int, trade: Optional[Trade] = None) -> Portfolio:
        """Re-derive the portfolio after a trade; there is no stored copy to update."""
        portfolio = await self.calculate_portfolio(user_id)
        if trade is not None:
            self._logger.debug(
                "Portfolio synced user=%s after trade #%d total=%.2f",
                user_id,
                trade.id,
                portfolio.total_value,
            )
        return portfolio

    async def get_portfolio_performance(self, user_id: int, timeframe: str | Timeframe = Timeframe.H24) -> Performance:
        tf = Timeframe.parse(timeframe)
        since = now_ms() - tf.millis
        trades = await self._db.get_trades(user_id, limit=None, since=since, ascending=True)
        if not trades:
            return Performance(
                timeframe=tf,
                profit_loss=0.0,
                profit_loss_percentage=0.0,
                trade_count=0,
                volume=0.0,
                best_performing=None,
                worst_performing=None,
            )

        quotes = await self._market_data.get_current_prices({t.symbol for t in trades})
        profit_loss = 0.0
        volume = 0.0
        by_symbol: Dict[str, float] = {}
        for t in trades:
            current = quotes[t.symbol].price
            if t.type is TradeType.BUY:
                pl = (current - t.price) * t.amount
            else:
                pl = (t.price - current) * t.amount
            profit_loss += pl
            volume += t.total_value
            by_symbol[t.symbol] = by_symbol.get(t.symbol, 0.0) + pl

        ranked = sorted(by_symbol.items(), key=lambda kv: (-kv[1], kv[0]))
        best = SymbolPerformance(symbol=ranked[0][0], profit_loss=ranked[0][1])
        worst = SymbolPerformance(symbol=ranked[-1][0], profit_loss=ranked[-1][1])
        return Performance(
            timeframe=tf,
            profit_loss=profit_loss,
            profit_loss_percentage=profit_loss / volume * 100 if volume > 0 else 0.0,
            trade_count=len(trades),
            volume=volume,
            best_performing=best,
            worst_performing=worst,
        )

    async def reconcile_wallet(self, user_id: int, symbol: str) -> WalletReconciliation:
        """Compare a wallet balance with the signed sum of its trades."""
        symbol = normalize_symbol(symbol)
        if await self._db.get_cryptocurrency(symbol) is None:
            raise InvalidCryptocurrency(symbol)
        balance = await self._db.get_wallet_balance(user_id, symbol) or 0.0
        ledger_sum, count = await self._db.get_signed_trade_sum(user_id, symbol)
        result = WalletReconciliation(
            user_id=user_id,
            symbol=symbol,
            balance=balance,
            ledger_sum=round_amount(ledger_sum),
            trade_count=count,
        )
        if not result.consistent:
            self._logger.error(
                "Wallet drift user=%s %s balance=%s ledger=%s",
                user_id,
                symbol,
                balance,
                result.ledger_sum,
            )
        return result
