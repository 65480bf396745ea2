from __future__ import annotations

import logging
from typing import List, Optional

from ..db import Database, Transaction
from ..errors import (
    DomainError,
    InfrastructureError,
    InsufficientBalance,
    InvalidCryptocurrency,
    TradeNotFound,
    UserNotFound,
    ValidationError,
)
from ..models import (
    Cryptocurrency,
    ProfitLoss,
    Trade,
    TradeType,
    normalize_symbol,
    now_ms,
    positive_number,
    round_amount,
)


logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


def validate_amount(value, name: str = "amount") -> float:
    amount = round_amount(positive_number(name, value))
    if amount <= 0:
        raise ValidationError(name, "must be at least 1e-8")
    return amount


class TradeExecutor:
    def __init__(self, db: Database, market_data, notifier) -> None:
        self._db = db
        self._market_data = market_data
        self._notifier = notifier

    async def execute_trade(
        self,
        user_id: int,
        symbol: str,
        amount: float,
        trade_type: str | TradeType,
        alert_id: Optional[int] = None,
    ) -> Trade:
        symbol = normalize_symbol(symbol)
        amount = validate_amount(amount)
        side = TradeType.parse(trade_type)

        try:
            crypto = await self._db.get_cryptocurrency(symbol)
            if crypto is None:
                raise InvalidCryptocurrency(symbol)
            quote = await self._market_data.get_current_price(symbol)
            async with self._db.transaction("execute_trade") as tx:
                trade = await self.apply_trade(
                    tx, user_id, crypto, side, amount, quote.price, alert_id=alert_id
                )
        except DomainError as exc:
            logger.warning("Trade rejected user=%s %s %s %s: %s", user_id, side.value, amount, symbol, exc)
            raise
        except InfrastructureError as exc:
            logger.error("Trade aborted user=%s %s %s %s: %s", user_id, side.value, amount, symbol, exc)
            raise

        logger.info(
            "Trade #%d committed user=%s %s %s %s @ %s",
            trade.id,
            user_id,
            side.value,
            amount,
            symbol,
            trade.price,
        )
        self.notify(trade)
        return trade

    async def apply_trade(
        self,
        tx: Transaction,
        user_id: int,
        crypto: Cryptocurrency,
        side: TradeType,
        amount: float,
        price: float,
        alert_id: Optional[int] = None,
    ) -> Trade:
        """Write one trade and its wallet movement inside ``tx``.

        Commit and notification are the caller's job. Any exception raised here
        leaves ``tx`` to roll back.
        """
        if not await tx.user_exists(user_id):
            raise UserNotFound(user_id)

        if side is TradeType.SELL:
            available = await tx.get_wallet_balance(user_id, crypto.id) or 0.0
            if available < amount:
                raise InsufficientBalance(crypto.symbol, amount, available)

        ts = now_ms()
        total_value = round_amount(amount * price)
        trade_id = await tx.insert_trade(
            user_id=user_id,
            crypto_id=crypto.id,
            trade_type=side,
            amount=amount,
            price=price,
            total_value=total_value,
            alert_id=alert_id,
            created_at=ts,
        )

        if side is TradeType.BUY:
            await tx.credit_wallet(user_id, crypto.id, amount, ts)
        elif not await tx.debit_wallet(user_id, crypto.id, amount, ts):
            available = await tx.get_wallet_balance(user_id, crypto.id) or 0.0
            raise InsufficientBalance(crypto.symbol, amount, available)

        return Trade(
            id=trade_id,
            user_id=user_id,
            symbol=crypto.symbol,
            type=side,
            amount=amount,
            price=price,
            total_value=total_value,
            status="completed",
            alert_id=alert_id,
            created_at=ts,
        )

    def notify(self, trade: Trade) -> None:
        try:
            self._notifier.notify_trade_executed(trade)
        except Exception:
            logger.exception("Trade notification failed for #%d", trade.id)

    async def calculate_profit_loss(self, trade_id: int, user_id: Optional[int] = None) -> ProfitLoss:
        trade = await self._db.get_trade(trade_id)
        if trade is None or (user_id is not None and trade.user_id != user_id):
            raise TradeNotFound(trade_id)

        quote = await self._market_data.get_current_price(trade.symbol)
        if trade.type is TradeType.BUY:
            profit_loss = (quote.price - trade.price) * trade.amount
        else:
            profit_loss = (trade.price - quote.price) * trade.amount
        percentage = profit_loss / trade.total_value * 100 if trade.total_value else 0.0
        return ProfitLoss(
            trade_id=trade.id,
            symbol=trade.symbol,
            type=trade.type,
            entry_price=trade.price,
            current_price=quote.price,
            profit_loss=profit_loss,
            percentage_change=percentage,
        )

    async def get_trade_history(self, user_id: int, limit: int = 10, offset: int = 0) -> List[Trade]:
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValidationError("limit", f"must be between 1 and {MAX_HISTORY_LIMIT}")
        if offset < 0:
            raise ValidationError("offset", "must be >= 0")
        return await self._db.get_trades(user_id, limit=limit, offset=offset)
