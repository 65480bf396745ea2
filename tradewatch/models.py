from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ValidationError


AMOUNT_DECIMALS = 8


def now_ms() -> int:
    return int(time.time() * 1000)


def round_amount(value: float) -> float:
    return round(float(value), AMOUNT_DECIMALS)


def normalize_symbol(symbol: Any) -> str:
    if not isinstance(symbol, str) or not symbol.strip():
        raise ValidationError("symbol", "must be a non-empty string")
    return symbol.strip().upper()


def positive_number(name: str, value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(name, "must be a number") from None
    if isinstance(value, bool) or not math.isfinite(v) or v <= 0:
        raise ValidationError(name, "must be greater than 0")
    return v


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Any) -> "TradeType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("type", 'must be "buy" or "sell"') from None

    def signed(self, amount: float) -> float:
        return amount if self is TradeType.BUY else -amount


class AlertCondition(str, Enum):
    ABOVE = "above"
    BELOW = "below"

    @classmethod
    def parse(cls, value: Any) -> "AlertCondition":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("condition", 'must be "above" or "below"') from None

    def is_met(self, current_price: float, target_price: float) -> bool:
        if self is AlertCondition.ABOVE:
            return current_price >= target_price
        return current_price <= target_price


class Timeframe(str, Enum):
    H24 = "24h"
    D7 = "7d"
    D30 = "30d"
    Y1 = "1y"

    @classmethod
    def parse(cls, value: Any) -> "Timeframe":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError("timeframe", "must be one of 24h, 7d, 30d, 1y") from None

    @property
    def millis(self) -> int:
        hours = {"24h": 24, "7d": 24 * 7, "30d": 24 * 30, "1y": 24 * 365}[self.value]
        return hours * 3600 * 1000


@dataclass(slots=True)
class Quote:
    symbol: str
    price: float
    change_24h: float
    fetched_at: float  # epoch seconds
    source: str  # binance/coingecko/...

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.fetched_at


@dataclass(slots=True)
class Cryptocurrency:
    id: int
    symbol: str
    name: str


@dataclass(slots=True)
class Trade:
    id: int
    user_id: int
    symbol: str
    type: TradeType
    amount: float
    price: float
    total_value: float
    status: str  # completed
    alert_id: Optional[int]
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "symbol": self.symbol,
            "type": self.type.value,
            "amount": self.amount,
            "price": self.price,
            "totalValue": self.total_value,
            "status": self.status,
            "alertId": self.alert_id,
            "createdAt": self.created_at,
        }


@dataclass(slots=True)
class Alert:
    id: int
    user_id: int
    symbol: str
    target_price: float
    condition: AlertCondition
    is_active: bool
    is_triggered: bool
    trade_type: TradeType
    trade_amount: float
    created_at: int
    updated_at: int
    triggered_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "symbol": self.symbol,
            "targetPrice": self.target_price,
            "condition": self.condition.value,
            "isActive": self.is_active,
            "isTriggered": self.is_triggered,
            "tradeType": self.trade_type.value,
            "tradeAmount": self.trade_amount,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "triggeredAt": self.triggered_at,
        }


@dataclass(slots=True)
class Holding:
    symbol: str
    name: str
    balance: float
    price: float
    change_24h: float
    value: float
    allocation: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "balance": self.balance,
            "price": self.price,
            "change24h": self.change_24h,
            "value": self.value,
            "allocation": self.allocation,
        }


@dataclass(slots=True)
class Portfolio:
    total_value: float
    holdings: List[Holding]
    last_updated: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalValue": self.total_value,
            "holdings": [h.to_dict() for h in self.holdings],
            "lastUpdated": self.last_updated,
        }


@dataclass(slots=True)
class SymbolPerformance:
    symbol: str
    profit_loss: float

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "profitLoss": self.profit_loss}


@dataclass(slots=True)
class Performance:
    timeframe: Timeframe
    profit_loss: float
    profit_loss_percentage: float
    trade_count: int
    volume: float
    best_performing: Optional[SymbolPerformance]
    worst_performing: Optional[SymbolPerformance]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeframe": self.timeframe.value,
            "profitLoss": self.profit_loss,
            "profitLossPercentage": self.profit_loss_percentage,
            "tradeCount": self.trade_count,
            "volume": self.volume,
            "bestPerforming": self.best_performing.to_dict() if self.best_performing else None,
            "worstPerforming": self.worst_performing.to_dict() if self.worst_performing else None,
        }


@dataclass(slots=True)
class ProfitLoss:
    trade_id: int
    symbol: str
    type: TradeType
    entry_price: float
    current_price: float
    profit_loss: float
    percentage_change: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tradeId": self.trade_id,
            "symbol": self.symbol,
            "type": self.type.value,
            "entryPrice": self.entry_price,
            "currentPrice": self.current_price,
            "profitLoss": self.profit_loss,
            "percentageChange": self.percentage_change,
        }


@dataclass(slots=True)
class WalletReconciliation:
    user_id: int
    symbol: str
    balance: float
    ledger_sum: float
    trade_count: int

    @property
    def consistent(self) -> bool:
        return round_amount(self.balance - self.ledger_sum) == 0.0


@dataclass(slots=True)
class EvaluationSummary:
    evaluated: int = 0
    fired: int = 0
    skipped: int = 0  # claim lost to another writer
    failed: int = 0
    fired_alert_ids: List[int] = field(default_factory=list)
