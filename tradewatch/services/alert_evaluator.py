from __future__ import annotations

import asyncio
import dataclasses
import logging
import sqlite3
from typing import Dict, List, Optional

from ..config import AlertsConfig
from ..db import Database
from ..errors import (
    AlertAlreadyInactive,
    AlertNotFound,
    ConcurrentModification,
    DomainError,
    DuplicateAlert,
    InvalidCryptocurrency,
    UserNotFound,
)
from ..models import (
    Alert,
    AlertCondition,
    EvaluationSummary,
    Trade,
    TradeType,
    normalize_symbol,
    now_ms,
    positive_number,
)
from .trade_executor import TradeExecutor, validate_amount


logger = logging.getLogger(__name__)

_PENDING = {"is_active": 1, "is_triggered": 0}


class AlertEvaluator:
    def __init__(
        self,
        db: Database,
        executor: TradeExecutor,
        market_data,
        notifier,
        config: AlertsConfig,
    ) -> None:
        self._db = db
        self._executor = executor
        self._market_data = market_data
        self._notifier = notifier
        self._config = config

    async def create_alert(
        self,
        user_id: int,
        symbol: str,
        target_price: float,
        condition: str | AlertCondition,
        trade_type: Optional[str | TradeType] = None,
        trade_amount: Optional[float] = None,
    ) -> Alert:
        symbol = normalize_symbol(symbol)
        target_price = positive_number("targetPrice", target_price)
        cond = AlertCondition.parse(condition)
        side = TradeType.parse(trade_type if trade_type is not None else self._config.default_trade_type)
        amount = validate_amount(
            trade_amount if trade_amount is not None else self._config.default_trade_amount,
            name="tradeAmount",
        )

        if not await self._db.user_exists(user_id):
            raise UserNotFound(user_id)
        crypto = await self._db.get_cryptocurrency(symbol)
        if crypto is None:
            raise InvalidCryptocurrency(symbol)

        async with self._db.transaction("create_alert") as tx:
            if await tx.find_pending_alert(user_id, crypto.id, target_price, cond) is not None:
                raise DuplicateAlert(symbol, target_price, cond.value)
            try:
                alert_id = await tx.insert_alert(
                    user_id, crypto.id, target_price, cond, side, amount, now_ms()
                )
            except sqlite3.IntegrityError:
                raise DuplicateAlert(symbol, target_price, cond.value) from None
            alert = await tx.get_alert(alert_id)

        logger.info(
            "Alert #%d created user=%s %s %s %s", alert.id, user_id, symbol, cond.value, target_price
        )
        return alert

    async def get_alerts(self, user_id: int, active_only: bool = False) -> List[Alert]:
        return await self._db.get_alerts(user_id, active_only=active_only)

    async def evaluate_active_alerts(self) -> EvaluationSummary:
        """Run one pass over every pending alert.

        Quotes are fetched once per symbol. A symbol without a quote or an alert
        whose fire fails is counted in ``failed`` and does not stop the pass.
        """
        summary = EvaluationSummary()
        alerts = await self._db.get_pending_alerts()
        if not alerts:
            return summary

        symbols = sorted({a.symbol for a in alerts})
        quotes = await self._market_data.get_current_prices(symbols, allow_partial=True)

        for alert in alerts:
            summary.evaluated += 1
            quote = quotes.get(alert.symbol)
            if quote is None:
                summary.failed += 1
                logger.warning("Alert #%d skipped: no quote for %s", alert.id, alert.symbol)
                continue
            if not alert.condition.is_met(quote.price, alert.target_price):
                continue
            try:
                trade = await self._fire(alert, quote.price)
            except DomainError as exc:
                summary.failed += 1
                logger.warning("Alert #%d fire rejected, left pending: %s", alert.id, exc)
                continue
            except Exception:
                summary.failed += 1
                logger.exception("Alert #%d fire failed, left pending", alert.id)
                continue
            if trade is None:
                summary.skipped += 1
                logger.info("Alert #%d already claimed by another writer", alert.id)
                continue
            summary.fired += 1
            summary.fired_alert_ids.append(alert.id)

        if summary.fired or summary.failed:
            logger.info(
                "Alert pass evaluated=%d fired=%d skipped=%d failed=%d",
                summary.evaluated,
                summary.fired,
                summary.skipped,
                summary.failed,
            )
        return summary

    async def _fire(self, alert: Alert, price: float) -> Optional[Trade]:
        # claim and trade share one unit of work: a failed trade releases the claim
        crypto = await self._db.get_cryptocurrency(alert.symbol)
        if crypto is None:
            raise InvalidCryptocurrency(alert.symbol)

        async with self._db.transaction("fire_alert") as tx:
            ts = now_ms()
            claimed = await tx.compare_and_set(
                "alerts",
                alert.id,
                expected=_PENDING,
                updates={"is_triggered": 1, "updated_at": ts, "triggered_at": ts},
            )
            if not claimed:
                return None
            trade = await self._executor.apply_trade(
                tx,
                alert.user_id,
                crypto,
                alert.trade_type,
                alert.trade_amount,
                price,
                alert_id=alert.id,
            )

        fired = dataclasses.replace(alert, is_triggered=True, updated_at=ts, triggered_at=ts)
        logger.info(
            "Alert #%d fired at %s -> trade #%d (%s %s %s)",
            alert.id,
            price,
            trade.id,
            trade.type.value,
            trade.amount,
            trade.symbol,
        )
        try:
            self._notifier.notify_alert_fired(fired, price)
        except Exception:
            logger.exception("Alert notification failed for #%d", alert.id)
        self._executor.notify(trade)
        return trade

    async def update_alert_status(
        self,
        alert_id: int,
        is_active: bool,
        user_id: Optional[int] = None,
        expected_is_active: Optional[bool] = None,
    ) -> Dict[str, object]:
        """Toggle ``is_active`` with a compare-and-set on the stored value.

        ``expected_is_active`` is the value the caller last saw; a mismatch means
        someone else changed the alert first.
        """
        async with self._db.transaction("update_alert_status") as tx:
            alert = await tx.get_alert(alert_id)
            if alert is None or (user_id is not None and alert.user_id != user_id):
                raise AlertNotFound(alert_id)
            if not is_active and not alert.is_active:
                raise AlertAlreadyInactive(alert_id)
            if expected_is_active is not None and alert.is_active != bool(expected_is_active):
                raise ConcurrentModification("alert", alert_id)
            try:
                changed = await tx.compare_and_set(
                    "alerts",
                    alert_id,
                    expected={"is_active": int(alert.is_active)},
                    updates={"is_active": int(bool(is_active)), "updated_at": now_ms()},
                )
            except sqlite3.IntegrityError:
                raise DuplicateAlert(alert.symbol, alert.target_price, alert.condition.value) from None
            if not changed:
                raise ConcurrentModification("alert", alert_id)

        logger.info("Alert #%d is_active=%s", alert_id, bool(is_active))
        return {"id": alert_id, "isActive": bool(is_active)}

    async def delete_alert(self, alert_id: int, user_id: int) -> bool:
        async with self._db.transaction("delete_alert") as tx:
            cursor = await tx.execute(
                "DELETE FROM alerts WHERE id=? AND user_id=?", (alert_id, user_id)
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Alert #%d deleted by user=%s", alert_id, user_id)
        return deleted


class AlertMonitor:
    """Periodic driver for ``AlertEvaluator.evaluate_active_alerts``."""

    def __init__(self, evaluator: AlertEvaluator, interval_s: float) -> None:
        self._evaluator = evaluator
        self._interval_s = interval_s
        self._task: Optional[asyncio.Task] = None
        self.last_summary: Optional[EvaluationSummary] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Alert monitor started interval=%.1fs", self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Alert monitor stopped")

    async def _loop(self) -> None:
        while True:
            try:
                self.last_summary = await self._evaluator.evaluate_active_alerts()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Alert monitor loop error")
            await asyncio.sleep(self._interval_s)
