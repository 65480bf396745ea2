from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Deque, Dict, List, Optional, Set

import httpx

from .config import NotificationsConfig
from .models import Alert, Trade, now_ms


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NotificationEvent:
    id: int
    kind: str  # trade_executed / alert_fired
    user_id: int
    title: str
    message: str
    payload: Dict[str, Any]
    created_at: int
    channels: List[str] = field(default_factory=list)  # channels that accepted the send

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "userId": self.user_id,
            "title": self.title,
            "message": self.message,
            "payload": self.payload,
            "createdAt": self.created_at,
            "channels": list(self.channels),
        }


class NotificationSink:
    """Records events in a bounded buffer and fans them out to outbound channels."""

    def __init__(
        self,
        config: NotificationsConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._lock = asyncio.Lock()
        self._events: Deque[NotificationEvent] = deque(maxlen=config.buffer_size)
        self._ids = itertools.count(1)
        self._dedup: Dict[str, int] = {}

    async def notify_trade_executed(self, trade: Trade) -> None:
        verb = "Bought" if trade.type.value == "buy" else "Sold"
        title = f"Trade executed: {trade.symbol}"
        message = f"{verb} {trade.amount} {trade.symbol} at {trade.price} (total {trade.total_value})"
        if trade.alert_id is not None:
            message += f" via alert #{trade.alert_id}"
        await self._publish("trade_executed", trade.user_id, title, message, trade.to_dict())

    async def notify_alert_fired(self, alert: Alert, current_price: float) -> None:
        title = f"Price alert: {alert.symbol}"
        message = (
            f"{alert.symbol} is {alert.condition.value} {alert.target_price} "
            f"(current {current_price})"
        )
        payload = {"alert": alert.to_dict(), "currentPrice": current_price}
        await self._publish(
            "alert_fired", alert.user_id, title, message, payload, dedup_key=f"alert:{alert.id}"
        )

    async def recent(self, user_id: Optional[int] = None, limit: int = 50) -> List[NotificationEvent]:
        async with self._lock:
            events = [e for e in self._events if user_id is None or e.user_id == user_id]
        return list(reversed(events))[:limit]

    async def _publish(
        self,
        kind: str,
        user_id: int,
        title: str,
        message: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str] = None,
    ) -> None:
        ts = now_ms()
        if dedup_key:
            last = self._dedup.get(dedup_key)
            if last is not None and (ts - last) < self._config.dedup_ttl_ms:
                logger.debug("Notification suppressed by dedup key %s", dedup_key)
                return
            self._dedup[dedup_key] = ts

        event = NotificationEvent(
            id=next(self._ids),
            kind=kind,
            user_id=user_id,
            title=title,
            message=message,
            payload=payload,
            created_at=ts,
        )
        async with self._lock:
            self._events.append(event)

        if not self._config.enabled:
            return
        full_message = f"{title}: {message}"
        if self._config.telegram.enabled and await self._send_telegram(full_message):
            event.channels.append("telegram")
        if self._config.bark.enabled and await self._send_bark(title, message):
            event.channels.append("bark")
        if self._config.wecom.enabled and await self._send_wecom(full_message):
            event.channels.append("wecom")
        if self._config.webhook.enabled and await self._send_webhook(event):
            event.channels.append("webhook")

    async def _send_telegram(self, message: str) -> bool:
        token = self._config.telegram.token
        chat_id = self._config.telegram.chat_id
        if not token or not chat_id:
            logger.warning("Telegram notification enabled but token/chat_id missing")
            return False
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        return await self._post_json(url, {"chat_id": chat_id, "text": message}, "telegram")

    async def _send_bark(self, title: str, message: str) -> bool:
        url = self._config.bark.url.rstrip("/")
        key = self._config.bark.key
        if not url or not key:
            logger.warning("Bark notification enabled but url/key missing")
            return False
        return await self._post_json(f"{url}/{key}", {"title": title, "body": message}, "bark")

    async def _send_wecom(self, message: str) -> bool:
        webhook = self._config.wecom.webhook
        if not webhook:
            logger.warning("WeCom notification enabled but webhook missing")
            return False
        payload = {"msgtype": "text", "text": {"content": message}}
        return await self._post_json(webhook, payload, "wecom")

    async def _send_webhook(self, event: NotificationEvent) -> bool:
        url = self._config.webhook.url
        if not url:
            logger.warning("Webhook notification enabled but url missing")
            return False
        return await self._post_json(url, event.to_dict(), "webhook")

    async def _post_json(self, url: str, payload: dict, channel: str) -> bool:
        try:
            async with httpx.AsyncClient(
                timeout=self._config.timeout_s, transport=self._transport
            ) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
            return True
        except Exception:
            logger.exception("Notification send failed (%s)", channel)
            return False


class NotificationDispatcher:
    """Fire-and-forget front for a sink.

    ``notify_*`` only schedules a task and returns; each delivery is bounded by
    ``timeout_s`` and any failure is logged. ``drain()`` waits for in-flight
    deliveries (used at shutdown and in tests).
    """

    def __init__(self, sink: NotificationSink, timeout_s: float = 10.0) -> None:
        self._sink = sink
        self._timeout_s = timeout_s
        self._tasks: Set[asyncio.Task] = set()

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify_trade_executed(self, trade: Trade) -> None:
        self._schedule(f"trade #{trade.id}", self._sink.notify_trade_executed(trade))

    def notify_alert_fired(self, alert: Alert, current_price: float) -> None:
        self._schedule(f"alert #{alert.id}", self._sink.notify_alert_fired(alert, current_price))

    def _schedule(self, label: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(self._deliver(label, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, label: str, coro: Awaitable[None]) -> None:
        try:
            await asyncio.wait_for(coro, self._timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Notification for %s timed out after %.1fs", label, self._timeout_s)
        except Exception:
            logger.exception("Notification for %s failed", label)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
