"""
Tests for AlertEvaluator and AlertMonitor.

Firing is claim-first: an alert is marked triggered and its trade recorded in
one unit of work, so racing evaluation passes cannot fire it twice.
"""

import asyncio

import pytest

from tradewatch.errors import (
    AlertAlreadyInactive,
    AlertNotFound,
    ConcurrentModification,
    DuplicateAlert,
    InvalidCryptocurrency,
    UserNotFound,
    ValidationError,
)
from tradewatch.models import AlertCondition, TradeType
from tradewatch.services import AlertMonitor


# ---------------------------------------------------------------------------
# create_alert
# ---------------------------------------------------------------------------


class TestCreateAlert:
    async def test_creates_pending_alert_with_default_trade(self, evaluator, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "btc", 55000, "above")

        assert alert.symbol == "BTC"
        assert alert.condition is AlertCondition.ABOVE
        assert alert.is_active is True
        assert alert.is_triggered is False
        assert alert.trade_type is TradeType.BUY
        assert alert.trade_amount == pytest.approx(0.01)
        assert alert.triggered_at is None

    async def test_explicit_trade_parameters(self, evaluator, user_id) -> None:
        alert = await evaluator.create_alert(
            user_id, "ETH", 2500, "below", trade_type="sell", trade_amount=0.5
        )
        assert alert.trade_type is TradeType.SELL
        assert alert.trade_amount == pytest.approx(0.5)

    async def test_duplicate_pending_alert_is_rejected(self, evaluator, user_id) -> None:
        """Same (user, symbol, target, condition) while pending yields DuplicateAlert."""
        await evaluator.create_alert(user_id, "BTC", 55000, "above")
        with pytest.raises(DuplicateAlert):
            await evaluator.create_alert(user_id, "BTC", 55000, "above")

    async def test_similar_alerts_are_not_duplicates(self, evaluator, user_id, other_user_id) -> None:
        await evaluator.create_alert(user_id, "BTC", 55000, "above")
        await evaluator.create_alert(user_id, "BTC", 55000, "below")
        await evaluator.create_alert(user_id, "BTC", 55001, "above")
        await evaluator.create_alert(user_id, "ETH", 55000, "above")
        await evaluator.create_alert(other_user_id, "BTC", 55000, "above")
        assert len(await evaluator.get_alerts(user_id)) == 4

    async def test_duplicate_allowed_after_deactivation(self, evaluator, user_id) -> None:
        first = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        await evaluator.update_alert_status(first.id, False, user_id=user_id)
        second = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        assert second.id != first.id

    async def test_unknown_user_and_symbol(self, evaluator, user_id) -> None:
        with pytest.raises(UserNotFound):
            await evaluator.create_alert(user_id + 100, "BTC", 55000, "above")
        with pytest.raises(InvalidCryptocurrency):
            await evaluator.create_alert(user_id, "NOPE", 55000, "above")

    @pytest.mark.parametrize(
        "target,condition,trade_type,amount",
        [(0, "above", None, None), (-5, "above", None, None), (100, "sideways", None, None),
         (100, "above", "hold", None), (100, "above", None, 0)],
    )
    async def test_bad_input(self, evaluator, user_id, target, condition, trade_type, amount) -> None:
        with pytest.raises(ValidationError):
            await evaluator.create_alert(
                user_id, "BTC", target, condition, trade_type=trade_type, trade_amount=amount
            )

    async def test_get_alerts_active_only(self, evaluator, user_id) -> None:
        a = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        b = await evaluator.create_alert(user_id, "ETH", 2000, "below")
        await evaluator.update_alert_status(a.id, False, user_id=user_id)

        assert {x.id for x in await evaluator.get_alerts(user_id)} == {a.id, b.id}
        assert [x.id for x in await evaluator.get_alerts(user_id, active_only=True)] == [b.id]


# ---------------------------------------------------------------------------
# evaluate_active_alerts
# ---------------------------------------------------------------------------


class TestEvaluation:
    async def test_above_alert_fires_once(self, db, evaluator, quotes, notifier, user_id) -> None:
        """Quote 56000 fires an above-55000 alert and records one linked trade."""
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 56000.0

        summary = await evaluator.evaluate_active_alerts()

        assert summary.fired == 1
        assert summary.fired_alert_ids == [alert.id]
        stored = await db.get_alert(alert.id)
        assert stored.is_triggered is True
        assert stored.triggered_at is not None
        trades = await db.get_trades(user_id, alert_id=alert.id)
        assert len(trades) == 1
        assert trades[0].price == pytest.approx(56000.0)
        assert trades[0].amount == pytest.approx(0.01)
        assert [a.id for a, _ in notifier.alerts] == [alert.id]
        assert notifier.alerts[0][1] == pytest.approx(56000.0)
        assert notifier.trades[0].alert_id == alert.id

    async def test_condition_not_met(self, db, evaluator, quotes, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 54999.0

        summary = await evaluator.evaluate_active_alerts()

        assert summary.evaluated == 1
        assert summary.fired == 0
        assert (await db.get_alert(alert.id)).is_triggered is False

    async def test_below_fires_at_equal_price(self, db, evaluator, quotes, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "ETH", 3000, "below")
        summary = await evaluator.evaluate_active_alerts()
        assert summary.fired_alert_ids == [alert.id]

    async def test_triggered_alert_is_never_evaluated_again(self, db, evaluator, quotes, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 60000.0
        await evaluator.evaluate_active_alerts()

        second = await evaluator.evaluate_active_alerts()

        assert second.evaluated == 0
        assert await db.count_trades_for_alert(alert.id) == 1

    async def test_racing_passes_fire_at_most_once(self, db, evaluator, quotes, user_id) -> None:
        """Concurrent passes over the same alert record exactly one trade."""
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 56000.0

        summaries = await asyncio.gather(*(evaluator.evaluate_active_alerts() for _ in range(6)))

        assert sum(s.fired for s in summaries) == 1
        assert sum(s.failed for s in summaries) == 0
        assert await db.count_trades_for_alert(alert.id) == 1
        assert (await db.get_alert(alert.id)).is_triggered is True

    async def test_quotes_are_batched_per_symbol(self, evaluator, quotes, user_id, other_user_id) -> None:
        await evaluator.create_alert(user_id, "BTC", 1, "below")
        await evaluator.create_alert(other_user_id, "BTC", 2, "below")
        await evaluator.create_alert(user_id, "ETH", 1, "below")

        await evaluator.evaluate_active_alerts()

        assert quotes.calls == [["BTC", "ETH"]]

    async def test_missing_quote_is_isolated(self, db, evaluator, quotes, user_id) -> None:
        """No quote for SOL does not stop the BTC alert from firing."""
        sol = await evaluator.create_alert(user_id, "SOL", 100, "above")
        btc = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 56000.0

        summary = await evaluator.evaluate_active_alerts()

        assert summary.failed == 1
        assert summary.fired_alert_ids == [btc.id]
        assert (await db.get_alert(sol.id)).is_triggered is False

    async def test_failed_trade_releases_claim(self, db, evaluator, quotes, user_id, count_trades) -> None:
        """A sell alert with no balance stays pending; nothing is written."""
        alert = await evaluator.create_alert(
            user_id, "BTC", 55000, "above", trade_type="sell", trade_amount=1
        )
        quotes.prices["BTC"] = 56000.0

        summary = await evaluator.evaluate_active_alerts()

        assert summary.failed == 1
        assert summary.fired == 0
        stored = await db.get_alert(alert.id)
        assert stored.is_triggered is False
        assert stored.is_active is True
        assert await count_trades() == 0

    async def test_deactivated_alert_is_skipped(self, db, evaluator, quotes, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        await evaluator.update_alert_status(alert.id, False, user_id=user_id)
        quotes.prices["BTC"] = 56000.0

        summary = await evaluator.evaluate_active_alerts()

        assert summary.evaluated == 0
        assert await db.count_trades_for_alert(alert.id) == 0

    async def test_claim_lost_to_deactivation(self, db, evaluator, quotes, user_id) -> None:
        """If the alert is switched off between read and claim, the fire is skipped."""
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 56000.0
        original = db.get_pending_alerts

        async def read_then_deactivate():
            pending = await original()
            await evaluator.update_alert_status(alert.id, False, user_id=user_id)
            return pending

        db.get_pending_alerts = read_then_deactivate
        summary = await evaluator.evaluate_active_alerts()

        assert summary.skipped == 1
        assert summary.fired == 0
        assert await db.count_trades_for_alert(alert.id) == 0
        assert (await db.get_alert(alert.id)).is_triggered is False


# ---------------------------------------------------------------------------
# update_alert_status / delete_alert
# ---------------------------------------------------------------------------


class TestUpdateStatus:
    async def test_deactivate_and_reactivate(self, db, evaluator, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")

        assert await evaluator.update_alert_status(alert.id, False, user_id=user_id) == {
            "id": alert.id,
            "isActive": False,
        }
        assert await evaluator.update_alert_status(alert.id, True, user_id=user_id) == {
            "id": alert.id,
            "isActive": True,
        }
        assert (await db.get_alert(alert.id)).is_active is True

    async def test_deactivating_inactive_alert_fails(self, evaluator, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        await evaluator.update_alert_status(alert.id, False)
        with pytest.raises(AlertAlreadyInactive):
            await evaluator.update_alert_status(alert.id, False)

    async def test_stale_expectation_is_concurrent_modification(self, db, evaluator, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        await evaluator.update_alert_status(alert.id, False)

        with pytest.raises(ConcurrentModification):
            await evaluator.update_alert_status(alert.id, True, expected_is_active=True)
        assert (await db.get_alert(alert.id)).is_active is False

    async def test_missing_or_foreign_alert(self, evaluator, user_id, other_user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        with pytest.raises(AlertNotFound):
            await evaluator.update_alert_status(alert.id + 1, False)
        with pytest.raises(AlertNotFound):
            await evaluator.update_alert_status(alert.id, False, user_id=other_user_id)

    async def test_reactivation_respects_duplicate_rule(self, evaluator, user_id) -> None:
        first = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        await evaluator.update_alert_status(first.id, False)
        await evaluator.create_alert(user_id, "BTC", 55000, "above")

        with pytest.raises(DuplicateAlert):
            await evaluator.update_alert_status(first.id, True)


class TestDeleteAlert:
    async def test_delete_own_alert(self, db, evaluator, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        assert await evaluator.delete_alert(alert.id, user_id) is True
        assert await db.get_alert(alert.id) is None
        assert await evaluator.delete_alert(alert.id, user_id) is False

    async def test_foreign_alert_is_not_deleted(self, db, evaluator, user_id, other_user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        assert await evaluator.delete_alert(alert.id, other_user_id) is False
        assert await db.get_alert(alert.id) is not None

    async def test_trade_history_survives_alert_deletion(self, db, evaluator, quotes, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 56000.0
        await evaluator.evaluate_active_alerts()

        assert await evaluator.delete_alert(alert.id, user_id) is True
        trades = await db.get_trades(user_id)
        assert [t.alert_id for t in trades] == [alert.id]


# ---------------------------------------------------------------------------
# AlertMonitor
# ---------------------------------------------------------------------------


class TestAlertMonitor:
    async def test_monitor_fires_and_stops(self, db, evaluator, quotes, user_id) -> None:
        alert = await evaluator.create_alert(user_id, "BTC", 55000, "above")
        quotes.prices["BTC"] = 56000.0
        monitor = AlertMonitor(evaluator, interval_s=0.02)

        monitor.start()
        assert monitor.running
        for _ in range(200):
            if (await db.get_alert(alert.id)).is_triggered:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert not monitor.running
        assert await db.count_trades_for_alert(alert.id) == 1

    async def test_monitor_survives_pass_errors(self, evaluator, quotes, user_id) -> None:
        await evaluator.create_alert(user_id, "BTC", 55000, "above")
        calls = 0
        original = evaluator.evaluate_active_alerts

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return await original()

        evaluator.evaluate_active_alerts = flaky
        monitor = AlertMonitor(evaluator, interval_s=0.01)
        monitor.start()
        for _ in range(200):
            if monitor.last_summary is not None:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert calls >= 2
        assert monitor.last_summary is not None
