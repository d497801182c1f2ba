"""
Tests for alert detection and escalation.

Covers:
  - Expiry and stock classification tiers
  - Alert pipeline: low stock, expiring and expired batches
  - Deduplication and in-place upgrade of expiry alerts
  - Escalation ladder, thresholds and notifications
"""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select

from alerts.engine import classify_expiry, classify_stock, run_alert_pipeline
from alerts.escalation import AlertEscalator, next_severity
from db.models import Alert, Batch
from ledger.issuance import StockPoster

# ── Classification ─────────────────────────────────────────────────────


class TestClassifyExpiry:
    @pytest.mark.parametrize(
        "days,expected",
        [
            (-1, ("expired", "critical")),
            (0, ("expiry_warning_7_days", "high")),
            (7, ("expiry_warning_7_days", "high")),
            (8, ("expiry_warning_30_days", "medium")),
            (30, ("expiry_warning_30_days", "medium")),
            (31, None),
        ],
    )
    def test_tiers(self, days, expected):
        assert classify_expiry(days) == expected


class TestClassifyStock:
    def test_out_of_stock(self):
        assert classify_stock(0, 20) == ("critical_stock", "critical")

    def test_below_safety_stock(self):
        assert classify_stock(10, 20) == ("critical_stock", "high")

    def test_low(self):
        assert classify_stock(30, 20) == ("low_stock", "medium")


# ── Pipeline ───────────────────────────────────────────────────────────


async def _receive(db, item, warehouse, batch_number, quantity, expiry):
    await StockPoster(db).receive(
        item.item_id, warehouse.warehouse_id, quantity, batch_number=batch_number, expiry_date=expiry
    )


@pytest.mark.asyncio
class TestAlertPipeline:
    async def test_detects_stock_and_expiry(self, test_db, seeded_db):
        item, warehouse = seeded_db["item"], seeded_db["warehouse"]
        today = date.today()
        await _receive(test_db, item, warehouse, "SOON", 10, today + timedelta(days=5))
        await _receive(test_db, item, warehouse, "GONE", 10, today - timedelta(days=1))

        counts = await run_alert_pipeline(test_db, today=today)

        assert counts["low_stock"] == 1
        assert counts["expiry_warning_7_days"] == 1
        assert counts["expired"] == 1
        assert counts["batches_expired"] == 1
        assert counts["total"] == 3

        gone = (await test_db.execute(select(Batch).where(Batch.batch_number == "GONE"))).scalar_one()
        assert gone.status == "expired"

        alerts = (await test_db.execute(select(Alert))).scalars().all()
        assert {a.assigned_to for a in alerts} == {seeded_db["manager"].user_id}

    async def test_second_run_creates_nothing(self, test_db, seeded_db):
        item, warehouse = seeded_db["item"], seeded_db["warehouse"]
        today = date.today()
        await _receive(test_db, item, warehouse, "SOON", 10, today + timedelta(days=5))

        await run_alert_pipeline(test_db, today=today)
        counts = await run_alert_pipeline(test_db, today=today)

        assert counts["total"] == 0
        assert counts["upgraded"] == 0

    async def test_expiry_alert_upgraded_in_place(self, test_db, seeded_db):
        item, warehouse = seeded_db["item"], seeded_db["warehouse"]
        today = date.today()
        await _receive(test_db, item, warehouse, "B-1", 10, today + timedelta(days=20))

        first = await run_alert_pipeline(test_db, today=today)
        assert first["expiry_warning_30_days"] == 1

        later = await run_alert_pipeline(test_db, today=today + timedelta(days=15))
        assert later["upgraded"] == 1
        assert later["expiry_warning_7_days"] == 0

        expiry_alerts = (
            await test_db.execute(select(Alert).where(Alert.batch_id.is_not(None)))
        ).scalars().all()
        assert len(expiry_alerts) == 1
        assert expiry_alerts[0].alert_type == "expiry_warning_7_days"
        assert expiry_alerts[0].severity == "high"

    async def test_unread_reorder_alert_suppresses_stock_alert(self, test_db, seeded_db):
        item = seeded_db["item"]
        test_db.add(Alert(alert_type="reorder", severity="high", item_id=item.item_id, message="PR raised"))
        await test_db.commit()

        counts = await run_alert_pipeline(test_db)
        assert counts["low_stock"] == 0
        assert counts["critical_stock"] == 0

    async def test_out_of_stock_is_critical(self, test_db, seeded_db):
        counts = await run_alert_pipeline(test_db)
        assert counts["critical_stock"] == 1
        alert = (await test_db.execute(select(Alert))).scalar_one()
        assert alert.severity == "critical"


# ── Escalation ─────────────────────────────────────────────────────────


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, notice, recipient):
        self.sent.append((notice, recipient))


class FailingNotifier:
    async def notify(self, notice, recipient):
        raise ConnectionError("pager offline")


def _escalator(db, notifier):
    return AlertEscalator(db, notifier, threshold_hours=24, critical_threshold_hours=6)


async def _alert(db, severity, hours_old, now, **fields) -> Alert:
    alert = Alert(
        alert_type="low_stock",
        severity=severity,
        message="Low stock for Widget",
        created_at=now - timedelta(hours=hours_old),
        **fields,
    )
    db.add(alert)
    await db.commit()
    return alert


class TestSeverityLadder:
    def test_steps(self):
        assert [next_severity(s) for s in ("low", "medium", "high", "critical")] == [
            "medium",
            "high",
            "critical",
            "critical",
        ]

    def test_unknown_goes_critical(self):
        assert next_severity("weird") == "critical"


@pytest.mark.asyncio
class TestEscalation:
    async def test_stale_alert_escalates_one_step(self, test_db, seeded_db):
        now = datetime.utcnow()
        alert = await _alert(test_db, "low", 25, now)
        notifier = RecordingNotifier()

        result = await _escalator(test_db, notifier).process_escalations(now=now)

        assert result.escalated == 1
        refreshed = await test_db.get(Alert, alert.alert_id)
        assert refreshed.severity == "medium"
        assert refreshed.escalation_count == 1
        assert refreshed.last_escalated_at == now

    async def test_fresh_alert_untouched(self, test_db, seeded_db):
        now = datetime.utcnow()
        await _alert(test_db, "high", 7, now)

        result = await _escalator(test_db, RecordingNotifier()).process_escalations(now=now)
        assert result.escalated == 0

    async def test_escalation_clock_resets(self, test_db, seeded_db):
        now = datetime.utcnow()
        alert = await _alert(test_db, "low", 25, now)
        escalator = _escalator(test_db, RecordingNotifier())

        await escalator.process_escalations(now=now)
        again = await escalator.process_escalations(now=now + timedelta(hours=1))
        assert again.escalated == 0

        later = await escalator.process_escalations(now=now + timedelta(hours=25))
        assert later.escalated == 1
        refreshed = await test_db.get(Alert, alert.alert_id)
        assert refreshed.severity == "high"
        assert refreshed.escalation_count == 2

    async def test_critical_uses_short_threshold_and_stays_critical(self, test_db, seeded_db):
        now = datetime.utcnow()
        alert = await _alert(test_db, "critical", 7, now)

        result = await _escalator(test_db, RecordingNotifier()).process_escalations(now=now)

        assert result.escalated == 1
        refreshed = await test_db.get(Alert, alert.alert_id)
        assert refreshed.severity == "critical"
        assert refreshed.escalation_count == 1

    async def test_read_alerts_ignored(self, test_db, seeded_db):
        now = datetime.utcnow()
        await _alert(test_db, "low", 48, now, is_read=True, read_at=now)

        result = await _escalator(test_db, RecordingNotifier()).process_escalations(now=now)
        assert result.scanned == 0

    async def test_admins_and_managers_notified(self, test_db, seeded_db):
        now = datetime.utcnow()
        await _alert(test_db, "medium", 30, now)
        notifier = RecordingNotifier()

        result = await _escalator(test_db, notifier).process_escalations(now=now)

        assert result.notifications_sent == 2
        assert {r.role for _, r in notifier.sent} == {"admin", "manager"}
        notice = notifier.sent[0][0]
        assert notice.previous_severity == "medium"
        assert notice.severity == "high"

    async def test_notifier_failure_does_not_undo_escalation(self, test_db, seeded_db):
        now = datetime.utcnow()
        alert = await _alert(test_db, "low", 25, now)

        result = await _escalator(test_db, FailingNotifier()).process_escalations(now=now)

        assert result.escalated == 1
        assert result.notifications_sent == 0
        refreshed = await test_db.get(Alert, alert.alert_id)
        assert refreshed.severity == "medium"
