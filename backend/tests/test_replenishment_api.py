"""
Tests for the replenishment control surface.

Covers:
  - Scheduler status, start/stop, config updates
  - Manual run acknowledgement and busy rejection
  - Run log pagination and metrics
  - Reorder queue summary, cancel and retry
"""

import asyncio
import uuid

import pytest

from db.models import ReorderQueueEntry
from replenishment.decision import ReorderDecisionEngine, ScanStats


def _queue_entry(item, status="pending") -> ReorderQueueEntry:
    return ReorderQueueEntry(
        queue_id=uuid.uuid4(),
        item_id=item.item_id,
        current_stock=10,
        effective_stock=10,
        reorder_point=50,
        suggested_quantity=40,
        priority_score=60,
        status=status,
    )


@pytest.mark.asyncio
class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
class TestSchedulerEndpoints:
    async def test_status(self, client):
        resp = await client.get("/api/v1/replenishment/scheduler/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["schedule"] == "0 * * * *"
        assert data["currently_executing"] is False
        assert data["total_runs"] == 0

    async def test_start_and_stop(self, client):
        resp = await client.post("/api/v1/replenishment/scheduler/start")
        assert resp.status_code == 200
        assert resp.json()["running"] is True
        assert resp.json()["next_run"] is not None

        resp = await client.post("/api/v1/replenishment/scheduler/stop")
        assert resp.status_code == 200
        assert resp.json()["running"] is False

    async def test_start_rejected_when_disabled(self, client):
        await client.put("/api/v1/replenishment/scheduler/config", json={"enabled": False})
        resp = await client.post("/api/v1/replenishment/scheduler/start")
        assert resp.status_code == 409

    async def test_update_config(self, client):
        resp = await client.put(
            "/api/v1/replenishment/scheduler/config",
            json={"schedule": "30 2 * * *", "batch_size": 25},
        )
        assert resp.status_code == 200
        assert resp.json()["schedule"] == "30 2 * * *"
        assert resp.json()["batch_size"] == 25

    async def test_invalid_cron_is_400(self, client):
        resp = await client.put("/api/v1/replenishment/scheduler/config", json={"schedule": "bogus"})
        assert resp.status_code == 400
        assert "Invalid cron" in resp.json()["detail"]

    async def test_invalid_batch_size_is_422(self, client):
        resp = await client.put("/api/v1/replenishment/scheduler/config", json={"batch_size": 0})
        assert resp.status_code == 422

    async def test_run_now_then_logs(self, client, scheduler, seeded_db):
        resp = await client.post("/api/v1/replenishment/scheduler/run-now")
        assert resp.status_code == 202
        assert resp.json()["accepted"] is True

        assert await scheduler.shutdown(timeout=5) is True

        resp = await client.get("/api/v1/replenishment/scheduler/logs")
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 1
        assert page["items"][0]["status"] == "success"
        assert page["items"][0]["triggered_by"] == "manual"

        resp = await client.get("/api/v1/replenishment/scheduler/metrics", params={"days": 1})
        assert resp.status_code == 200
        assert resp.json()["total_runs"] == 1
        assert resp.json()["success_rate"] == 100.0

    async def test_run_now_busy_is_409(self, client, scheduler, seeded_db, monkeypatch):
        gate = asyncio.Event()

        async def slow_scan(self, run_id=None):
            await gate.wait()
            return ScanStats()

        monkeypatch.setattr(ReorderDecisionEngine, "scan", slow_scan)

        first = await client.post("/api/v1/replenishment/scheduler/run-now")
        assert first.status_code == 202

        second = await client.post("/api/v1/replenishment/scheduler/run-now")
        assert second.status_code == 409

        gate.set()
        assert await scheduler.shutdown(timeout=5) is True

    async def test_run_now_after_shutdown_is_503(self, client, scheduler):
        await scheduler.shutdown(timeout=1)
        resp = await client.post("/api/v1/replenishment/scheduler/run-now")
        assert resp.status_code == 503

    async def test_logs_reject_unknown_status(self, client):
        resp = await client.get("/api/v1/replenishment/scheduler/logs", params={"status": "exploded"})
        assert resp.status_code == 400

    async def test_logs_limit_capped(self, client):
        resp = await client.get("/api/v1/replenishment/scheduler/logs", params={"limit": 1000})
        assert resp.status_code == 422


@pytest.mark.asyncio
class TestQueueEndpoints:
    async def test_summary(self, client, test_db, seeded_db):
        item = seeded_db["item"]
        test_db.add_all([_queue_entry(item), _queue_entry(item, status="failed")])
        await test_db.commit()

        resp = await client.get("/api/v1/replenishment/queue/summary")
        assert resp.status_code == 200
        assert resp.json() == {"pending": 1, "by_status": {"pending": 1, "failed": 1}}

    async def test_cancel_pending_entry(self, client, test_db, seeded_db):
        entry = _queue_entry(seeded_db["item"])
        test_db.add(entry)
        await test_db.commit()

        resp = await client.post(f"/api/v1/replenishment/queue/{entry.queue_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        again = await client.post(f"/api/v1/replenishment/queue/{entry.queue_id}/cancel")
        assert again.status_code == 409

    async def test_cancel_unknown_entry(self, client):
        resp = await client.post(f"/api/v1/replenishment/queue/{uuid.uuid4()}/cancel")
        assert resp.status_code == 404

    async def test_retry_failed(self, client, test_db, seeded_db):
        test_db.add(_queue_entry(seeded_db["item"], status="failed"))
        await test_db.commit()

        resp = await client.post("/api/v1/replenishment/queue/retry-failed")
        assert resp.status_code == 200
        assert resp.json() == {"requeued": 1}
