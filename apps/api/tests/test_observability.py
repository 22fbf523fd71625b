import httpx
import pytest

from punchcard_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from punchcard_api.observability.scheduler import get_scheduler_store


def test_loyalty_store_aggregates_counters() -> None:
    store = LoyaltyObservabilityStore()
    store.record_purchase(3)
    store.record_purchase(2)
    store.record_order("qualifying")
    store.record_reward_transition("earned")
    store.record_detection(None)
    store.record_sync("create", "failure", step="add_customer_to_group")
    store.record_sync("create", "success", step=None)

    snapshot = store.snapshot().as_dict()

    assert snapshot["purchases"] == {"events": 2, "units": 5, "orders:qualifying": 1}
    assert snapshot["rewards"] == {"earned": 1}
    assert snapshot["detections"] == {"not_detected": 1}
    assert snapshot["sync"]["outcomes"] == {"create:failure": 1, "create:success": 1}
    assert snapshot["sync"]["failures_by_step"] == {"add_customer_to_group": 1}

    store.reset()
    assert store.snapshot().purchases == {}


@pytest.mark.asyncio
async def test_observability_endpoints_expose_snapshots(app_with_db) -> None:
    app, _ = app_with_db
    get_loyalty_store().record_reward_transition("redeemed")
    get_scheduler_store().record_dispatch("loyalty_window_expiration", "jobs.window")
    get_scheduler_store().record_attempt_failure(
        "loyalty_window_expiration", "jobs.window", attempts=1, error="boom"
    )

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        snapshot = await client.get("/api/v1/observability/loyalty")
        metrics = await client.get("/api/v1/observability/prometheus")

    assert snapshot.status_code == 200
    body = snapshot.json()
    assert body["loyalty"]["rewards"] == {"redeemed": 1}
    job = body["scheduler"]["jobs"]["loyalty_window_expiration"]
    assert job["totals"]["consecutive_failures"] == 1
    assert job["last_error"] == "boom"

    assert metrics.status_code == 200
    text = metrics.text
    assert 'punchcard_reward_transitions_total{status="redeemed"} 1' in text
    assert 'punchcard_job_consecutive_failures{job="loyalty_window_expiration"} 1' in text
