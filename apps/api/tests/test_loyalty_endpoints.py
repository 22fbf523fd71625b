from uuid import uuid4

import httpx
import pytest

from punchcard_api.core.settings import settings


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _base(tenant_id) -> str:
    return f"/api/v1/loyalty/tenants/{tenant_id}"


@pytest.mark.asyncio
async def test_order_intake_records_purchases_and_earns_reward(
    app_with_db, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    app, _ = app_with_db
    await seed_offer(tenant_id)
    order = build_order("order-http", lines=[build_line("var-bag-small", 12), build_line("var-leash", 1)])

    async with _client(app) as client:
        response = await client.post(f"{_base(tenant_id)}/orders", json={"order": order})
        duplicate = await client.post(f"{_base(tenant_id)}/orders", json={"order": order})

    assert response.status_code == 200
    payload = response.json()
    assert payload["orderId"] == "order-http"
    assert payload["alreadyProcessed"] is False
    assert payload["resultType"] == "qualifying"
    assert payload["qualifyingItems"] == 1
    assert payload["totalLineItems"] == 2
    assert len(payload["earnedRewardIds"]) == 1
    assert payload["lines"][0]["rewardStatus"] == "earned"
    assert payload["lines"][1]["reason"] == "variation_not_qualifying"
    assert payload["redemption"]["detected"] is False
    assert len(pos_backend.groups) == 1

    assert duplicate.status_code == 200
    assert duplicate.json()["alreadyProcessed"] is True
    assert duplicate.json()["redemption"] is None


@pytest.mark.asyncio
async def test_order_intake_rejects_unknown_source(app_with_db, tenant_id, build_order) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        response = await client.post(
            f"{_base(tenant_id)}/orders", json={"order": build_order("order-src"), "source": "fax"}
        )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_rewards_can_be_listed_inspected_and_redeemed(
    app_with_db, seed_offer, tenant_id, build_order, build_line
) -> None:
    app, _ = app_with_db
    offer_id = await seed_offer(tenant_id)
    order = build_order("order-earn", customer_id="cust-http", lines=[build_line("var-bag-small", 14)])

    async with _client(app) as client:
        await client.post(f"{_base(tenant_id)}/orders", json={"order": order})

        listed = await client.get(f"{_base(tenant_id)}/rewards", params={"status": "earned"})
        assert listed.status_code == 200
        rewards = listed.json()
        assert len(rewards) == 1
        reward_id = rewards[0]["id"]
        assert rewards[0]["offerId"] == str(offer_id)
        assert rewards[0]["customerId"] == "cust-http"
        assert rewards[0]["currentQuantity"] == 12

        detail = await client.get(f"{_base(tenant_id)}/rewards/{reward_id}")
        assert detail.status_code == 200
        body = detail.json()
        assert body["offerName"] == "Acme Kibble small"
        assert [event["quantity"] for event in body["lockedEvents"]] == [12]
        assert body["lockedEvents"][0]["splitRole"] == "locked"
        assert body["posObjectIds"]["discount_id"] is not None

        redeemed = await client.post(
            f"{_base(tenant_id)}/rewards/{reward_id}/redeem",
            json={"customerId": "cust-http", "redeemedBy": "clerk-1", "adminNotes": "Walk-in"},
        )
        assert redeemed.status_code == 200
        redemption = redeemed.json()
        assert redemption["rewardId"] == reward_id
        assert redemption["redemptionType"] == "manual_admin"
        assert redemption["redeemedBy"] == "clerk-1"

        again = await client.post(f"{_base(tenant_id)}/rewards/{reward_id}/redeem", json={})
        assert again.status_code == 409

        missing = await client.post(f"{_base(tenant_id)}/rewards/{uuid4()}/redeem", json={})
        assert missing.status_code == 404

        not_found = await client.get(f"{_base(tenant_id)}/rewards/{uuid4()}")
        assert not_found.status_code == 404

        history = await client.get(f"{_base(tenant_id)}/redemptions", params={"customerId": "cust-http"})
        assert [item["id"] for item in history.json()] == [redemption["id"]]

        in_progress = await client.get(
            f"{_base(tenant_id)}/rewards", params={"status": "in_progress", "customerId": "cust-http"}
        )
        assert [item["currentQuantity"] for item in in_progress.json()] == [2]

        bad_status = await client.get(f"{_base(tenant_id)}/rewards", params={"status": "lost"})
        assert bad_status.status_code == 400


@pytest.mark.asyncio
async def test_detect_redemption_endpoint_supports_dry_run(
    app_with_db, seed_offer, tenant_id, build_order, build_line
) -> None:
    app, _ = app_with_db
    await seed_offer(tenant_id)

    async with _client(app) as client:
        await client.post(
            f"{_base(tenant_id)}/orders",
            json={"order": build_order("order-earn", lines=[build_line("var-bag-small", 12, unit_cents=1399)])},
        )
        free_order = build_order(
            "order-free", lines=[build_line("var-bag-small", 1, unit_cents=1399, discount_cents=1399)]
        )

        dry = await client.post(
            f"{_base(tenant_id)}/orders/detect-redemption", json={"order": free_order, "dryRun": True}
        )
        real = await client.post(f"{_base(tenant_id)}/orders/detect-redemption", json={"order": free_order})

    assert dry.status_code == 200
    assert dry.json()["detected"] is True
    assert dry.json()["dryRun"] is True
    assert dry.json()["redemptionId"] is None

    assert real.json()["method"] == "free_item_fallback"
    assert real.json()["redeemedValueCents"] == 1399
    assert real.json()["redemptionId"] is not None


@pytest.mark.asyncio
async def test_customer_summary_and_audit_log(app_with_db, seed_offer, tenant_id, build_order, build_line) -> None:
    app, _ = app_with_db
    offer_id = await seed_offer(tenant_id)

    async with _client(app) as client:
        await client.post(
            f"{_base(tenant_id)}/orders",
            json={"order": build_order("order-sum", customer_id="cust-sum", lines=[build_line("var-bag-small", 5)])},
        )

        summary = await client.get(f"{_base(tenant_id)}/customers/cust-sum/summary")
        audit = await client.get(
            f"{_base(tenant_id)}/audit-logs", params={"action": "PURCHASE_RECORDED", "customerId": "cust-sum"}
        )
        bad_action = await client.get(f"{_base(tenant_id)}/audit-logs", params={"action": "EXPLODED"})
        empty = await client.get(f"{_base(tenant_id)}/customers/nobody/summary")

    assert summary.status_code == 200
    [row] = summary.json()
    assert row["offerId"] == str(offer_id)
    assert row["currentQuantity"] == 5
    assert row["requiredQuantity"] == 12
    assert row["hasEarnedReward"] is False
    assert row["totalLifetimePurchases"] == 5

    assert audit.status_code == 200
    page = audit.json()
    assert page["total"] == 1
    assert page["entries"][0]["orderId"] == "order-sum"
    assert page["entries"][0]["triggeredBy"] == "WEBHOOK"

    assert bad_action.status_code == 400
    assert empty.json() == []


@pytest.mark.asyncio
async def test_sync_validation_endpoint(app_with_db, seed_offer, tenant_id, pos_backend, build_order, build_line) -> None:
    app, _ = app_with_db
    await seed_offer(tenant_id)

    async with _client(app) as client:
        await client.post(
            f"{_base(tenant_id)}/orders",
            json={"order": build_order("order-sync", lines=[build_line("var-bag-small", 12)])},
        )
        pos_backend.memberships["cust-1"].clear()

        report = await client.post(f"{_base(tenant_id)}/sync/validate")
        fixed = await client.post(f"{_base(tenant_id)}/sync/validate", params={"fix": "true"})

    assert report.status_code == 200
    assert report.json()[0]["issue"] == "CUSTOMER_NOT_IN_GROUP"
    assert report.json()[0]["fixed"] is False
    assert fixed.json()[0]["fixAction"] == "READDED_TO_GROUP"
    assert len(pos_backend.memberships["cust-1"]) == 1


@pytest.mark.asyncio
async def test_api_key_is_enforced_when_configured(app_with_db, tenant_id, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "intake_api_key", "secret-key")

    async with _client(app) as client:
        rejected = await client.get(f"{_base(tenant_id)}/rewards")
        accepted = await client.get(f"{_base(tenant_id)}/rewards", headers={"X-API-Key": "secret-key"})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json() == []
