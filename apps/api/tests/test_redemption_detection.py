from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from punchcard_api.models.loyalty import (
    DetectionMethod,
    LoyaltyRedemption,
    LoyaltyReward,
    RedemptionType,
    RewardStatus,
)
from punchcard_api.observability.loyalty import get_loyalty_store
from punchcard_api.services.loyalty import (
    ProgressLedger,
    RedemptionDetector,
    RewardStateMachine,
    RewardSyncOrchestrator,
)


CUSTOMER = "cust-detect"


async def _earn(session, tenant_id, *, unit_price_cents=1000):
    outcome = await ProgressLedger(session).record_purchase(
        tenant_id,
        order_id="order-earn",
        customer_id=CUSTOMER,
        variation_id="var-bag-small",
        quantity=12,
        unit_price_cents=unit_price_cents,
        purchased_at=datetime.now(timezone.utc),
    )
    await session.commit()
    return outcome.progress.earned_reward_ids[0]


def _detector(session, pos_backend, **kwargs):
    sync = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)
    return RedemptionDetector(session, rewards=RewardStateMachine(session, sync=sync), **kwargs)


class _FailingRewards:
    async def redeem_reward(self, *args, **kwargs):
        raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_reward_discount_on_order_is_detected_and_redeemed(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earn(session, tenant_id)
        sync = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)
        await sync.create_reward_automation(tenant_id, reward_id)
        reward = await session.get(LoyaltyReward, reward_id)

        order = build_order(
            "order-with-discount",
            customer_id=None,
            lines=[build_line("var-bag-small", 1, unit_cents=1000, discount_cents=1000, applied_discount_uids=["d-1"])],
            discounts=[
                {
                    "uid": "d-1",
                    "catalog_object_id": reward.pos_discount_id,
                    "applied_money": {"amount": 1000, "currency": "USD"},
                }
            ],
        )
        result = await _detector(session, pos_backend).detect_redemption(order, tenant_id)

        assert result.detected is True
        assert result.method == DetectionMethod.CATALOG_OBJECT_ID
        assert result.reward_id == reward_id
        assert result.customer_id == CUSTOMER
        assert result.redeemed_value_cents == 1000
        assert result.redemption is not None

        redemption = await session.get(LoyaltyRedemption, result.redemption.redemption_id)
        assert redemption.redemption_type == RedemptionType.AUTO_DETECTED
        assert redemption.detection_method == DetectionMethod.CATALOG_OBJECT_ID
        assert redemption.order_id == "order-with-discount"

        reward = await session.get(LoyaltyReward, reward_id)
        assert reward.status == RewardStatus.REDEEMED
        assert all(value is None for value in reward.pos_object_ids.values())
        assert pos_backend.catalog == {}

    assert get_loyalty_store().snapshot().detections["catalog_object_id"] == 1


@pytest.mark.asyncio
async def test_free_qualifying_item_falls_back_to_base_price(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earn(session, tenant_id, unit_price_cents=1399)

        order = build_order(
            "order-free-bag",
            customer_id=CUSTOMER,
            lines=[build_line("var-bag-small", 1, unit_cents=1399, discount_cents=1399)],
        )
        result = await _detector(session, pos_backend).detect_redemption(order, tenant_id)

        assert result.detected is True
        assert result.method == DetectionMethod.FREE_ITEM_FALLBACK
        assert result.reward_id == reward_id
        assert result.redeemed_value_cents == 1399
        assert result.redeemed_variation_id == "var-bag-small"

        redemption = await session.get(LoyaltyRedemption, result.redemption.redemption_id)
        assert redemption.redeemed_item_name == "Acme Kibble"


@pytest.mark.asyncio
async def test_spread_discount_matches_within_tolerance(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earn(session, tenant_id, unit_price_cents=1000)
        lines = [
            build_line("var-bag-small", 1, unit_cents=1000, discount_cents=330, uid=f"line-{index}")
            for index in range(3)
        ]
        order = build_order("order-spread", customer_id=CUSTOMER, lines=lines)

        result = await _detector(session, pos_backend, match_ratio=0.95).detect_redemption(
            order, tenant_id, dry_run=True
        )

        assert result.detected is True
        assert result.dry_run is True
        assert result.method == DetectionMethod.DISCOUNT_AMOUNT_FALLBACK
        assert result.redeemed_value_cents == 990
        assert result.details["expected_value_cents"] == 1000
        assert result.redemption is None

        status = (
            await session.execute(select(LoyaltyReward.status).where(LoyaltyReward.id == reward_id))
        ).scalar_one()
        assert status == RewardStatus.EARNED


@pytest.mark.asyncio
async def test_spread_discount_below_tolerance_is_ignored(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        await _earn(session, tenant_id, unit_price_cents=1000)
        lines = [
            build_line("var-bag-small", 1, unit_cents=1000, discount_cents=amount, uid=f"line-{index}")
            for index, amount in enumerate((310, 310, 300))
        ]
        order = build_order("order-short", customer_id=CUSTOMER, lines=lines)

        result = await _detector(session, pos_backend, match_ratio=0.95).detect_redemption(order, tenant_id)

        assert result.detected is False
        assert result.error is None

    assert get_loyalty_store().snapshot().detections["not_detected"] == 1


@pytest.mark.asyncio
async def test_order_without_customer_or_reward_discount_is_not_detected(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        await _earn(session, tenant_id)
        order = build_order(
            "order-anonymous",
            customer_id=None,
            lines=[build_line("var-bag-small", 1, unit_cents=1000, discount_cents=1000)],
        )
        order["tenders"] = [{"type": "CASH"}]

        result = await _detector(session, pos_backend).detect_redemption(order, tenant_id)

        assert result.detected is False


@pytest.mark.asyncio
async def test_detection_failure_is_reported_not_raised(
    session_factory, seed_offer, tenant_id, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        await _earn(session, tenant_id, unit_price_cents=1399)
        order = build_order(
            "order-boom",
            customer_id=CUSTOMER,
            lines=[build_line("var-bag-small", 1, unit_cents=1399, discount_cents=1399)],
        )

        detector = RedemptionDetector(session, rewards=_FailingRewards())
        result = await detector.detect_redemption(order, tenant_id)

        assert result.detected is False
        assert result.error == "database unavailable"

    assert get_loyalty_store().snapshot().detections["error"] == 1
