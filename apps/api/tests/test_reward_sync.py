from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from punchcard_api.models.loyalty import LoyaltyQualifyingVariation, LoyaltyReward
from punchcard_api.observability.loyalty import get_loyalty_store
from punchcard_api.services.loyalty import (
    ProgressLedger,
    RewardStateMachine,
    RewardSyncOrchestrator,
    SyncIssue,
)


CUSTOMER = "cust-sync"


async def _earned_reward(session, tenant_id):
    outcome = await ProgressLedger(session).record_purchase(
        tenant_id,
        order_id="order-sync",
        customer_id=CUSTOMER,
        variation_id="var-bag-small",
        quantity=12,
        unit_price_cents=1500,
        purchased_at=datetime.now(timezone.utc),
    )
    await session.commit()
    return outcome.progress.earned_reward_ids[0]


@pytest.mark.asyncio
async def test_create_automation_persists_pos_ids(session_factory, seed_offer, tenant_id, pos_backend) -> None:
    await seed_offer(tenant_id, variation_ids=("var-bag-small", "var-bag-small-2"))

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        orchestrator = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)

        outcome = await orchestrator.create_reward_automation(tenant_id, reward_id)

        assert outcome.success is True
        assert outcome.failed_step is None
        reward = await session.get(LoyaltyReward, reward_id)
        assert reward.pos_group_id in pos_backend.groups
        assert reward.pos_discount_id in pos_backend.catalog
        assert reward.pos_product_set_id in pos_backend.catalog
        assert reward.pos_pricing_rule_id in pos_backend.catalog
        assert reward.pos_synced_at is not None
        assert reward.pos_group_id in pos_backend.memberships[CUSTOMER]

        product_set = pos_backend.catalog[reward.pos_product_set_id]
        assert product_set["product_set_data"]["product_ids_any"] == ["var-bag-small", "var-bag-small-2"]

        again = await orchestrator.create_reward_automation(tenant_id, reward_id)
        assert again.skipped is True
        assert pos_backend.calls("POST", "^/customers/groups$") == 1

    assert get_loyalty_store().snapshot().sync["outcomes"]["create:success"] == 2


@pytest.mark.asyncio
async def test_failed_catalog_upsert_compensates_completed_steps(
    session_factory, seed_offer, tenant_id, pos_backend
) -> None:
    await seed_offer(tenant_id)
    pos_backend.fail("POST", "^/catalog/batch-upsert$")

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        outcome = await RewardSyncOrchestrator(
            session, client_factory=pos_backend.client_factory
        ).create_reward_automation(tenant_id, reward_id)

        assert outcome.success is False
        assert outcome.failed_step == "upsert_catalog_objects"
        assert outcome.compensated_steps == ["add_customer_to_group", "create_customer_group"]
        assert pos_backend.groups == {}
        assert pos_backend.memberships[CUSTOMER] == set()

        reward = await session.get(LoyaltyReward, reward_id)
        assert all(value is None for value in reward.pos_object_ids.values())

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.sync["outcomes"]["create:failure"] == 1
    assert snapshot.sync["outcomes"]["create:rolled_back"] == 1
    assert snapshot.sync["failures_by_step"]["upsert_catalog_objects"] == 1


@pytest.mark.asyncio
async def test_failed_group_membership_deletes_new_group(session_factory, seed_offer, tenant_id, pos_backend) -> None:
    await seed_offer(tenant_id)
    pos_backend.fail("PUT", "^/customers/[^/]+/groups/[^/]+$")

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        outcome = await RewardSyncOrchestrator(
            session, client_factory=pos_backend.client_factory
        ).create_reward_automation(tenant_id, reward_id)

        assert outcome.success is False
        assert outcome.failed_step == "add_customer_to_group"
        assert outcome.compensated_steps == ["create_customer_group"]
        assert pos_backend.groups == {}
        assert pos_backend.catalog == {}
        assert pos_backend.calls("POST", "^/catalog/batch-upsert$") == 0

        reward = await session.get(LoyaltyReward, reward_id)
        assert all(value is None for value in reward.pos_object_ids.values())

    assert get_loyalty_store().snapshot().sync["failures_by_step"]["add_customer_to_group"] == 1


@pytest.mark.asyncio
async def test_offer_without_active_variations_is_not_automated(
    session_factory, seed_offer, tenant_id, pos_backend
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        await session.execute(update(LoyaltyQualifyingVariation).values(is_active=False))
        await session.commit()

        outcome = await RewardSyncOrchestrator(
            session, client_factory=pos_backend.client_factory
        ).create_reward_automation(tenant_id, reward_id)

        assert outcome.success is False
        assert pos_backend.requests == []


@pytest.mark.asyncio
async def test_cleanup_tolerates_objects_already_deleted(
    session_factory, seed_offer, tenant_id, pos_backend
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        orchestrator = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)
        await orchestrator.create_reward_automation(tenant_id, reward_id)

        reward = await session.get(LoyaltyReward, reward_id)
        pos_backend.catalog.pop(reward.pos_discount_id)
        pos_backend.memberships[CUSTOMER].clear()

        outcome = await orchestrator.cleanup_reward_automation(tenant_id, reward_id)

        assert outcome.success is True
        assert pos_backend.catalog == {}
        assert pos_backend.groups == {}
        reward = await session.get(LoyaltyReward, reward_id)
        assert all(value is None for value in reward.pos_object_ids.values())


@pytest.mark.asyncio
async def test_failed_cleanup_keeps_ids_for_retry(session_factory, seed_offer, tenant_id, pos_backend) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        orchestrator = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)
        await orchestrator.create_reward_automation(tenant_id, reward_id)

        pos_backend.fail("DELETE", "^/customers/groups/")
        machine = RewardStateMachine(session, sync=orchestrator)
        outcome = await machine.redeem_reward(tenant_id, reward_id, order_id="order-free")

        assert outcome.sync.success is False
        assert outcome.sync.failed_step == "delete_customer_group"
        reward = await session.get(LoyaltyReward, reward_id)
        assert reward.pos_group_id is not None
        assert reward.pos_discount_id is None

        pos_backend.failures.clear()
        retried = await orchestrator.retry_pending_cleanups(tenant_id)

        assert [item.success for item in retried] == [True]
        reward = await session.get(LoyaltyReward, reward_id)
        assert reward.pos_group_id is None
        assert pos_backend.groups == {}


@pytest.mark.asyncio
async def test_validation_reports_and_fixes_drift(session_factory, seed_offer, tenant_id, pos_backend) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        reward_id = await _earned_reward(session, tenant_id)
        orchestrator = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)

        [missing] = await orchestrator.validate_earned_rewards(tenant_id)
        assert missing.valid is False
        assert missing.issue == SyncIssue.MISSING_POS_IDS
        assert missing.fixed is False

        [created] = await orchestrator.validate_earned_rewards(tenant_id, fix_issues=True)
        assert created.fixed is True
        assert created.fix_action == "CREATED_MISSING_AUTOMATION"

        [healthy] = await orchestrator.validate_earned_rewards(tenant_id)
        assert healthy.valid is True

        reward = await session.get(LoyaltyReward, reward_id)
        pos_backend.memberships[CUSTOMER].discard(reward.pos_group_id)
        [regrouped] = await orchestrator.validate_earned_rewards(tenant_id, fix_issues=True)
        assert regrouped.issue == SyncIssue.CUSTOMER_NOT_IN_GROUP
        assert regrouped.fix_action == "READDED_TO_GROUP"
        assert reward.pos_group_id in pos_backend.memberships[CUSTOMER]

        pos_backend.catalog.pop(reward.pos_discount_id)
        [recreated] = await orchestrator.validate_earned_rewards(tenant_id, fix_issues=True)
        assert recreated.issue == SyncIssue.DISCOUNT_NOT_FOUND
        assert recreated.fix_action == "RECREATED_DISCOUNT"
        reward = await session.get(LoyaltyReward, reward_id)
        assert reward.pos_discount_id in pos_backend.catalog

        pos_backend.catalog[reward.pos_discount_id]["is_deleted"] = True
        [deleted] = await orchestrator.validate_earned_rewards(tenant_id)
        assert deleted.issue == SyncIssue.DISCOUNT_DELETED
        assert deleted.fixed is False


@pytest.mark.asyncio
async def test_validation_reports_api_errors(session_factory, seed_offer, tenant_id, pos_backend) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        await _earned_reward(session, tenant_id)
        orchestrator = RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)
        await orchestrator.validate_earned_rewards(tenant_id, fix_issues=True)

        pos_backend.fail("GET", "^/catalog/object/")
        [result] = await orchestrator.validate_earned_rewards(tenant_id, fix_issues=True)

        assert result.issue == SyncIssue.DISCOUNT_API_ERROR
        assert result.details["status_code"] == 500
        assert result.fixed is False
