"""Tests for the scheduled loyalty maintenance jobs."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy import select

from punchcard_api.jobs.loyalty import (
    run_earned_reward_expiration,
    run_reward_sync_reconciliation,
    run_window_expiration,
)
from punchcard_api.models.loyalty import LoyaltyReward, RewardStatus
from punchcard_api.services.loyalty import ProgressLedger
from punchcard_api.services.loyalty.dates import utc_today


async def _purchase(session_factory, tenant_id, order_id, quantity, *, days_ago=1, customer_id="cust-job"):
    async with session_factory() as session:
        outcome = await ProgressLedger(session).record_purchase(
            tenant_id,
            order_id=order_id,
            customer_id=customer_id,
            variation_id="var-bag-small",
            quantity=quantity,
            unit_price_cents=1599,
            purchased_at=datetime.now(timezone.utc) - timedelta(days=days_ago),
        )
        await session.commit()
        return outcome


@pytest.mark.asyncio
async def test_window_expiration_job_sweeps_every_active_tenant(session_factory, seed_offer) -> None:
    first_tenant, second_tenant = uuid4(), uuid4()
    await seed_offer(first_tenant)
    await seed_offer(second_tenant)
    await _purchase(session_factory, first_tenant, "order-a", 4, days_ago=40)
    await _purchase(session_factory, second_tenant, "order-b", 2, days_ago=40)

    summary = await run_window_expiration(
        session_factory=session_factory, as_of=utc_today() + relativedelta(months=13)
    )

    assert summary == {"tenants": 2, "pairs_updated": 2, "expired_quantity": 6, "revoked": 2}

    async with session_factory() as session:
        statuses = (await session.execute(select(LoyaltyReward.status))).scalars().all()
        assert statuses == [RewardStatus.REVOKED, RewardStatus.REVOKED]


@pytest.mark.asyncio
async def test_window_expiration_job_respects_explicit_tenants(session_factory, seed_offer) -> None:
    first_tenant, second_tenant = uuid4(), uuid4()
    await seed_offer(first_tenant)
    await seed_offer(second_tenant)
    await _purchase(session_factory, first_tenant, "order-a", 4, days_ago=40)
    await _purchase(session_factory, second_tenant, "order-b", 2, days_ago=40)

    summary = await run_window_expiration(
        session_factory=session_factory,
        tenant_ids=[str(first_tenant)],
        as_of=utc_today() + relativedelta(months=13),
    )

    assert summary["tenants"] == 1
    assert summary["expired_quantity"] == 4


@pytest.mark.asyncio
async def test_earned_reward_expiration_job(session_factory, seed_offer, tenant_id, pos_backend) -> None:
    await seed_offer(tenant_id)
    await _purchase(session_factory, tenant_id, "order-earn", 12, days_ago=20)

    summary = await run_earned_reward_expiration(
        session_factory=session_factory,
        now=datetime.now(timezone.utc) + relativedelta(months=13),
        client_factory=pos_backend.client_factory,
    )

    assert summary == {"tenants": 1, "revoked": 1, "unlocked_events": 1, "cleanup_failures": 0}


@pytest.mark.asyncio
async def test_reconciliation_job_reports_drift_without_fixing(
    session_factory, seed_offer, tenant_id, pos_backend
) -> None:
    await seed_offer(tenant_id)
    await _purchase(session_factory, tenant_id, "order-earn", 12)

    summary = await run_reward_sync_reconciliation(
        session_factory=session_factory,
        tenant_ids=[tenant_id],
        fix_issues=False,
        client_factory=pos_backend.client_factory,
    )

    assert summary["checked"] == 1
    assert summary["invalid"] == 1
    assert summary["fixed"] == 0
    assert summary["issues"] == {"MISSING_POS_IDS": 1}
    assert pos_backend.requests == []


@pytest.mark.asyncio
async def test_reconciliation_job_fixes_drift_and_retries_cleanup(
    session_factory, seed_offer, tenant_id, pos_backend
) -> None:
    await seed_offer(tenant_id)
    await _purchase(session_factory, tenant_id, "order-earn", 12)

    fixed = await run_reward_sync_reconciliation(
        session_factory=session_factory, fix_issues=True, client_factory=pos_backend.client_factory
    )

    assert fixed["fixed"] == 1
    assert fixed["cleanup_retried"] == 0

    async with session_factory() as session:
        reward = (await session.execute(select(LoyaltyReward))).scalar_one()
        assert reward.pos_discount_id in pos_backend.catalog
        reward.status = RewardStatus.REDEEMED
        await session.commit()

    retried = await run_reward_sync_reconciliation(
        session_factory=session_factory, fix_issues=True, client_factory=pos_backend.client_factory
    )

    assert retried["checked"] == 0
    assert retried["cleanup_retried"] == 1
    assert retried["cleanup_failures"] == 0
    assert pos_backend.catalog == {}
