import pytest
from sqlalchemy import select

from punchcard_api.models.loyalty import (
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    ProcessedOrderResult,
    RewardStatus,
)
from punchcard_api.models.loyalty_audit import AuditTrigger, LoyaltyAuditLog
from punchcard_api.observability.loyalty import get_loyalty_store
from punchcard_api.services.loyalty import (
    LoyaltyValidationError,
    OrderIntakeService,
    RewardSyncOrchestrator,
)


def _service(session, pos_backend):
    return OrderIntakeService(
        session, sync=RewardSyncOrchestrator(session, client_factory=pos_backend.client_factory)
    )


@pytest.mark.asyncio
async def test_qualifying_lines_are_recorded_and_others_skipped(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)
    order = build_order(
        "order-mixed",
        lines=[
            build_line("var-bag-small", 2, uid="qualifying"),
            build_line("var-treats", 1, uid="other-product"),
            build_line("var-bag-small", 1, unit_cents=1000, discount_cents=1000, uid="comped"),
            {"uid": "custom-amount", "quantity": "1", "base_price_money": {"amount": 500}},
            {"uid": "voided", "catalog_object_id": "var-bag-small", "quantity": "0"},
        ],
    )

    async with session_factory() as session:
        result = await _service(session, pos_backend).process_order(tenant_id, order)

        assert result.already_processed is False
        assert result.result_type == ProcessedOrderResult.QUALIFYING
        assert result.customer_id == "cust-1"
        assert result.qualifying_items == 1
        assert result.total_line_items == 5

        by_uid = {line.line_item_uid: line for line in result.lines}
        assert by_uid["qualifying"].recorded is True
        assert by_uid["qualifying"].reward_status == RewardStatus.IN_PROGRESS
        assert by_uid["qualifying"].current_quantity == 2
        assert by_uid["other-product"].reason == "variation_not_qualifying"
        assert by_uid["comped"].reason == "free_item"
        assert by_uid["custom-amount"].reason == "no_variation"
        assert by_uid["voided"].reason == "non_positive_quantity"

        event = (
            await session.execute(select(LoyaltyPurchaseEvent).where(LoyaltyPurchaseEvent.order_id == "order-mixed"))
        ).scalar_one()
        assert event.receipt_url == "https://receipts.test/order-mixed"
        assert event.payment_type == "CARD"
        assert event.location_id == "loc-1"

        claim = (
            await session.execute(
                select(LoyaltyProcessedOrder).where(LoyaltyProcessedOrder.order_id == "order-mixed")
            )
        ).scalar_one()
        assert claim.result_type == ProcessedOrderResult.QUALIFYING
        assert claim.qualifying_items == 1
        assert claim.source == "webhook"

        triggers = (
            await session.execute(
                select(LoyaltyAuditLog.triggered_by).where(LoyaltyAuditLog.purchase_event_id == event.id)
            )
        ).scalars().all()
        assert triggers == [AuditTrigger.WEBHOOK]

    assert get_loyalty_store().snapshot().purchases["orders:qualifying"] == 1


@pytest.mark.asyncio
async def test_duplicate_order_is_reported_as_already_processed(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)
    order = build_order("order-twice", lines=[build_line("var-bag-small", 3)])

    async with session_factory() as session:
        service = _service(session, pos_backend)
        first = await service.process_order(tenant_id, order)
        second = await service.process_order(tenant_id, order, source="catchup")

        assert first.qualifying_items == 1
        assert second.already_processed is True
        assert second.lines == []

        events = (
            await session.execute(select(LoyaltyPurchaseEvent).where(LoyaltyPurchaseEvent.tenant_id == tenant_id))
        ).scalars().all()
        assert len(events) == 1


@pytest.mark.asyncio
async def test_orders_without_customer_or_lines_are_classified(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        service = _service(session, pos_backend)
        anonymous = await service.process_order(
            tenant_id, build_order("order-anon", customer_id=None, lines=[build_line("var-bag-small", 1)])
        )
        empty = await service.process_order(tenant_id, build_order("order-empty"))
        unrelated = await service.process_order(
            tenant_id, build_order("order-unrelated", lines=[build_line("var-treats", 4)])
        )

        assert anonymous.result_type == ProcessedOrderResult.NO_CUSTOMER
        assert empty.result_type == ProcessedOrderResult.NO_LINE_ITEMS
        assert unrelated.result_type == ProcessedOrderResult.NON_QUALIFYING

        rows = (
            await session.execute(
                select(LoyaltyProcessedOrder.order_id, LoyaltyProcessedOrder.result_type).where(
                    LoyaltyProcessedOrder.tenant_id == tenant_id
                )
            )
        ).all()
        assert dict(rows) == {
            "order-anon": ProcessedOrderResult.NO_CUSTOMER,
            "order-empty": ProcessedOrderResult.NO_LINE_ITEMS,
            "order-unrelated": ProcessedOrderResult.NON_QUALIFYING,
        }


@pytest.mark.asyncio
async def test_customer_override_and_tender_customer_are_used(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        service = _service(session, pos_backend)
        order = build_order("order-override", customer_id=None, lines=[build_line("var-bag-small", 1)])
        overridden = await service.process_order(
            tenant_id, order, customer_id="cust-lookup", customer_source="phone_lookup"
        )

        tender_order = build_order("order-tender", customer_id=None, lines=[build_line("var-bag-small", 1)])
        tender_order["tenders"] = [{"type": "CARD", "customer_id": "cust-tender"}]
        from_tender = await service.process_order(tenant_id, tender_order)

        assert overridden.customer_id == "cust-lookup"
        assert from_tender.customer_id == "cust-tender"

        event = (
            await session.execute(
                select(LoyaltyPurchaseEvent).where(LoyaltyPurchaseEvent.order_id == "order-override")
            )
        ).scalar_one()
        assert event.customer_source == "phone_lookup"


@pytest.mark.asyncio
async def test_lines_paid_with_reward_discount_do_not_accrue(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        service = _service(session, pos_backend)
        earned = await service.process_order(
            tenant_id, build_order("order-earn", lines=[build_line("var-bag-small", 12)])
        )
        reward = await session.get(LoyaltyReward, earned.earned_reward_ids[0])

        order = build_order(
            "order-spend",
            lines=[
                build_line("var-bag-small", 2, unit_cents=1000, discount_cents=1000, applied_discount_uids=["loyalty"]),
            ],
            discounts=[{"uid": "loyalty", "catalog_object_id": reward.pos_discount_id}],
        )
        result = await service.process_order(tenant_id, order)

        assert [line.reason for line in result.lines] == ["loyalty_discount_applied"]
        assert result.result_type == ProcessedOrderResult.NON_QUALIFYING


@pytest.mark.asyncio
async def test_earned_reward_triggers_discount_automation(
    session_factory, seed_offer, tenant_id, pos_backend, build_order, build_line
) -> None:
    await seed_offer(tenant_id)

    async with session_factory() as session:
        result = await _service(session, pos_backend).process_order(
            tenant_id, build_order("order-dozen", lines=[build_line("var-bag-small", 13)])
        )

        assert len(result.earned_reward_ids) == 1
        assert [outcome.success for outcome in result.sync] == [True]
        assert result.lines[0].reward_status == RewardStatus.EARNED
        assert result.lines[0].current_quantity == 1

        reward = await session.get(LoyaltyReward, result.earned_reward_ids[0])
        assert reward.pos_discount_id in pos_backend.catalog
        assert reward.pos_group_id in pos_backend.memberships["cust-1"]


@pytest.mark.asyncio
async def test_unknown_source_is_rejected(session_factory, tenant_id, pos_backend, build_order) -> None:
    async with session_factory() as session:
        with pytest.raises(LoyaltyValidationError):
            await _service(session, pos_backend).process_order(
                tenant_id, build_order("order-x"), source="carrier-pigeon"
            )

        with pytest.raises(LoyaltyValidationError):
            await _service(session, pos_backend).process_order(tenant_id, {"line_items": []})
