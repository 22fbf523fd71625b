"""Order intake: turn a completed POS order into ledger purchases."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.core.settings import settings
from punchcard_api.models.loyalty import (
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    ProcessedOrderResult,
    RewardStatus,
)
from punchcard_api.models.loyalty_audit import AuditTrigger
from punchcard_api.observability.loyalty import get_loyalty_store

from .dates import utcnow
from .errors import LoyaltyError, LoyaltyValidationError
from .ledger import ProgressLedger
from .payloads import NormalizedOrder, OrderLineItem, normalize_order
from .sync import RewardSyncOrchestrator, SyncOutcome

_SOURCE_TRIGGERS = {
    "webhook": AuditTrigger.WEBHOOK,
    "catchup": AuditTrigger.BACKFILL,
    "backfill": AuditTrigger.BACKFILL,
}


@dataclass(slots=True)
class IntakeLineResult:
    line_item_uid: str | None
    variation_id: str | None
    quantity: int
    recorded: bool
    reason: str | None = None
    reward_status: RewardStatus | None = None
    current_quantity: int | None = None
    required_quantity: int | None = None


@dataclass(slots=True)
class IntakeResult:
    order_id: str
    already_processed: bool = False
    result_type: ProcessedOrderResult | None = None
    customer_id: str | None = None
    qualifying_items: int = 0
    total_line_items: int = 0
    lines: list[IntakeLineResult] = field(default_factory=list)
    earned_reward_ids: list[UUID] = field(default_factory=list)
    sync: list[SyncOutcome] = field(default_factory=list)


class OrderIntakeService:
    """Idempotent per-order intake in front of :class:`ProgressLedger`."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: ProgressLedger | None = None,
        sync: RewardSyncOrchestrator | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or ProgressLedger(db_session)
        self._sync = sync or RewardSyncOrchestrator(db_session)
        self._metrics = get_loyalty_store()

    async def _already_seen(self, tenant_id: UUID, order_id: str) -> bool:
        claimed = await self._db.execute(
            select(LoyaltyProcessedOrder.id)
            .where(LoyaltyProcessedOrder.tenant_id == tenant_id, LoyaltyProcessedOrder.order_id == order_id)
            .limit(1)
        )
        if claimed.scalar_one_or_none() is not None:
            return True
        recorded = await self._db.execute(
            select(LoyaltyPurchaseEvent.id)
            .where(LoyaltyPurchaseEvent.tenant_id == tenant_id, LoyaltyPurchaseEvent.order_id == order_id)
            .limit(1)
        )
        return recorded.scalar_one_or_none() is not None

    async def _own_discount_uids(self, tenant_id: UUID, order: NormalizedOrder) -> set[str]:
        """Uids of order discounts that are this tenant's own reward discounts."""

        catalog_ids = {
            value
            for discount in order.discounts
            for value in (discount.catalog_object_id, discount.pricing_rule_id)
            if value
        }
        if not catalog_ids:
            return set()
        rows = await self._db.execute(
            select(LoyaltyReward.pos_discount_id, LoyaltyReward.pos_pricing_rule_id).where(
                LoyaltyReward.tenant_id == tenant_id,
                or_(
                    LoyaltyReward.pos_discount_id.in_(catalog_ids),
                    LoyaltyReward.pos_pricing_rule_id.in_(catalog_ids),
                ),
            )
        )
        ours = {value for row in rows.all() for value in row if value}
        return {
            discount.uid
            for discount in order.discounts
            if discount.uid and (discount.catalog_object_id in ours or discount.pricing_rule_id in ours)
        }

    @staticmethod
    def _skip_reason(line: OrderLineItem, own_discount_uids: set[str]) -> str | None:
        if not line.variation_id:
            return "no_variation"
        if line.quantity <= 0:
            return "non_positive_quantity"
        if line.is_free:
            return "free_item"
        if own_discount_uids.intersection(line.applied_discount_uids):
            return "loyalty_discount_applied"
        return None

    async def process_order(
        self,
        tenant_id: UUID,
        order: NormalizedOrder | Mapping[str, Any],
        *,
        customer_id: str | None = None,
        source: str = "webhook",
        customer_source: str = "order",
    ) -> IntakeResult:
        """Record every qualifying line of ``order`` exactly once per (tenant, order id)."""

        if tenant_id is None:
            raise LoyaltyValidationError("tenant_id")
        normalized = normalize_order(order)
        if not normalized.order_id:
            raise LoyaltyValidationError("order_id")
        if source not in settings.intake_sources:
            raise LoyaltyValidationError("source", f"Unknown intake source {source!r}")

        order_id = str(normalized.order_id)
        log = logger.bind(tenant_id=str(tenant_id), order_id=order_id, source=source)

        if await self._already_seen(tenant_id, order_id):
            log.debug("Order already processed for loyalty")
            return IntakeResult(order_id=order_id, already_processed=True)

        claim = LoyaltyProcessedOrder(
            tenant_id=tenant_id,
            order_id=order_id,
            result_type=ProcessedOrderResult.PENDING,
            source=source,
            total_line_items=len(normalized.line_items),
        )
        try:
            async with self._db.begin_nested():
                self._db.add(claim)
                await self._db.flush()
        except IntegrityError:
            log.info("Order claimed concurrently, skipping")
            return IntakeResult(order_id=order_id, already_processed=True)

        resolved_customer = normalized.resolve_customer_id(customer_id)
        result = IntakeResult(
            order_id=order_id,
            customer_id=resolved_customer,
            total_line_items=len(normalized.line_items),
        )

        if not resolved_customer or not normalized.line_items:
            result.result_type = (
                ProcessedOrderResult.NO_CUSTOMER if not resolved_customer else ProcessedOrderResult.NO_LINE_ITEMS
            )
            claim.result_type = result.result_type
            claim.customer_id = resolved_customer
            await self._db.commit()
            self._metrics.record_order(result.result_type.value)
            log.debug("Order not eligible for loyalty", result_type=result.result_type.value)
            return result

        own_discount_uids = await self._own_discount_uids(tenant_id, normalized)
        purchased_at = normalized.created_at or utcnow()
        triggered_by = _SOURCE_TRIGGERS.get(source, AuditTrigger.SYSTEM)

        for line in normalized.line_items:
            reason = self._skip_reason(line, own_discount_uids)
            if reason is not None:
                result.lines.append(
                    IntakeLineResult(
                        line_item_uid=line.uid,
                        variation_id=line.variation_id,
                        quantity=line.quantity,
                        recorded=False,
                        reason=reason,
                    )
                )
                continue

            try:
                async with self._db.begin_nested():
                    outcome = await self._ledger.record_purchase(
                        tenant_id,
                        order_id=order_id,
                        customer_id=resolved_customer,
                        variation_id=line.variation_id,
                        quantity=line.quantity,
                        unit_price_cents=line.base_price_cents,
                        purchased_at=purchased_at,
                        location_id=normalized.location_id,
                        receipt_url=normalized.receipt_url,
                        customer_source=customer_source,
                        payment_type=normalized.payment_type,
                        triggered_by=triggered_by,
                    )
            except (SQLAlchemyError, LoyaltyError) as exc:
                log.exception(
                    "Failed to record loyalty line item; continuing with the rest of the order",
                    variation_id=line.variation_id,
                    error=str(exc),
                )
                result.lines.append(
                    IntakeLineResult(
                        line_item_uid=line.uid,
                        variation_id=line.variation_id,
                        quantity=line.quantity,
                        recorded=False,
                        reason="error",
                    )
                )
                continue

            line_result = IntakeLineResult(
                line_item_uid=line.uid,
                variation_id=line.variation_id,
                quantity=line.quantity,
                recorded=outcome.processed,
                reason=outcome.reason,
            )
            if outcome.progress is not None:
                line_result.reward_status = outcome.progress.status
                line_result.current_quantity = outcome.progress.current_quantity
                line_result.required_quantity = outcome.progress.required_quantity
                result.earned_reward_ids.extend(outcome.progress.earned_reward_ids)
            if outcome.processed:
                result.qualifying_items += 1
            result.lines.append(line_result)

        result.result_type = (
            ProcessedOrderResult.QUALIFYING if result.qualifying_items else ProcessedOrderResult.NON_QUALIFYING
        )
        claim.result_type = result.result_type
        claim.customer_id = resolved_customer
        claim.qualifying_items = result.qualifying_items
        await self._db.commit()

        self._metrics.record_order(result.result_type.value)
        log.info(
            "Order processed for loyalty",
            customer_id=resolved_customer,
            result_type=result.result_type.value,
            qualifying_items=result.qualifying_items,
            earned_rewards=len(result.earned_reward_ids),
        )

        if result.earned_reward_ids:
            result.sync = await self._sync.create_for_rewards(tenant_id, result.earned_reward_ids)
        return result


__all__ = ["IntakeLineResult", "IntakeResult", "OrderIntakeService"]
