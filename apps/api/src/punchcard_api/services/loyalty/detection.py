"""Infer from order data alone whether an earned reward was spent at checkout.

Three strategies run in order and the first match wins:

1. a discount line references the catalog discount or pricing rule created for a reward;
2. a qualifying item carries a price but was rung up at zero;
3. discounts spread across qualifying lines add up to (nearly) one unit's price.

Detection is a side channel of order processing. Any failure is logged and reported
as "not detected" so it can never abort ingestion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.core.settings import settings
from punchcard_api.models.loyalty import (
    DetectionMethod,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyReward,
    RedemptionType,
    RewardStatus,
)
from punchcard_api.observability.loyalty import get_loyalty_store
from punchcard_api.observability.tracing import get_tracer

from .payloads import NormalizedOrder, normalize_order
from .rewards import RedemptionOutcome, RewardStateMachine


@dataclass(slots=True)
class DetectionResult:
    detected: bool
    reward_id: UUID | None = None
    offer_id: UUID | None = None
    customer_id: str | None = None
    method: DetectionMethod | None = None
    redeemed_value_cents: int | None = None
    redeemed_variation_id: str | None = None
    dry_run: bool = False
    redemption: RedemptionOutcome | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def not_detected(cls, *, error: str | None = None, dry_run: bool = False) -> "DetectionResult":
        return cls(detected=False, error=error, dry_run=dry_run)


class RedemptionDetector:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        rewards: RewardStateMachine | None = None,
        match_ratio: float | None = None,
    ) -> None:
        self._db = db_session
        self._rewards = rewards or RewardStateMachine(db_session)
        self._match_ratio = match_ratio if match_ratio is not None else settings.discount_match_ratio
        self._metrics = get_loyalty_store()

    async def detect_redemption(
        self,
        order: NormalizedOrder | Mapping[str, Any],
        tenant_id: UUID,
        *,
        dry_run: bool = False,
        customer_id: str | None = None,
    ) -> DetectionResult:
        """Match the order against earned rewards and redeem the first hit.

        ``customer_id`` overrides the order's own customer, for orders that arrive without one.
        With ``dry_run`` the match is reported and nothing is written.
        """

        with get_tracer().start_as_current_span("loyalty.detect_redemption") as span:
            span.set_attribute("loyalty.dry_run", dry_run)
            try:
                normalized = normalize_order(order)
                result = await self._detect(normalized, tenant_id, customer_id=customer_id)
                if result is None:
                    self._metrics.record_detection(None)
                    return DetectionResult.not_detected(dry_run=dry_run)

                result.dry_run = dry_run
                span.set_attribute("loyalty.detection_method", result.method.value)
                if dry_run:
                    logger.info(
                        "Redemption detected (dry run)",
                        tenant_id=str(tenant_id),
                        order_id=normalized.order_id,
                        reward_id=str(result.reward_id),
                        method=result.method.value,
                    )
                    return result

                result.redemption = await self._rewards.redeem_reward(
                    tenant_id,
                    result.reward_id,
                    order_id=normalized.order_id,
                    customer_id=result.customer_id,
                    redemption_type=RedemptionType.AUTO_DETECTED,
                    detection_method=result.method,
                    redeemed_variation_id=result.redeemed_variation_id,
                    redeemed_value_cents=result.redeemed_value_cents,
                    location_id=normalized.location_id,
                )
            except Exception as exc:
                logger.exception(
                    "Redemption detection failed; treating order as not redeemed",
                    tenant_id=str(tenant_id),
                    error=str(exc),
                )
                self._metrics.record_detection("error")
                return DetectionResult.not_detected(error=str(exc), dry_run=dry_run)

        self._metrics.record_detection(result.method.value)
        logger.info(
            "Redemption detected",
            tenant_id=str(tenant_id),
            order_id=normalized.order_id,
            reward_id=str(result.reward_id),
            customer_id=result.customer_id,
            method=result.method.value,
            redeemed_value_cents=result.redeemed_value_cents,
        )
        return result

    async def _detect(
        self, order: NormalizedOrder, tenant_id: UUID, *, customer_id: str | None
    ) -> DetectionResult | None:
        resolved_customer = order.resolve_customer_id(customer_id)

        match = await self._match_catalog_discount(order, tenant_id, resolved_customer)
        if match is not None:
            return match
        if not resolved_customer:
            return None
        match = await self._match_free_item(order, tenant_id, resolved_customer)
        if match is not None:
            return match
        return await self._match_discount_amount(order, tenant_id, resolved_customer)

    # Strategy 1 ---------------------------------------------------------
    async def _match_catalog_discount(
        self, order: NormalizedOrder, tenant_id: UUID, customer_id: str | None
    ) -> DetectionResult | None:
        for discount in order.discounts:
            candidates = [value for value in (discount.catalog_object_id, discount.pricing_rule_id) if value]
            if not candidates:
                continue
            stmt = (
                select(LoyaltyReward)
                .where(
                    LoyaltyReward.tenant_id == tenant_id,
                    LoyaltyReward.status == RewardStatus.EARNED,
                    or_(
                        LoyaltyReward.pos_discount_id.in_(candidates),
                        LoyaltyReward.pos_pricing_rule_id.in_(candidates),
                    ),
                )
                .limit(1)
            )
            reward = (await self._db.execute(stmt)).scalar_one_or_none()
            if reward is None:
                continue
            return DetectionResult(
                detected=True,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=customer_id or reward.customer_id,
                method=DetectionMethod.CATALOG_OBJECT_ID,
                redeemed_value_cents=discount.applied_cents,
                details={"catalog_object_id": discount.catalog_object_id, "discount_uid": discount.uid},
            )
        return None

    # Strategy 2 ---------------------------------------------------------
    async def _match_free_item(
        self, order: NormalizedOrder, tenant_id: UUID, customer_id: str
    ) -> DetectionResult | None:
        for line in order.line_items:
            if not line.variation_id or not line.is_free:
                continue
            stmt = (
                select(LoyaltyReward)
                .join(LoyaltyOffer, LoyaltyOffer.id == LoyaltyReward.offer_id)
                .join(
                    LoyaltyQualifyingVariation,
                    LoyaltyQualifyingVariation.offer_id == LoyaltyReward.offer_id,
                )
                .where(
                    LoyaltyReward.tenant_id == tenant_id,
                    LoyaltyReward.customer_id == customer_id,
                    LoyaltyReward.status == RewardStatus.EARNED,
                    LoyaltyOffer.is_active.is_(True),
                    LoyaltyQualifyingVariation.tenant_id == tenant_id,
                    LoyaltyQualifyingVariation.variation_id == line.variation_id,
                    LoyaltyQualifyingVariation.is_active.is_(True),
                )
                .order_by(LoyaltyReward.earned_at.asc())
                .limit(1)
            )
            reward = (await self._db.execute(stmt)).scalar_one_or_none()
            if reward is None:
                continue
            return DetectionResult(
                detected=True,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=customer_id,
                method=DetectionMethod.FREE_ITEM_FALLBACK,
                redeemed_value_cents=line.base_price_cents,
                redeemed_variation_id=line.variation_id,
                details={"line_item_uid": line.uid},
            )
        return None

    # Strategy 3 ---------------------------------------------------------
    async def _match_discount_amount(
        self, order: NormalizedOrder, tenant_id: UUID, customer_id: str
    ) -> DetectionResult | None:
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.tenant_id == tenant_id,
                LoyaltyReward.customer_id == customer_id,
                LoyaltyReward.status == RewardStatus.EARNED,
            )
            .order_by(LoyaltyReward.earned_at.asc())
        )
        rewards = (await self._db.execute(stmt)).scalars().all()
        for reward in rewards:
            variation_ids = await self._qualifying_variations(tenant_id, reward.offer_id)
            qualifying_lines = [line for line in order.line_items if line.variation_id in variation_ids]
            discount_total = sum(line.total_discount_cents for line in qualifying_lines)
            if discount_total <= 0:
                continue

            expected = await self._expected_unit_value(tenant_id, reward)
            if not expected:
                continue
            threshold = expected * self._match_ratio
            if discount_total < threshold:
                logger.debug(
                    "Spread discount below reward value",
                    tenant_id=str(tenant_id),
                    reward_id=str(reward.id),
                    discount_total=discount_total,
                    expected=expected,
                )
                continue

            discounted = next((line for line in qualifying_lines if line.total_discount_cents > 0), None)
            return DetectionResult(
                detected=True,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=customer_id,
                method=DetectionMethod.DISCOUNT_AMOUNT_FALLBACK,
                redeemed_value_cents=discount_total,
                redeemed_variation_id=discounted.variation_id if discounted else None,
                details={"expected_value_cents": expected, "match_ratio": self._match_ratio},
            )
        return None

    async def _qualifying_variations(self, tenant_id: UUID, offer_id: UUID) -> set[str]:
        stmt = select(LoyaltyQualifyingVariation.variation_id).where(
            LoyaltyQualifyingVariation.tenant_id == tenant_id,
            LoyaltyQualifyingVariation.offer_id == offer_id,
            LoyaltyQualifyingVariation.is_active.is_(True),
        )
        return set((await self._db.execute(stmt)).scalars().all())

    async def _expected_unit_value(self, tenant_id: UUID, reward: LoyaltyReward) -> int | None:
        """Highest unit price among the reward's locked purchases, else among the offer's."""

        filters: Sequence = (
            LoyaltyPurchaseEvent.tenant_id == tenant_id,
            LoyaltyPurchaseEvent.unit_price_cents > 0,
        )
        locked = await self._db.execute(
            select(func.max(LoyaltyPurchaseEvent.unit_price_cents)).where(
                *filters, LoyaltyPurchaseEvent.reward_id == reward.id
            )
        )
        value = locked.scalar_one_or_none()
        if value:
            return int(value)
        offer_wide = await self._db.execute(
            select(func.max(LoyaltyPurchaseEvent.unit_price_cents)).where(
                *filters, LoyaltyPurchaseEvent.offer_id == reward.offer_id
            )
        )
        value = offer_wide.scalar_one_or_none()
        return int(value) if value else None


__all__ = ["DetectionResult", "RedemptionDetector"]
