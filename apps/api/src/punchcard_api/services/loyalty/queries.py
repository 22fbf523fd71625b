"""Read models for the loyalty HTTP surface and operator tooling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.models.loyalty import (
    LoyaltyCustomerSummary,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyRedemption,
    LoyaltyReward,
    RewardStatus,
)
from punchcard_api.models.loyalty_audit import AuditAction

from .audit import MAX_PAGE_SIZE, AuditLogService, AuditPage
from .errors import LoyaltyNotFoundError


@dataclass(slots=True)
class RewardDetail:
    reward: LoyaltyReward
    locked_events: Sequence[LoyaltyPurchaseEvent]
    offer_name: str | None


@dataclass(slots=True)
class CustomerOfferSummary:
    summary: LoyaltyCustomerSummary
    offer_name: str


def _page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(limit, MAX_PAGE_SIZE)), max(offset, 0)


class LoyaltyQueryService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def list_rewards(
        self,
        tenant_id: UUID,
        *,
        status: RewardStatus | None = None,
        customer_id: str | None = None,
        offer_id: UUID | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[LoyaltyReward]:
        limit, offset = _page(limit, offset)
        stmt = select(LoyaltyReward).where(LoyaltyReward.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(LoyaltyReward.status == status)
        if customer_id:
            stmt = stmt.where(LoyaltyReward.customer_id == customer_id)
        if offer_id is not None:
            stmt = stmt.where(LoyaltyReward.offer_id == offer_id)
        stmt = stmt.order_by(LoyaltyReward.created_at.desc(), LoyaltyReward.id.desc()).limit(limit).offset(offset)
        return (await self._db.execute(stmt)).scalars().all()

    async def get_reward(self, tenant_id: UUID, reward_id: UUID) -> RewardDetail:
        """Reward plus the purchase slices locked to it, oldest first."""

        reward = (
            await self._db.execute(
                select(LoyaltyReward).where(LoyaltyReward.tenant_id == tenant_id, LoyaltyReward.id == reward_id)
            )
        ).scalar_one_or_none()
        if reward is None:
            raise LoyaltyNotFoundError("reward", reward_id)

        events = (
            await self._db.execute(
                select(LoyaltyPurchaseEvent)
                .where(LoyaltyPurchaseEvent.tenant_id == tenant_id, LoyaltyPurchaseEvent.reward_id == reward_id)
                .order_by(LoyaltyPurchaseEvent.purchased_at.asc(), LoyaltyPurchaseEvent.ingested_at.asc())
            )
        ).scalars().all()
        offer_name = (
            await self._db.execute(select(LoyaltyOffer.name).where(LoyaltyOffer.id == reward.offer_id))
        ).scalar_one_or_none()
        return RewardDetail(reward=reward, locked_events=events, offer_name=offer_name)

    async def list_redemptions(
        self,
        tenant_id: UUID,
        *,
        customer_id: str | None = None,
        offer_id: UUID | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[LoyaltyRedemption]:
        limit, offset = _page(limit, offset)
        stmt = select(LoyaltyRedemption).where(LoyaltyRedemption.tenant_id == tenant_id)
        if customer_id:
            stmt = stmt.where(LoyaltyRedemption.customer_id == customer_id)
        if offer_id is not None:
            stmt = stmt.where(LoyaltyRedemption.offer_id == offer_id)
        stmt = stmt.order_by(LoyaltyRedemption.redeemed_at.desc()).limit(limit).offset(offset)
        return (await self._db.execute(stmt)).scalars().all()

    async def list_audit_entries(
        self,
        tenant_id: UUID,
        *,
        action: AuditAction | None = None,
        customer_id: str | None = None,
        offer_id: UUID | None = None,
        reward_id: UUID | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> AuditPage:
        return await AuditLogService(self._db).list_entries(
            tenant_id,
            action=action,
            customer_id=customer_id,
            offer_id=offer_id,
            reward_id=reward_id,
            limit=limit,
            offset=offset,
        )

    async def get_customer_summary(self, tenant_id: UUID, customer_id: str) -> list[CustomerOfferSummary]:
        rows = await self._db.execute(
            select(LoyaltyCustomerSummary, LoyaltyOffer.name)
            .join(LoyaltyOffer, LoyaltyOffer.id == LoyaltyCustomerSummary.offer_id)
            .where(
                LoyaltyCustomerSummary.tenant_id == tenant_id,
                LoyaltyCustomerSummary.customer_id == customer_id,
            )
            .order_by(LoyaltyOffer.name.asc())
        )
        return [CustomerOfferSummary(summary=summary, offer_name=name) for summary, name in rows.all()]

    async def tenants_with_active_offers(self) -> list[UUID]:
        rows = await self._db.execute(
            select(LoyaltyOffer.tenant_id).where(LoyaltyOffer.is_active.is_(True)).distinct()
        )
        return list(rows.scalars().all())


__all__ = ["CustomerOfferSummary", "LoyaltyQueryService", "RewardDetail"]
