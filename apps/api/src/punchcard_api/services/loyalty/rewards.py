"""Reward lifecycle transitions outside of accrual: redemption and revocation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.models.loyalty import (
    DetectionMethod,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyRedemption,
    LoyaltyReward,
    RedemptionType,
    RewardStatus,
)
from punchcard_api.models.loyalty_audit import AuditAction, AuditTrigger
from punchcard_api.observability.loyalty import get_loyalty_store

from .audit import AuditLogService
from .dates import as_utc, utcnow
from .errors import LoyaltyNotFoundError, LoyaltyValidationError, RewardStateConflictError
from .ledger import ProgressLedger
from .sync import RewardSyncOrchestrator, SyncOutcome

_ALLOWED_TRANSITIONS: dict[RewardStatus, frozenset[RewardStatus]] = {
    RewardStatus.IN_PROGRESS: frozenset({RewardStatus.EARNED, RewardStatus.REVOKED}),
    RewardStatus.EARNED: frozenset({RewardStatus.REDEEMED, RewardStatus.REVOKED}),
    RewardStatus.REDEEMED: frozenset(),
    RewardStatus.REVOKED: frozenset(),
}


def can_transition(current: RewardStatus, target: RewardStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(slots=True)
class RedemptionOutcome:
    reward_id: UUID
    redemption_id: UUID
    customer_id: str
    order_id: str | None
    redemption_type: RedemptionType
    detection_method: DetectionMethod | None
    redeemed_value_cents: int | None
    redeemed_at: datetime
    sync: SyncOutcome | None = None


@dataclass(slots=True)
class RevocationOutcome:
    reward_id: UUID
    previous_status: RewardStatus
    unlocked_events: int


class RewardStateMachine:
    """Validates and applies ``earned -> redeemed`` and ``* -> revoked``."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        audit: AuditLogService | None = None,
        ledger: ProgressLedger | None = None,
        sync: RewardSyncOrchestrator | None = None,
    ) -> None:
        self._db = db_session
        self._audit = audit or AuditLogService(db_session)
        self._ledger = ledger or ProgressLedger(db_session, audit=self._audit)
        self._sync = sync or RewardSyncOrchestrator(db_session)
        self._metrics = get_loyalty_store()

    async def _lock_reward(self, tenant_id: UUID, reward_id: UUID) -> LoyaltyReward:
        stmt = (
            select(LoyaltyReward)
            .where(LoyaltyReward.tenant_id == tenant_id, LoyaltyReward.id == reward_id)
            .with_for_update()
        )
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            raise LoyaltyNotFoundError("reward", reward_id)
        return reward

    async def _variation_names(
        self, tenant_id: UUID, variation_id: str | None
    ) -> tuple[str | None, str | None]:
        if not variation_id:
            return None, None
        stmt = select(LoyaltyQualifyingVariation.item_name, LoyaltyQualifyingVariation.variation_name).where(
            LoyaltyQualifyingVariation.tenant_id == tenant_id,
            LoyaltyQualifyingVariation.variation_id == variation_id,
        )
        row = (await self._db.execute(stmt)).first()
        if row is None:
            return None, None
        return row[0], row[1]

    async def redeem_reward(
        self,
        tenant_id: UUID,
        reward_id: UUID,
        *,
        order_id: str | None = None,
        customer_id: str | None = None,
        redemption_type: RedemptionType = RedemptionType.ORDER_DISCOUNT,
        detection_method: DetectionMethod | None = None,
        redeemed_variation_id: str | None = None,
        redeemed_value_cents: int | None = None,
        redeemed_by: str | None = None,
        admin_notes: str | None = None,
        location_id: str | None = None,
        redeemed_at: datetime | None = None,
    ) -> RedemptionOutcome:
        """Spend an earned reward, commit, then tear down its POS discount.

        Raises :class:`RewardStateConflictError` when the reward is not ``earned`` or belongs
        to a different customer. Nothing is written in that case.
        """

        if tenant_id is None:
            raise LoyaltyValidationError("tenant_id")
        if reward_id is None:
            raise LoyaltyValidationError("reward_id")

        try:
            reward = await self._lock_reward(tenant_id, reward_id)
            if not can_transition(reward.status, RewardStatus.REDEEMED):
                raise RewardStateConflictError(
                    reward_id,
                    f"Reward {reward_id} is {reward.status.value}; only earned rewards can be redeemed",
                    current_status=reward.status.value,
                )
            if customer_id and customer_id != reward.customer_id:
                raise RewardStateConflictError(
                    reward_id,
                    f"Reward {reward_id} belongs to a different customer",
                    current_status=reward.status.value,
                )

            item_name, variation_name = await self._variation_names(tenant_id, redeemed_variation_id)
            redeemed_at = as_utc(redeemed_at) if redeemed_at else utcnow()
            redemption = LoyaltyRedemption(
                id=uuid4(),
                tenant_id=tenant_id,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=reward.customer_id,
                redemption_type=redemption_type,
                detection_method=detection_method,
                order_id=order_id,
                location_id=location_id,
                redeemed_variation_id=redeemed_variation_id,
                redeemed_item_name=item_name,
                redeemed_variation_name=variation_name,
                redeemed_value_cents=redeemed_value_cents,
                redeemed_by=redeemed_by,
                admin_notes=admin_notes,
                redeemed_at=redeemed_at,
            )
            self._db.add(redemption)

            reward.status = RewardStatus.REDEEMED
            reward.redeemed_at = redeemed_at
            reward.redemption_id = redemption.id
            reward.redemption_order_id = order_id
            await self._db.flush()

            await self._audit.record(
                tenant_id=tenant_id,
                action=AuditAction.REWARD_REDEEMED,
                offer_id=reward.offer_id,
                reward_id=reward.id,
                redemption_id=redemption.id,
                customer_id=reward.customer_id,
                order_id=order_id,
                old_state=RewardStatus.EARNED.value,
                new_state=RewardStatus.REDEEMED.value,
                triggered_by=AuditTrigger.ADMIN if redeemed_by else AuditTrigger.SYSTEM,
                actor_id=redeemed_by,
                details={
                    "redemption_type": redemption_type.value,
                    "detection_method": detection_method.value if detection_method else None,
                    "redeemed_value_cents": redeemed_value_cents,
                    "redeemed_variation_id": redeemed_variation_id,
                },
            )

            offer = await self._db.get(LoyaltyOffer, reward.offer_id)
            if offer is not None:
                await self._ledger.update_customer_summary(offer, reward.customer_id)

            outcome = RedemptionOutcome(
                reward_id=reward.id,
                redemption_id=redemption.id,
                customer_id=reward.customer_id,
                order_id=order_id,
                redemption_type=redemption_type,
                detection_method=detection_method,
                redeemed_value_cents=redeemed_value_cents,
                redeemed_at=redeemed_at,
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        self._metrics.record_reward_transition(RewardStatus.REDEEMED.value)
        logger.info(
            "Reward redeemed",
            tenant_id=str(tenant_id),
            reward_id=str(reward_id),
            customer_id=outcome.customer_id,
            order_id=order_id,
            redemption_type=redemption_type.value,
            detection_method=detection_method.value if detection_method else None,
        )

        outcome.sync = await self._sync.cleanup_reward_automation(tenant_id, reward_id)
        return outcome

    async def revoke_reward(
        self,
        tenant_id: UUID,
        reward_id: UUID,
        reason: str,
        *,
        triggered_by: AuditTrigger = AuditTrigger.SYSTEM,
        actor_id: str | None = None,
    ) -> RevocationOutcome:
        """Revoke a reward and release its locked purchase units.

        Does not commit; the caller commits and then schedules POS cleanup.
        """

        reward = await self._lock_reward(tenant_id, reward_id)
        previous = reward.status
        if not can_transition(previous, RewardStatus.REVOKED):
            raise RewardStateConflictError(
                reward_id,
                f"Reward {reward_id} is {previous.value} and cannot be revoked",
                current_status=previous.value,
            )

        unlocked = await self._db.execute(
            update(LoyaltyPurchaseEvent)
            .where(
                LoyaltyPurchaseEvent.tenant_id == tenant_id,
                LoyaltyPurchaseEvent.reward_id == reward.id,
            )
            .values(reward_id=None)
            .execution_options(synchronize_session="fetch")
        )

        reward.status = RewardStatus.REVOKED
        reward.revoked_at = utcnow()
        reward.revocation_reason = reason
        await self._db.flush()

        await self._audit.record(
            tenant_id=tenant_id,
            action=AuditAction.REWARD_REVOKED,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            old_state=previous.value,
            new_state=RewardStatus.REVOKED.value,
            triggered_by=triggered_by,
            actor_id=actor_id,
            details={"reason": reason, "unlocked_events": unlocked.rowcount},
        )
        self._metrics.record_reward_transition(RewardStatus.REVOKED.value)
        logger.info(
            "Reward revoked",
            tenant_id=str(tenant_id),
            reward_id=str(reward_id),
            customer_id=reward.customer_id,
            previous_status=previous.value,
            reason=reason,
        )
        return RevocationOutcome(reward_id=reward.id, previous_status=previous, unlocked_events=unlocked.rowcount)


__all__ = ["RedemptionOutcome", "RevocationOutcome", "RewardStateMachine", "can_transition"]
