"""Background sweeps that age purchases and rewards out of their rolling window."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.models.loyalty import LoyaltyOffer, LoyaltyPurchaseEvent, LoyaltyReward, RewardStatus
from punchcard_api.models.loyalty_audit import AuditAction, AuditTrigger

from .audit import AuditLogService
from .dates import as_utc, months_before, utc_today, utcnow
from .ledger import _NOT_SUPERSEDED, ProgressLedger
from .rewards import RewardStateMachine
from .sync import RewardSyncOrchestrator, SyncOutcome

EARNED_EXPIRY_REASON = "All locked purchases expired"
EMPTY_WINDOW_REASON = "Window expired with no remaining progress"


@dataclass(slots=True)
class WindowExpirationResult:
    tenant_id: UUID
    pairs_checked: int = 0
    pairs_updated: int = 0
    expired_quantity: int = 0
    failed: int = 0
    revoked_reward_ids: list[UUID] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": str(self.tenant_id),
            "pairs_checked": self.pairs_checked,
            "pairs_updated": self.pairs_updated,
            "expired_quantity": self.expired_quantity,
            "revoked": len(self.revoked_reward_ids),
            "failed": self.failed,
        }


@dataclass(slots=True)
class EarnedExpirationResult:
    tenant_id: UUID
    revoked_reward_ids: list[UUID] = field(default_factory=list)
    unlocked_events: int = 0
    failed: int = 0
    cleanup: list[SyncOutcome] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": str(self.tenant_id),
            "revoked": len(self.revoked_reward_ids),
            "unlocked_events": self.unlocked_events,
            "cleanup_failures": sum(1 for outcome in self.cleanup if not outcome.success),
            "failed": self.failed,
        }


class ExpirationSweeper:
    """Window expiry for unlocked units and revocation of stale earned rewards.

    Each (offer, customer) pair and each revoked reward commits on its own. A failing
    unit is rolled back, logged and counted in ``failed`` while the sweep moves on.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: ProgressLedger | None = None,
        rewards: RewardStateMachine | None = None,
        sync: RewardSyncOrchestrator | None = None,
    ) -> None:
        self._db = db_session
        self._audit = AuditLogService(db_session)
        self._ledger = ledger or ProgressLedger(db_session, audit=self._audit)
        self._sync = sync or RewardSyncOrchestrator(db_session)
        self._rewards = rewards or RewardStateMachine(
            db_session, audit=self._audit, ledger=self._ledger, sync=self._sync
        )

    async def expire_window_entries(self, tenant_id: UUID, *, as_of: date | None = None) -> WindowExpirationResult:
        """Drop unlocked units whose window has closed from in-progress counters."""

        as_of = as_of or utc_today()
        result = WindowExpirationResult(tenant_id=tenant_id)

        pe = LoyaltyPurchaseEvent
        stmt = (
            select(pe.offer_id, pe.customer_id, func.sum(pe.quantity))
            .where(
                pe.tenant_id == tenant_id,
                pe.reward_id.is_(None),
                pe.window_end_date < as_of,
                pe.quantity > 0,
                _NOT_SUPERSEDED,
            )
            .group_by(pe.offer_id, pe.customer_id)
        )
        pairs = (await self._db.execute(stmt)).all()

        for offer_id, customer_id, expired_quantity in pairs:
            result.pairs_checked += 1
            try:
                await self._expire_pair(result, tenant_id, offer_id, customer_id, int(expired_quantity or 0), as_of)
            except Exception as exc:
                await self._db.rollback()
                result.failed += 1
                logger.exception(
                    "Window expiry failed for customer",
                    tenant_id=str(tenant_id),
                    offer_id=str(offer_id),
                    customer_id=customer_id,
                    error=str(exc),
                )

        return result

    async def _expire_pair(
        self,
        result: WindowExpirationResult,
        tenant_id: UUID,
        offer_id: UUID,
        customer_id: str,
        expired_quantity: int,
        as_of: date,
    ) -> None:
        offer = await self._db.get(LoyaltyOffer, offer_id)
        if offer is None:
            return

        before = await self._in_progress_quantity(tenant_id, offer_id, customer_id)
        progress = await self._ledger.update_reward_progress(
            offer, customer_id, as_of=as_of, triggered_by=AuditTrigger.EXPIRATION_CLEANUP
        )
        if before is None or before == progress.current_quantity:
            await self._db.commit()
            return

        await self._audit.record(
            tenant_id=tenant_id,
            action=AuditAction.WINDOW_EXPIRED,
            offer_id=offer_id,
            reward_id=progress.reward_id,
            customer_id=customer_id,
            old_quantity=before,
            new_quantity=progress.current_quantity,
            triggered_by=AuditTrigger.EXPIRATION_CLEANUP,
            details={"as_of": as_of, "expired_quantity": expired_quantity},
        )
        revoked_id: UUID | None = None
        if progress.current_quantity == 0 and progress.reward_id is not None:
            await self._rewards.revoke_reward(
                tenant_id,
                progress.reward_id,
                EMPTY_WINDOW_REASON,
                triggered_by=AuditTrigger.EXPIRATION_CLEANUP,
            )
            await self._ledger.update_customer_summary(offer, customer_id, as_of=as_of)
            revoked_id = progress.reward_id
        await self._db.commit()

        if revoked_id is not None:
            result.revoked_reward_ids.append(revoked_id)
        result.pairs_updated += 1
        result.expired_quantity += expired_quantity
        logger.info(
            "Expired purchases removed from progress",
            tenant_id=str(tenant_id),
            offer_id=str(offer_id),
            customer_id=customer_id,
            old_quantity=before,
            new_quantity=progress.current_quantity,
        )

    async def _in_progress_quantity(self, tenant_id: UUID, offer_id: UUID, customer_id: str) -> int | None:
        stmt = (
            select(LoyaltyReward.current_quantity)
            .where(
                LoyaltyReward.tenant_id == tenant_id,
                LoyaltyReward.offer_id == offer_id,
                LoyaltyReward.customer_id == customer_id,
                LoyaltyReward.status == RewardStatus.IN_PROGRESS,
            )
            .limit(1)
        )
        value = (await self._db.execute(stmt)).scalar_one_or_none()
        return int(value) if value is not None else None

    async def expire_earned_rewards(self, tenant_id: UUID, *, now: datetime | None = None) -> EarnedExpirationResult:
        """Revoke earned rewards older than their window whose locked units have all expired."""

        now = as_utc(now) if now else utcnow()
        today = now.date()
        result = EarnedExpirationResult(tenant_id=tenant_id)

        live_lock = (
            select(LoyaltyPurchaseEvent.id)
            .where(
                LoyaltyPurchaseEvent.reward_id == LoyaltyReward.id,
                LoyaltyPurchaseEvent.window_end_date >= today,
            )
            .exists()
        )
        stmt = (
            select(LoyaltyReward.id, LoyaltyReward.earned_at, LoyaltyOffer.window_months)
            .join(LoyaltyOffer, LoyaltyOffer.id == LoyaltyReward.offer_id)
            .where(
                and_(
                    LoyaltyReward.tenant_id == tenant_id,
                    LoyaltyReward.status == RewardStatus.EARNED,
                    LoyaltyReward.earned_at.is_not(None),
                    ~live_lock,
                )
            )
            .order_by(LoyaltyReward.earned_at.asc())
        )
        candidates = [
            reward_id
            for reward_id, earned_at, window_months in (await self._db.execute(stmt)).all()
            if as_utc(earned_at) < months_before(now, int(window_months))
        ]

        revoked: list[UUID] = []
        for reward_id in candidates:
            try:
                revocation = await self._rewards.revoke_reward(
                    tenant_id,
                    reward_id,
                    EARNED_EXPIRY_REASON,
                    triggered_by=AuditTrigger.EXPIRATION_CLEANUP,
                )
                reward = await self._db.get(LoyaltyReward, reward_id)
                offer = await self._db.get(LoyaltyOffer, reward.offer_id)
                await self._ledger.update_customer_summary(offer, reward.customer_id, as_of=today)
                await self._db.commit()
            except Exception as exc:
                await self._db.rollback()
                result.failed += 1
                logger.exception(
                    "Earned reward expiry failed",
                    tenant_id=str(tenant_id),
                    reward_id=str(reward_id),
                    error=str(exc),
                )
                continue
            revoked.append(reward_id)
            result.unlocked_events += revocation.unlocked_events
            logger.info(
                "Expired earned reward revoked",
                tenant_id=str(tenant_id),
                reward_id=str(reward_id),
                customer_id=reward.customer_id,
                unlocked_events=revocation.unlocked_events,
            )

        for reward_id in revoked:
            result.cleanup.append(await self._sync.cleanup_reward_automation(tenant_id, reward_id))
        result.revoked_reward_ids = revoked
        return result


__all__ = [
    "EARNED_EXPIRY_REASON",
    "EarnedExpirationResult",
    "ExpirationSweeper",
    "WindowExpirationResult",
]
