"""Purchase ledger and reward progress accounting.

Purchase events are consumed oldest-first. When a threshold is crossed, every event
that fits entirely under the threshold is locked to the reward; the single event that
straddles the threshold is split into a locked child carrying exactly the missing
units and an unlocked excess child carrying the rest. The straddling event itself is
kept as history and excluded from every computation from then on.

Nothing in this module commits. Callers own the transaction, so the reward row lock
taken by :meth:`ProgressLedger.update_reward_progress` is held until they commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from punchcard_api.models.loyalty import (
    LoyaltyCustomerSummary,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyReward,
    RewardStatus,
    SplitRole,
)
from punchcard_api.models.loyalty_audit import AuditAction, AuditTrigger
from punchcard_api.observability.loyalty import get_loyalty_store

from .audit import AuditLogService
from .dates import as_utc, utc_today, utcnow, window_end_for
from .errors import LoyaltyValidationError


_ChildEvent = aliased(LoyaltyPurchaseEvent)

# A split parent has at least one child pointing back at it.
_NOT_SUPERSEDED = ~(
    select(_ChildEvent.id).where(_ChildEvent.original_event_id == LoyaltyPurchaseEvent.id).exists()
)


@dataclass(slots=True)
class ProgressResult:
    """Outcome of one ledger settlement for a (tenant, offer, customer)."""

    reward_id: UUID | None
    status: RewardStatus
    current_quantity: int
    required_quantity: int
    earned_reward_ids: list[UUID] = field(default_factory=list)


@dataclass(slots=True)
class SplitResult:
    parent_id: UUID
    locked: LoyaltyPurchaseEvent
    excess: LoyaltyPurchaseEvent | None


@dataclass(slots=True)
class PurchaseOutcome:
    processed: bool
    reason: str | None = None
    purchase_event: LoyaltyPurchaseEvent | None = None
    progress: ProgressResult | None = None


class ProgressLedger:
    """Owns purchase-event bookkeeping and the reward accrual loop."""

    def __init__(self, db_session: AsyncSession, *, audit: AuditLogService | None = None) -> None:
        self._db = db_session
        self._audit = audit or AuditLogService(db_session)
        self._metrics = get_loyalty_store()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def get_offer_for_variation(self, tenant_id: UUID, variation_id: str) -> LoyaltyOffer | None:
        stmt = (
            select(LoyaltyOffer)
            .join(LoyaltyQualifyingVariation, LoyaltyQualifyingVariation.offer_id == LoyaltyOffer.id)
            .where(
                LoyaltyQualifyingVariation.tenant_id == tenant_id,
                LoyaltyQualifyingVariation.variation_id == variation_id,
                LoyaltyQualifyingVariation.is_active.is_(True),
                LoyaltyOffer.tenant_id == tenant_id,
                LoyaltyOffer.is_active.is_(True),
            )
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    def _available_filters(self, tenant_id: UUID, offer_id: UUID, customer_id: str, as_of: date) -> list:
        return [
            LoyaltyPurchaseEvent.tenant_id == tenant_id,
            LoyaltyPurchaseEvent.offer_id == offer_id,
            LoyaltyPurchaseEvent.customer_id == customer_id,
            LoyaltyPurchaseEvent.window_end_date >= as_of,
            LoyaltyPurchaseEvent.reward_id.is_(None),
            LoyaltyPurchaseEvent.quantity > 0,
            _NOT_SUPERSEDED,
        ]

    async def unlocked_quantity(self, tenant_id: UUID, offer_id: UUID, customer_id: str, *, as_of: date) -> int:
        stmt = select(func.coalesce(func.sum(LoyaltyPurchaseEvent.quantity), 0)).where(
            *self._available_filters(tenant_id, offer_id, customer_id, as_of)
        )
        return int((await self._db.execute(stmt)).scalar_one() or 0)

    async def _available_events(
        self, tenant_id: UUID, offer_id: UUID, customer_id: str, *, as_of: date
    ) -> Sequence[LoyaltyPurchaseEvent]:
        stmt = (
            select(LoyaltyPurchaseEvent)
            .where(*self._available_filters(tenant_id, offer_id, customer_id, as_of))
            .order_by(
                LoyaltyPurchaseEvent.purchased_at.asc(),
                LoyaltyPurchaseEvent.ingested_at.asc(),
                LoyaltyPurchaseEvent.id.asc(),
            )
            .with_for_update()
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def _window_bounds(
        self, tenant_id: UUID, offer_id: UUID, customer_id: str, *, as_of: date
    ) -> tuple[date | None, date | None]:
        stmt = select(
            func.min(LoyaltyPurchaseEvent.window_start_date),
            func.max(LoyaltyPurchaseEvent.window_end_date),
        ).where(*self._available_filters(tenant_id, offer_id, customer_id, as_of))
        start, end = (await self._db.execute(stmt)).one()
        return start, end

    async def _lock_customer_offer(self, offer: LoyaltyOffer, customer_id: str) -> None:
        """Serialize settlement for one (tenant, offer, customer) on its summary row.

        The first purchase for a pair has no reward row to lock yet, so the summary row is
        created on demand and locked instead. A losing concurrent insert waits on the
        winner's lock.
        """

        stmt = (
            select(LoyaltyCustomerSummary.id)
            .where(
                LoyaltyCustomerSummary.tenant_id == offer.tenant_id,
                LoyaltyCustomerSummary.customer_id == customer_id,
                LoyaltyCustomerSummary.offer_id == offer.id,
            )
            .with_for_update()
        )
        if (await self._db.execute(stmt)).scalar_one_or_none() is not None:
            return

        try:
            async with self._db.begin_nested():
                self._db.add(
                    LoyaltyCustomerSummary(
                        tenant_id=offer.tenant_id,
                        customer_id=customer_id,
                        offer_id=offer.id,
                        required_quantity=int(offer.required_quantity),
                    )
                )
                await self._db.flush()
        except IntegrityError:
            await self._db.execute(stmt)

    async def _lock_in_progress_reward(
        self, tenant_id: UUID, offer_id: UUID, customer_id: str
    ) -> LoyaltyReward | None:
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.tenant_id == tenant_id,
                LoyaltyReward.offer_id == offer_id,
                LoyaltyReward.customer_id == customer_id,
                LoyaltyReward.status == RewardStatus.IN_PROGRESS,
            )
            .order_by(LoyaltyReward.created_at.asc())
            .limit(1)
            .with_for_update()
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _open_reward(
        self, offer: LoyaltyOffer, customer_id: str, quantity: int, *, as_of: date
    ) -> LoyaltyReward:
        start, end = await self._window_bounds(offer.tenant_id, offer.id, customer_id, as_of=as_of)
        reward = LoyaltyReward(
            id=uuid4(),
            tenant_id=offer.tenant_id,
            offer_id=offer.id,
            customer_id=customer_id,
            status=RewardStatus.IN_PROGRESS,
            current_quantity=quantity,
            required_quantity=offer.required_quantity,
            window_start_date=start,
            window_end_date=end,
        )
        try:
            async with self._db.begin_nested():
                self._db.add(reward)
                await self._db.flush()
        except IntegrityError:
            existing = await self._lock_in_progress_reward(offer.tenant_id, offer.id, customer_id)
            if existing is None:
                raise
            logger.info(
                "Open reward cycle already exists, reusing it",
                tenant_id=str(offer.tenant_id),
                offer_id=str(offer.id),
                customer_id=customer_id,
                reward_id=str(existing.id),
            )
            return existing
        return reward

    # ------------------------------------------------------------------
    # Progress settlement
    # ------------------------------------------------------------------
    async def update_reward_progress(
        self,
        offer: LoyaltyOffer,
        customer_id: str,
        *,
        as_of: date | None = None,
        triggered_by: AuditTrigger = AuditTrigger.SYSTEM,
    ) -> ProgressResult:
        """Settle unlocked progress for one customer and offer.

        Re-running without new purchases or expirations changes nothing.
        """

        if not customer_id:
            raise LoyaltyValidationError("customer_id")

        tenant_id = offer.tenant_id
        required = int(offer.required_quantity)
        as_of = as_of or utc_today()

        await self._lock_customer_offer(offer, customer_id)
        total = await self.unlocked_quantity(tenant_id, offer.id, customer_id, as_of=as_of)
        reward = await self._lock_in_progress_reward(tenant_id, offer.id, customer_id)

        if reward is None and total > 0:
            reward = await self._open_reward(offer, customer_id, 0, as_of=as_of)
        if reward is not None and reward.current_quantity != total:
            previous = reward.current_quantity
            reward.current_quantity = total
            reward.window_start_date, reward.window_end_date = await self._window_bounds(
                tenant_id, offer.id, customer_id, as_of=as_of
            )
            await self._record_progress(reward, previous, total, triggered_by)

        earned: list[UUID] = []
        while reward is not None and total >= required:
            await self._consume_threshold(offer, reward, as_of=as_of)
            earned.append(reward.id)

            total = await self.unlocked_quantity(tenant_id, offer.id, customer_id, as_of=as_of)
            if total > 0:
                reward = await self._open_reward(offer, customer_id, total, as_of=as_of)
                await self._record_progress(reward, 0, total, triggered_by)
            else:
                reward = None

        await self.update_customer_summary(offer, customer_id, as_of=as_of)

        if reward is not None:
            status = RewardStatus.IN_PROGRESS if total > 0 else RewardStatus.NO_PROGRESS
            reward_id: UUID | None = reward.id
        else:
            status = RewardStatus.NO_PROGRESS
            reward_id = None
        if earned:
            status = RewardStatus.EARNED
            reward_id = reward_id or earned[-1]

        return ProgressResult(
            reward_id=reward_id,
            status=status,
            current_quantity=total,
            required_quantity=required,
            earned_reward_ids=earned,
        )

    async def _record_progress(
        self, reward: LoyaltyReward, previous: int, current: int, triggered_by: AuditTrigger
    ) -> None:
        await self._audit.record(
            tenant_id=reward.tenant_id,
            action=AuditAction.REWARD_PROGRESS_UPDATED,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            old_quantity=previous,
            new_quantity=current,
            triggered_by=triggered_by,
        )

    async def _consume_threshold(self, offer: LoyaltyOffer, reward: LoyaltyReward, *, as_of: date) -> None:
        required = int(offer.required_quantity)
        events = await self._available_events(offer.tenant_id, offer.id, reward.customer_id, as_of=as_of)

        locked_total = 0
        crossing: LoyaltyPurchaseEvent | None = None
        for event in events:
            if locked_total + event.quantity <= required:
                event.reward_id = reward.id
                locked_total += event.quantity
                if locked_total == required:
                    break
                continue
            crossing = event
            break

        needed = required - locked_total
        if needed > 0:
            if crossing is None:
                # Caller verified total >= required, so a crossing row must exist.
                raise RuntimeError(f"Ledger for reward {reward.id} is short by {needed} units")
            await self.split_event(crossing, reward, needed)

        reward.status = RewardStatus.EARNED
        reward.earned_at = utcnow()
        reward.current_quantity = required
        await self._db.flush()

        await self._audit.record(
            tenant_id=reward.tenant_id,
            action=AuditAction.REWARD_EARNED,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            old_state=RewardStatus.IN_PROGRESS.value,
            new_state=RewardStatus.EARNED.value,
            details={"required_quantity": required, "split": needed > 0},
        )
        self._metrics.record_reward_transition(RewardStatus.EARNED.value)
        logger.info(
            "Reward earned",
            tenant_id=str(reward.tenant_id),
            reward_id=str(reward.id),
            offer_id=str(offer.id),
            customer_id=reward.customer_id,
            offer_name=offer.name,
        )

    async def split_event(
        self, event: LoyaltyPurchaseEvent, reward: LoyaltyReward, locked_quantity: int
    ) -> SplitResult | None:
        """Replace ``event`` with a locked child and an unlocked excess child.

        Returns ``None`` when the event has already been split; the first split wins.
        """

        if locked_quantity <= 0 or locked_quantity >= event.quantity:
            raise ValueError(
                f"Split of {event.quantity} units must lock between 1 and {event.quantity - 1} units"
            )

        already_split = await self._db.execute(
            select(LoyaltyPurchaseEvent.id).where(LoyaltyPurchaseEvent.original_event_id == event.id).limit(1)
        )
        if already_split.scalar_one_or_none() is not None:
            logger.warning(
                "Purchase event already split, skipping",
                tenant_id=str(event.tenant_id),
                purchase_event_id=str(event.id),
                reward_id=str(reward.id),
            )
            return None

        sequence = int(event.split_sequence or 0) + 1
        locked = self._child_of(event, quantity=locked_quantity, role=SplitRole.LOCKED, sequence=sequence)
        locked.reward_id = reward.id
        excess_quantity = event.quantity - locked_quantity
        excess = None
        if excess_quantity > 0:
            excess = self._child_of(event, quantity=excess_quantity, role=SplitRole.EXCESS, sequence=sequence)

        self._db.add_all([child for child in (locked, excess) if child is not None])
        await self._db.flush()

        logger.debug(
            "Split crossing purchase event",
            tenant_id=str(event.tenant_id),
            reward_id=str(reward.id),
            purchase_event_id=str(event.id),
            locked_quantity=locked_quantity,
            excess_quantity=excess_quantity,
            split_sequence=sequence,
        )
        return SplitResult(parent_id=event.id, locked=locked, excess=excess)

    @staticmethod
    def _child_of(
        parent: LoyaltyPurchaseEvent, *, quantity: int, role: SplitRole, sequence: int
    ) -> LoyaltyPurchaseEvent:
        return LoyaltyPurchaseEvent(
            id=uuid4(),
            tenant_id=parent.tenant_id,
            offer_id=parent.offer_id,
            customer_id=parent.customer_id,
            order_id=parent.order_id,
            location_id=parent.location_id,
            variation_id=parent.variation_id,
            quantity=quantity,
            unit_price_cents=parent.unit_price_cents,
            purchased_at=parent.purchased_at,
            window_start_date=parent.window_start_date,
            window_end_date=parent.window_end_date,
            reward_id=None,
            idempotency_key=parent.idempotency_key,
            lineage_id=parent.lineage_id or parent.id,
            split_sequence=sequence,
            split_role=role,
            original_event_id=parent.id,
            receipt_url=parent.receipt_url,
            customer_source=parent.customer_source,
            payment_type=parent.payment_type,
            ingested_at=parent.ingested_at,
        )

    # ------------------------------------------------------------------
    # Purchase recording
    # ------------------------------------------------------------------
    async def record_purchase(
        self,
        tenant_id: UUID,
        *,
        order_id: str,
        customer_id: str | None,
        variation_id: str,
        quantity: int,
        unit_price_cents: int,
        purchased_at: datetime,
        location_id: str | None = None,
        receipt_url: str | None = None,
        customer_source: str = "order",
        payment_type: str | None = None,
        triggered_by: AuditTrigger = AuditTrigger.WEBHOOK,
        as_of: date | None = None,
    ) -> PurchaseOutcome:
        """Record one qualifying line and settle progress for its offer."""

        if tenant_id is None:
            raise LoyaltyValidationError("tenant_id")
        if not order_id:
            raise LoyaltyValidationError("order_id")
        if not variation_id:
            raise LoyaltyValidationError("variation_id")
        if quantity is None or int(quantity) < 1:
            raise LoyaltyValidationError("quantity", "quantity must be at least 1")

        if not customer_id:
            logger.debug("Skipping loyalty purchase without customer", tenant_id=str(tenant_id), order_id=order_id)
            return PurchaseOutcome(processed=False, reason="no_customer")

        offer = await self.get_offer_for_variation(tenant_id, variation_id)
        if offer is None:
            return PurchaseOutcome(processed=False, reason="variation_not_qualifying")

        quantity = int(quantity)
        idempotency_key = f"{order_id}:{variation_id}:{quantity}"
        existing = await self._db.execute(
            select(LoyaltyPurchaseEvent.id)
            .where(
                LoyaltyPurchaseEvent.tenant_id == tenant_id,
                LoyaltyPurchaseEvent.idempotency_key == idempotency_key,
            )
            .limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            return PurchaseOutcome(processed=False, reason="already_processed")

        as_of = as_of or utc_today()
        purchased_at = as_utc(purchased_at)
        window_start = await self._window_start_for(offer, customer_id, purchased_at, as_of=as_of)

        event_id = uuid4()
        event = LoyaltyPurchaseEvent(
            id=event_id,
            tenant_id=tenant_id,
            offer_id=offer.id,
            customer_id=customer_id,
            order_id=order_id,
            location_id=location_id,
            variation_id=variation_id,
            quantity=quantity,
            unit_price_cents=int(unit_price_cents or 0),
            purchased_at=purchased_at,
            window_start_date=window_start,
            window_end_date=window_end_for(purchased_at, int(offer.window_months)),
            idempotency_key=idempotency_key,
            lineage_id=event_id,
            split_sequence=0,
            split_role=SplitRole.ORIGINAL,
            receipt_url=receipt_url,
            customer_source=customer_source,
            payment_type=payment_type,
        )
        try:
            async with self._db.begin_nested():
                self._db.add(event)
                await self._db.flush()
        except IntegrityError:
            logger.info(
                "Concurrent purchase insert detected, treating as processed",
                tenant_id=str(tenant_id),
                order_id=order_id,
                idempotency_key=idempotency_key,
            )
            return PurchaseOutcome(processed=False, reason="already_processed")

        await self._audit.record(
            tenant_id=tenant_id,
            action=AuditAction.PURCHASE_RECORDED,
            offer_id=offer.id,
            purchase_event_id=event.id,
            customer_id=customer_id,
            order_id=order_id,
            new_quantity=quantity,
            triggered_by=triggered_by,
            details={"variation_id": variation_id, "unit_price_cents": int(unit_price_cents or 0)},
        )
        self._metrics.record_purchase(quantity)

        progress = await self.update_reward_progress(offer, customer_id, as_of=as_of)
        logger.info(
            "Loyalty purchase recorded",
            tenant_id=str(tenant_id),
            order_id=order_id,
            customer_id=customer_id,
            offer_id=str(offer.id),
            quantity=quantity,
            reward_status=progress.status.value,
            current_quantity=progress.current_quantity,
        )
        return PurchaseOutcome(processed=True, purchase_event=event, progress=progress)

    async def _window_start_for(
        self, offer: LoyaltyOffer, customer_id: str, purchased_at: datetime, *, as_of: date
    ) -> date:
        stmt = select(func.min(LoyaltyPurchaseEvent.purchased_at)).where(
            LoyaltyPurchaseEvent.tenant_id == offer.tenant_id,
            LoyaltyPurchaseEvent.offer_id == offer.id,
            LoyaltyPurchaseEvent.customer_id == customer_id,
            LoyaltyPurchaseEvent.window_end_date >= as_of,
            LoyaltyPurchaseEvent.quantity > 0,
        )
        first_purchase = (await self._db.execute(stmt)).scalar_one_or_none()
        if first_purchase is None:
            return purchased_at.date()
        return min(as_utc(first_purchase), purchased_at).date()

    # ------------------------------------------------------------------
    # Customer summary
    # ------------------------------------------------------------------
    async def update_customer_summary(
        self, offer: LoyaltyOffer, customer_id: str, *, as_of: date | None = None
    ) -> LoyaltyCustomerSummary:
        """Rebuild the denormalized summary row from the ledger."""

        as_of = as_of or utc_today()
        tenant_id = offer.tenant_id
        pe = LoyaltyPurchaseEvent
        available = (pe.window_end_date >= as_of) & pe.reward_id.is_(None) & _NOT_SUPERSEDED

        stats_stmt = select(
            func.coalesce(func.sum(case((available, pe.quantity), else_=0)), 0),
            func.coalesce(func.sum(case((_NOT_SUPERSEDED & (pe.quantity > 0), pe.quantity), else_=0)), 0),
            func.max(pe.purchased_at),
            func.min(case((available, pe.window_start_date), else_=None)),
            func.max(case((available, pe.window_end_date), else_=None)),
        ).where(pe.tenant_id == tenant_id, pe.offer_id == offer.id, pe.customer_id == customer_id)
        current_qty, lifetime, last_purchase, window_start, window_end = (
            await self._db.execute(stats_stmt)
        ).one()

        reward_counts = dict(
            (
                await self._db.execute(
                    select(LoyaltyReward.status, func.count())
                    .where(
                        LoyaltyReward.tenant_id == tenant_id,
                        LoyaltyReward.offer_id == offer.id,
                        LoyaltyReward.customer_id == customer_id,
                    )
                    .group_by(LoyaltyReward.status)
                )
            ).all()
        )
        earned_count = int(reward_counts.get(RewardStatus.EARNED, 0))
        redeemed_count = int(reward_counts.get(RewardStatus.REDEEMED, 0))

        earned_reward_id = None
        if earned_count:
            earned_reward_id = (
                await self._db.execute(
                    select(LoyaltyReward.id)
                    .where(
                        LoyaltyReward.tenant_id == tenant_id,
                        LoyaltyReward.offer_id == offer.id,
                        LoyaltyReward.customer_id == customer_id,
                        LoyaltyReward.status == RewardStatus.EARNED,
                    )
                    .order_by(LoyaltyReward.earned_at.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()

        summary = (
            await self._db.execute(
                select(LoyaltyCustomerSummary)
                .where(
                    LoyaltyCustomerSummary.tenant_id == tenant_id,
                    LoyaltyCustomerSummary.customer_id == customer_id,
                    LoyaltyCustomerSummary.offer_id == offer.id,
                )
                .with_for_update()
            )
        ).scalar_one_or_none()
        if summary is None:
            summary = LoyaltyCustomerSummary(tenant_id=tenant_id, customer_id=customer_id, offer_id=offer.id)
            self._db.add(summary)

        summary.current_quantity = int(current_qty or 0)
        summary.required_quantity = int(offer.required_quantity)
        summary.window_start_date = window_start
        summary.window_end_date = window_end
        summary.has_earned_reward = earned_count > 0
        summary.earned_reward_id = earned_reward_id
        summary.total_lifetime_purchases = int(lifetime or 0)
        summary.total_rewards_earned = earned_count + redeemed_count
        summary.total_rewards_redeemed = redeemed_count
        summary.last_purchase_at = last_purchase
        await self._db.flush()
        return summary


__all__ = ["ProgressLedger", "ProgressResult", "PurchaseOutcome", "SplitResult"]
