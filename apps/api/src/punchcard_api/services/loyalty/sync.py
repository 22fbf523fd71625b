"""Keep POS discount automation in step with reward state.

An earned reward is backed by four POS objects: a customer group holding just the
reward's customer, and a discount, eligible-item set and pricing rule that auto-apply
the free item to members of that group. Creation runs as a saga of reversible steps;
teardown tolerates objects that are already gone. Every call here happens after the
transaction that changed the reward has committed, and none of them raise to callers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.models.loyalty import (
    LoyaltyOffer,
    LoyaltyQualifyingVariation,
    LoyaltyReward,
    RewardStatus,
)
from punchcard_api.observability.loyalty import get_loyalty_store
from punchcard_api.observability.tracing import get_tracer

from .dates import utcnow
from .errors import ExternalSyncError
from .pos_client import PosApiError, PosAutomationClient, PosClientFactory, default_pos_client_factory


class SyncIssue:
    MISSING_POS_IDS = "MISSING_POS_IDS"
    DISCOUNT_NOT_FOUND = "DISCOUNT_NOT_FOUND"
    DISCOUNT_DELETED = "DISCOUNT_DELETED"
    DISCOUNT_API_ERROR = "DISCOUNT_API_ERROR"
    CUSTOMER_NOT_IN_GROUP = "CUSTOMER_NOT_IN_GROUP"
    VALIDATION_ERROR = "VALIDATION_ERROR"


@dataclass(slots=True)
class SagaStep:
    """One forward action and the compensation that undoes it."""

    name: str
    action: Callable[[], Awaitable[None]]
    compensate: Callable[[], Awaitable[None]] | None = None


@dataclass(slots=True)
class SyncOutcome:
    reward_id: UUID
    success: bool
    operation: str
    failed_step: str | None = None
    error: str | None = None
    compensated_steps: list[str] = field(default_factory=list)
    pos_object_ids: dict[str, str | None] = field(default_factory=dict)
    skipped: bool = False


@dataclass(slots=True)
class RewardValidation:
    reward_id: UUID
    customer_id: str
    valid: bool
    issue: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    fixed: bool = False
    fix_action: str | None = None


class _SagaState:
    def __init__(self) -> None:
        self.group_id: str | None = None
        self.discount_id: str | None = None
        self.product_set_id: str | None = None
        self.pricing_rule_id: str | None = None


class RewardSyncOrchestrator:
    """Create, tear down and reconcile the POS objects behind earned rewards."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        client_factory: PosClientFactory | None = None,
    ) -> None:
        self._db = db_session
        self._client_factory = client_factory or default_pos_client_factory
        self._metrics = get_loyalty_store()

    async def _get_reward(self, tenant_id: UUID, reward_id: UUID) -> LoyaltyReward | None:
        stmt = select(LoyaltyReward).where(LoyaltyReward.tenant_id == tenant_id, LoyaltyReward.id == reward_id)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _qualifying_variation_ids(self, tenant_id: UUID, offer_id: UUID) -> list[str]:
        stmt = select(LoyaltyQualifyingVariation.variation_id).where(
            LoyaltyQualifyingVariation.tenant_id == tenant_id,
            LoyaltyQualifyingVariation.offer_id == offer_id,
            LoyaltyQualifyingVariation.is_active.is_(True),
        )
        return list((await self._db.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Creation saga
    # ------------------------------------------------------------------
    async def create_reward_automation(self, tenant_id: UUID, reward_id: UUID) -> SyncOutcome:
        with get_tracer().start_as_current_span("loyalty.sync.create") as span:
            span.set_attribute("loyalty.reward_id", str(reward_id))
            outcome = await self._create(tenant_id, reward_id)
            span.set_attribute("loyalty.sync.success", outcome.success)
        self._metrics.record_sync(
            "create", "success" if outcome.success else "failure", step=outcome.failed_step
        )
        if outcome.compensated_steps:
            self._metrics.record_sync("create", "rolled_back")
        return outcome

    async def _create(self, tenant_id: UUID, reward_id: UUID) -> SyncOutcome:
        reward = await self._get_reward(tenant_id, reward_id)
        if reward is None:
            return SyncOutcome(reward_id=reward_id, success=False, operation="create", error="reward not found")
        if reward.status != RewardStatus.EARNED:
            return SyncOutcome(
                reward_id=reward_id,
                success=False,
                operation="create",
                error=f"reward is {reward.status.value}, not earned",
            )
        if reward.pos_discount_id and reward.pos_group_id:
            return SyncOutcome(
                reward_id=reward_id,
                success=True,
                operation="create",
                skipped=True,
                pos_object_ids=reward.pos_object_ids,
            )

        offer = await self._db.get(LoyaltyOffer, reward.offer_id)
        variation_ids = await self._qualifying_variation_ids(tenant_id, reward.offer_id)
        if offer is None or not variation_ids:
            logger.warning(
                "Reward has no qualifying variations to automate",
                tenant_id=str(tenant_id),
                reward_id=str(reward_id),
            )
            return SyncOutcome(
                reward_id=reward_id,
                success=False,
                operation="create",
                error="offer has no active qualifying variations",
            )

        client = self._client_factory(tenant_id)
        async with client:
            state = _SagaState()
            steps = self._creation_steps(client, reward, offer, variation_ids, state)
            outcome = await self._run_saga(tenant_id, reward_id, steps)

        if outcome.success:
            outcome.pos_object_ids = reward.pos_object_ids
            logger.info(
                "Reward discount automation created",
                tenant_id=str(tenant_id),
                reward_id=str(reward_id),
                customer_id=reward.customer_id,
                group_id=state.group_id,
                discount_id=state.discount_id,
            )
        else:
            logger.warning(
                "Could not create reward discount automation; reconciliation will retry",
                tenant_id=str(tenant_id),
                reward_id=str(reward_id),
                failed_step=outcome.failed_step,
                error=outcome.error,
                compensated_steps=outcome.compensated_steps,
            )
        return outcome

    def _creation_steps(
        self,
        client: PosAutomationClient,
        reward: LoyaltyReward,
        offer: LoyaltyOffer,
        variation_ids: Sequence[str],
        state: _SagaState,
    ) -> list[SagaStep]:
        reward_id = reward.id
        customer_id = reward.customer_id
        offer_name = offer.name

        async def create_group() -> None:
            name = f"Loyalty Reward {reward_id} - {offer_name} - {customer_id}"
            state.group_id = await client.create_customer_group(reward_id=reward_id, name=name)

        async def delete_group() -> None:
            if state.group_id:
                await client.delete_customer_group(state.group_id)

        async def add_customer() -> None:
            await client.add_customer_to_group(customer_id=customer_id, group_id=state.group_id)

        async def remove_customer() -> None:
            await client.remove_customer_from_group(customer_id=customer_id, group_id=state.group_id)

        async def upsert_catalog() -> None:
            result = await client.upsert_reward_catalog(
                reward_id=reward_id,
                group_id=state.group_id,
                offer_name=offer_name,
                variation_ids=variation_ids,
            )
            state.discount_id = result.discount_id
            state.product_set_id = result.product_set_id
            state.pricing_rule_id = result.pricing_rule_id

        async def delete_catalog() -> None:
            for object_id in (state.pricing_rule_id, state.product_set_id, state.discount_id):
                if object_id:
                    await client.delete_catalog_object(object_id)

        async def persist_ids() -> None:
            reward.pos_group_id = state.group_id
            reward.pos_discount_id = state.discount_id
            reward.pos_product_set_id = state.product_set_id
            reward.pos_pricing_rule_id = state.pricing_rule_id
            reward.pos_synced_at = utcnow()
            await self._db.commit()

        return [
            SagaStep("create_customer_group", create_group, delete_group),
            SagaStep("add_customer_to_group", add_customer, remove_customer),
            SagaStep("upsert_catalog_objects", upsert_catalog, delete_catalog),
            SagaStep("persist_pos_ids", persist_ids),
        ]

    async def _run_saga(self, tenant_id: UUID, reward_id: UUID, steps: Iterable[SagaStep]) -> SyncOutcome:
        completed: list[SagaStep] = []
        for step in steps:
            try:
                await step.action()
            except (PosApiError, SQLAlchemyError) as exc:
                if isinstance(exc, SQLAlchemyError):
                    await self._db.rollback()
                error = ExternalSyncError(step.name, str(exc), status_code=getattr(exc, "status_code", None))
                compensated = await self._compensate(tenant_id, reward_id, completed)
                return SyncOutcome(
                    reward_id=reward_id,
                    success=False,
                    operation="create",
                    failed_step=step.name,
                    error=str(error),
                    compensated_steps=compensated,
                )
            completed.append(step)
        return SyncOutcome(reward_id=reward_id, success=True, operation="create")

    async def _compensate(self, tenant_id: UUID, reward_id: UUID, completed: list[SagaStep]) -> list[str]:
        compensated: list[str] = []
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                await step.compensate()
            except PosApiError as exc:
                logger.warning(
                    "Compensation step failed; POS object may be orphaned",
                    tenant_id=str(tenant_id),
                    reward_id=str(reward_id),
                    step=step.name,
                    error=str(exc),
                )
                continue
            compensated.append(step.name)
        return compensated

    async def create_for_rewards(self, tenant_id: UUID, reward_ids: Sequence[UUID]) -> list[SyncOutcome]:
        """Post-commit hook for freshly earned rewards."""

        return [await self.create_reward_automation(tenant_id, reward_id) for reward_id in reward_ids]

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    async def cleanup_reward_automation(self, tenant_id: UUID, reward_id: UUID) -> SyncOutcome:
        with get_tracer().start_as_current_span("loyalty.sync.cleanup") as span:
            span.set_attribute("loyalty.reward_id", str(reward_id))
            outcome = await self._cleanup(tenant_id, reward_id)
            span.set_attribute("loyalty.sync.success", outcome.success)
        self._metrics.record_sync(
            "cleanup", "success" if outcome.success else "failure", step=outcome.failed_step
        )
        return outcome

    async def _cleanup(self, tenant_id: UUID, reward_id: UUID) -> SyncOutcome:
        reward = await self._get_reward(tenant_id, reward_id)
        if reward is None:
            return SyncOutcome(reward_id=reward_id, success=False, operation="cleanup", error="reward not found")
        if not any(reward.pos_object_ids.values()):
            return SyncOutcome(reward_id=reward_id, success=True, operation="cleanup", skipped=True)

        status = reward.status.value
        errors: list[str] = []
        failed_step: str | None = None
        client = self._client_factory(tenant_id)
        async with client:
            if reward.pos_group_id:
                try:
                    await client.remove_customer_from_group(
                        customer_id=reward.customer_id, group_id=reward.pos_group_id
                    )
                except PosApiError as exc:
                    failed_step = failed_step or "remove_customer_from_group"
                    errors.append(f"remove_customer_from_group: {exc}")

            for attr in ("pos_pricing_rule_id", "pos_product_set_id", "pos_discount_id"):
                object_id = getattr(reward, attr)
                if not object_id:
                    continue
                try:
                    await client.delete_catalog_object(object_id)
                except PosApiError as exc:
                    failed_step = failed_step or f"delete_{attr}"
                    errors.append(f"delete {object_id}: {exc}")
                    continue
                setattr(reward, attr, None)

            if reward.pos_group_id:
                try:
                    await client.delete_customer_group(reward.pos_group_id)
                except PosApiError as exc:
                    failed_step = failed_step or "delete_customer_group"
                    errors.append(f"delete_customer_group: {exc}")
                else:
                    reward.pos_group_id = None

        remaining = reward.pos_object_ids
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            errors.append(f"clear_pos_ids: {exc}")
            failed_step = failed_step or "clear_pos_ids"

        if errors:
            logger.warning(
                "Reward discount cleanup incomplete; reward status unchanged",
                tenant_id=str(tenant_id),
                reward_id=str(reward_id),
                status=status,
                errors=errors,
            )
            return SyncOutcome(
                reward_id=reward_id,
                success=False,
                operation="cleanup",
                failed_step=failed_step,
                error="; ".join(errors),
                pos_object_ids=remaining,
            )

        logger.info(
            "Reward discount automation removed",
            tenant_id=str(tenant_id),
            reward_id=str(reward_id),
            status=status,
        )
        return SyncOutcome(reward_id=reward_id, success=True, operation="cleanup")

    async def retry_pending_cleanups(self, tenant_id: UUID) -> list[SyncOutcome]:
        """Retry teardown for closed rewards that still reference POS objects."""

        stmt = select(LoyaltyReward.id).where(
            LoyaltyReward.tenant_id == tenant_id,
            LoyaltyReward.status.in_([RewardStatus.REDEEMED, RewardStatus.REVOKED]),
            or_(
                LoyaltyReward.pos_group_id.is_not(None),
                LoyaltyReward.pos_discount_id.is_not(None),
                LoyaltyReward.pos_product_set_id.is_not(None),
                LoyaltyReward.pos_pricing_rule_id.is_not(None),
            ),
        )
        reward_ids = list((await self._db.execute(stmt)).scalars().all())
        return [await self.cleanup_reward_automation(tenant_id, reward_id) for reward_id in reward_ids]

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def validate_earned_rewards(self, tenant_id: UUID, *, fix_issues: bool = False) -> list[RewardValidation]:
        stmt = (
            select(LoyaltyReward.id)
            .where(LoyaltyReward.tenant_id == tenant_id, LoyaltyReward.status == RewardStatus.EARNED)
            .order_by(LoyaltyReward.earned_at.asc())
        )
        reward_ids = list((await self._db.execute(stmt)).scalars().all())
        results: list[RewardValidation] = []
        for reward_id in reward_ids:
            reward = await self._get_reward(tenant_id, reward_id)
            if reward is None or reward.status != RewardStatus.EARNED:
                continue
            result = await self.validate_reward(reward, fix_issues=fix_issues)
            results.append(result)

        logger.info(
            "Reward sync reconciliation finished",
            tenant_id=str(tenant_id),
            checked=len(results),
            invalid=sum(1 for result in results if not result.valid),
            fixed=sum(1 for result in results if result.fixed),
            fix_issues=fix_issues,
        )
        return results

    async def validate_reward(self, reward: LoyaltyReward, *, fix_issues: bool = False) -> RewardValidation:
        result = RewardValidation(reward_id=reward.id, customer_id=reward.customer_id, valid=True)
        tenant_id = reward.tenant_id

        if not reward.pos_group_id or not reward.pos_discount_id:
            result.valid = False
            result.issue = SyncIssue.MISSING_POS_IDS
            result.details = {"pos_object_ids": reward.pos_object_ids}
            if fix_issues:
                await self._recreate(reward, result, "CREATED_MISSING_AUTOMATION")
            return result

        client = self._client_factory(tenant_id)
        async with client:
            try:
                discount = await client.retrieve_catalog_object(reward.pos_discount_id)
            except PosApiError as exc:
                result.valid = False
                result.issue = SyncIssue.DISCOUNT_API_ERROR
                result.details = {"status_code": exc.status_code, "error": str(exc)}
                return result

            if discount is None or discount.get("is_deleted"):
                result.valid = False
                result.issue = SyncIssue.DISCOUNT_NOT_FOUND if discount is None else SyncIssue.DISCOUNT_DELETED
                result.details = {"discount_id": reward.pos_discount_id}
                if fix_issues:
                    fix_action = (
                        "RECREATED_DISCOUNT" if discount is None else "RECREATED_DELETED_DISCOUNT"
                    )
                    await self._recreate(reward, result, fix_action)
                return result

            try:
                customer = await client.retrieve_customer(reward.customer_id)
            except PosApiError as exc:
                result.valid = False
                result.issue = SyncIssue.VALIDATION_ERROR
                result.details = {"error": str(exc)}
                return result

            group_ids = list((customer or {}).get("group_ids") or [])
            if reward.pos_group_id not in group_ids:
                result.valid = False
                result.issue = SyncIssue.CUSTOMER_NOT_IN_GROUP
                result.details = {"group_id": reward.pos_group_id, "customer_groups": group_ids}
                if fix_issues:
                    try:
                        await client.add_customer_to_group(
                            customer_id=reward.customer_id, group_id=reward.pos_group_id
                        )
                    except PosApiError as exc:
                        result.details["fix_error"] = str(exc)
                    else:
                        result.fixed = True
                        result.fix_action = "READDED_TO_GROUP"
        return result

    async def _recreate(self, reward: LoyaltyReward, result: RewardValidation, fix_action: str) -> None:
        reward.pos_group_id = None
        reward.pos_discount_id = None
        reward.pos_product_set_id = None
        reward.pos_pricing_rule_id = None
        reward.pos_synced_at = None
        await self._db.commit()

        outcome = await self.create_reward_automation(reward.tenant_id, reward.id)
        if outcome.success:
            result.fixed = True
            result.fix_action = fix_action
        else:
            result.details["fix_error"] = outcome.error


__all__ = [
    "RewardSyncOrchestrator",
    "RewardValidation",
    "SagaStep",
    "SyncIssue",
    "SyncOutcome",
]
