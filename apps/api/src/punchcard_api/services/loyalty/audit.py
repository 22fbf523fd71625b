"""Audit log writer and query helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.models.loyalty_audit import AuditAction, AuditTrigger, LoyaltyAuditLog

MAX_PAGE_SIZE = 500


@dataclass(slots=True)
class AuditPage:
    entries: Sequence[LoyaltyAuditLog]
    total: int
    limit: int
    offset: int


class AuditLogService:
    """Writes audit rows inside the caller's transaction; never commits on its own."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def record(
        self,
        *,
        tenant_id: UUID,
        action: AuditAction,
        offer_id: UUID | None = None,
        reward_id: UUID | None = None,
        purchase_event_id: UUID | None = None,
        redemption_id: UUID | None = None,
        customer_id: str | None = None,
        order_id: str | None = None,
        old_state: str | None = None,
        new_state: str | None = None,
        old_quantity: int | None = None,
        new_quantity: int | None = None,
        triggered_by: AuditTrigger = AuditTrigger.SYSTEM,
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> LoyaltyAuditLog:
        entry = LoyaltyAuditLog(
            tenant_id=tenant_id,
            action=action.value,
            offer_id=offer_id,
            reward_id=reward_id,
            purchase_event_id=purchase_event_id,
            redemption_id=redemption_id,
            customer_id=customer_id,
            order_id=order_id,
            old_state=old_state,
            new_state=new_state,
            old_quantity=old_quantity,
            new_quantity=new_quantity,
            triggered_by=triggered_by,
            actor_id=actor_id,
            details=_jsonable(details) if details else None,
        )
        self._db.add(entry)
        await self._db.flush()
        logger.debug(
            "Loyalty audit recorded",
            tenant_id=str(tenant_id),
            action=action.value,
            reward_id=str(reward_id) if reward_id else None,
            customer_id=customer_id,
        )
        return entry

    async def list_entries(
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
        """Return audit entries for a tenant, newest first."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(offset, 0)

        filters = [LoyaltyAuditLog.tenant_id == tenant_id]
        if action is not None:
            filters.append(LoyaltyAuditLog.action == action.value)
        if customer_id:
            filters.append(LoyaltyAuditLog.customer_id == customer_id)
        if offer_id is not None:
            filters.append(LoyaltyAuditLog.offer_id == offer_id)
        if reward_id is not None:
            filters.append(LoyaltyAuditLog.reward_id == reward_id)

        stmt = (
            select(LoyaltyAuditLog)
            .where(*filters)
            .order_by(LoyaltyAuditLog.created_at.desc(), LoyaltyAuditLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        entries = (await self._db.execute(stmt)).scalars().all()
        total = (
            await self._db.execute(select(func.count()).select_from(LoyaltyAuditLog).where(*filters))
        ).scalar_one()
        return AuditPage(entries=entries, total=int(total), limit=limit, offset=offset)


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, UUID):
            result[key] = str(value)
        elif isinstance(value, dict):
            result[key] = _jsonable(value)
        elif hasattr(value, "isoformat"):
            result[key] = value.isoformat()
        elif hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            result[key] = value.value
        else:
            result[key] = value
    return result


__all__ = ["AuditLogService", "AuditPage"]
