"""Nightly loyalty expiry sweeps."""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from punchcard_api.services.loyalty import ExpirationSweeper, RewardSyncOrchestrator
from punchcard_api.services.loyalty.pos_client import PosClientFactory

from ._session import SessionFactory, open_session, resolve_tenants


async def run_window_expiration(
    *,
    session_factory: SessionFactory,
    tenant_ids: Iterable[str | UUID] | None = None,
    as_of: dt.date | None = None,
) -> Dict[str, Any]:
    """Remove purchases that aged out of the rolling window from in-progress counters."""

    session = await open_session(session_factory)
    async with session as managed_session:
        tenants = await resolve_tenants(managed_session, tenant_ids)
        sweeper = ExpirationSweeper(managed_session)

        summary: Dict[str, Any] = {"tenants": len(tenants), "pairs_updated": 0, "expired_quantity": 0, "revoked": 0}
        for tenant_id in tenants:
            result = await sweeper.expire_window_entries(tenant_id, as_of=as_of)
            summary["pairs_updated"] += result.pairs_updated
            summary["expired_quantity"] += result.expired_quantity
            summary["revoked"] += len(result.revoked_reward_ids)

    logger.bind(summary=summary).info("Loyalty window expiration completed")
    return summary


async def run_earned_reward_expiration(
    *,
    session_factory: SessionFactory,
    tenant_ids: Iterable[str | UUID] | None = None,
    now: dt.datetime | None = None,
    client_factory: PosClientFactory | None = None,
) -> Dict[str, Any]:
    """Revoke earned rewards whose locked purchases have all expired."""

    session = await open_session(session_factory)
    async with session as managed_session:
        tenants = await resolve_tenants(managed_session, tenant_ids)
        sync = RewardSyncOrchestrator(managed_session, client_factory=client_factory)
        sweeper = ExpirationSweeper(managed_session, sync=sync)

        summary: Dict[str, Any] = {"tenants": len(tenants), "revoked": 0, "unlocked_events": 0, "cleanup_failures": 0}
        for tenant_id in tenants:
            result = await sweeper.expire_earned_rewards(tenant_id, now=now)
            counts = result.as_dict()
            summary["revoked"] += counts["revoked"]
            summary["unlocked_events"] += counts["unlocked_events"]
            summary["cleanup_failures"] += counts["cleanup_failures"]

    logger.bind(summary=summary).info("Loyalty earned reward expiration completed")
    return summary


__all__ = ["run_earned_reward_expiration", "run_window_expiration"]
