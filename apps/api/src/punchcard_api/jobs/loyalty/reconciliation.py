"""Job that checks earned rewards against the POS and retries stalled teardown."""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from punchcard_api.core.settings import settings
from punchcard_api.services.loyalty import RewardSyncOrchestrator
from punchcard_api.services.loyalty.pos_client import PosClientFactory

from ._session import SessionFactory, open_session, resolve_tenants


async def run_reward_sync_reconciliation(
    *,
    session_factory: SessionFactory,
    tenant_ids: Iterable[str | UUID] | None = None,
    fix_issues: bool | None = None,
    client_factory: PosClientFactory | None = None,
) -> Dict[str, Any]:
    if fix_issues is None:
        fix_issues = settings.reward_sync_reconcile_fix_issues

    session = await open_session(session_factory)
    async with session as managed_session:
        tenants = await resolve_tenants(managed_session, tenant_ids)
        orchestrator = RewardSyncOrchestrator(managed_session, client_factory=client_factory)

        issues: Counter[str] = Counter()
        checked = fixed = cleanup_retried = cleanup_failures = 0
        for tenant_id in tenants:
            results = await orchestrator.validate_earned_rewards(tenant_id, fix_issues=fix_issues)
            checked += len(results)
            for result in results:
                if result.issue:
                    issues[result.issue] += 1
                if result.fixed:
                    fixed += 1

            cleanups = await orchestrator.retry_pending_cleanups(tenant_id)
            cleanup_retried += len(cleanups)
            cleanup_failures += sum(1 for outcome in cleanups if not outcome.success)

    summary: Dict[str, Any] = {
        "tenants": len(tenants),
        "checked": checked,
        "invalid": sum(issues.values()),
        "fixed": fixed,
        "issues": dict(issues),
        "cleanup_retried": cleanup_retried,
        "cleanup_failures": cleanup_failures,
        "fix_issues": fix_issues,
    }
    if summary["invalid"] and not fix_issues:
        logger.bind(summary=summary).warning("Reward sync drift detected")
    else:
        logger.bind(summary=summary).info("Reward sync reconciliation completed")
    return summary


__all__ = ["run_reward_sync_reconciliation"]
