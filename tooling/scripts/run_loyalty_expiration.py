"""Run the loyalty expiry sweeps once.

Intended usage: ad-hoc sweeps after an outage, or cron on hosts where the
in-process scheduler is disabled.

Example:
    python tooling/scripts/run_loyalty_expiration.py --tenant 5b0c... --skip-earned
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire aged punch-card progress and stale earned rewards")
    parser.add_argument(
        "--tenant",
        action="append",
        dest="tenants",
        default=None,
        help="Restrict the sweep to a tenant id. Repeat for several tenants; defaults to every active tenant.",
    )
    parser.add_argument(
        "--skip-window",
        action="store_true",
        help="Skip removing expired purchases from in-progress counters.",
    )
    parser.add_argument(
        "--skip-earned",
        action="store_true",
        help="Skip revoking earned rewards whose locked purchases all expired.",
    )
    return parser.parse_args()


async def _run(tenants: list[str] | None, *, window: bool, earned: bool) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from punchcard_api.db.session import async_session  # type: ignore import-position
    from punchcard_api.jobs.loyalty import (  # type: ignore import-position
        run_earned_reward_expiration,
        run_window_expiration,
    )

    summary: dict[str, Any] = {}
    if window:
        summary["window"] = await run_window_expiration(session_factory=async_session, tenant_ids=tenants)
    if earned:
        summary["earned"] = await run_earned_reward_expiration(session_factory=async_session, tenant_ids=tenants)
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.tenants, window=not args.skip_window, earned=not args.skip_earned))
    window = summary.get("window", {})
    earned = summary.get("earned", {})
    logger.success(
        "Loyalty expiration run completed",
        pairs_updated=window.get("pairs_updated", 0),
        expired_quantity=window.get("expired_quantity", 0),
        revoked=window.get("revoked", 0) + earned.get("revoked", 0),
        cleanup_failures=earned.get("cleanup_failures", 0),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
