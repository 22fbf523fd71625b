"""Compare earned rewards against their POS discount objects.

Reports drift by default; pass --fix to recreate missing discounts and re-add
customers to their reward groups.

Example:
    python tooling/scripts/reconcile_reward_sync.py --tenant 5b0c... --fix
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate reward discount sync with the POS")
    parser.add_argument(
        "--tenant",
        action="append",
        dest="tenants",
        default=None,
        help="Restrict reconciliation to a tenant id. Repeat for several tenants.",
    )
    parser.add_argument(
        "--fix",
        action="store_true",
        help="Repair drifted rewards instead of only reporting them.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run summary as JSON on stdout.",
    )
    return parser.parse_args()


async def _run(tenants: list[str] | None, fix: bool) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from punchcard_api.db.session import async_session  # type: ignore import-position
    from punchcard_api.jobs.loyalty import run_reward_sync_reconciliation  # type: ignore import-position

    return await run_reward_sync_reconciliation(session_factory=async_session, tenant_ids=tenants, fix_issues=fix)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.tenants, args.fix))
    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True))
    logger.success(
        "Reward sync reconciliation completed",
        checked=summary.get("checked", 0),
        invalid=summary.get("invalid", 0),
        fixed=summary.get("fixed", 0),
        fix=args.fix,
    )
    return 1 if summary.get("invalid") and not args.fix else 0


if __name__ == "__main__":
    sys.exit(main())
