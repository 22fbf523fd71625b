#!/usr/bin/env python3
"""Quick health check for the punch-card observability endpoints.

Usage:
    python tooling/scripts/check_observability.py \
        --base-url https://staging-api.example.com \
        --api-key "$LOYALTY_INTAKE_API_KEY"

The script validates:
  * POS sync: failed create/cleanup sagas are within thresholds.
  * Scheduled jobs: no loyalty job has more consecutive failures than allowed.
  * Redemption detection (optional): the not-detected rate stays under a ceiling.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Punch-card observability checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the punch-card API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Intake API key, required when the service enforces one.",
    )
    parser.add_argument(
        "--max-sync-failures",
        type=int,
        default=0,
        help="Maximum allowed failed POS sync sagas before failing (default: 0).",
    )
    parser.add_argument(
        "--max-job-consecutive-failures",
        type=int,
        default=2,
        help="Maximum allowed consecutive failures for any scheduled job (default: 2).",
    )
    parser.add_argument(
        "--skip-detection",
        action="store_true",
        help="Skip the redemption detection rate check.",
    )
    parser.add_argument(
        "--max-not-detected-rate",
        type=float,
        default=0.9,
        help="Maximum allowed ratio (0-1) of detection attempts that found nothing (default: 0.9).",
    )
    parser.add_argument(
        "--detection-min-sample-size",
        type=int,
        default=20,
        help="Minimum number of detection attempts before enforcing the rate check (default: 20).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args()


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _fail(message: str) -> None:
    print(f"[check-observability] ❌ {message}")
    sys.exit(1)


def _log_ok(message: str) -> None:
    print(f"[check-observability] ✅ {message}")


def validate_sync(loyalty: Dict[str, Any], max_failures: int) -> None:
    sync = loyalty.get("sync", {}) or {}
    outcomes = sync.get("outcomes", {}) or {}
    failures = sum(int(value) for key, value in outcomes.items() if key.endswith(":failure"))

    if failures > max_failures:
        by_step = sync.get("failures_by_step", {}) or {}
        _fail(f"POS sync failures {failures} exceed threshold {max_failures} (by step: {by_step})")

    _log_ok(f"POS sync OK (outcomes={outcomes})")


def validate_jobs(scheduler: Dict[str, Any], max_consecutive_failures: int) -> None:
    jobs = scheduler.get("jobs", {}) or {}
    for job_id, job in jobs.items():
        consecutive = int(job.get("totals", {}).get("consecutive_failures", 0))
        if consecutive > max_consecutive_failures:
            _fail(
                f"Job {job_id} has {consecutive} consecutive failures "
                f"(threshold {max_consecutive_failures}, last error: {job.get('last_error')})"
            )

    _log_ok(f"Scheduled jobs OK ({len(jobs)} tracked)")


def validate_detection(
    loyalty: Dict[str, Any],
    skip_detection: bool,
    max_not_detected_rate: float,
    min_sample_size: int,
) -> None:
    if skip_detection:
        _log_ok("Skipping redemption detection check per flag")
        return

    detections = loyalty.get("detections", {}) or {}
    total = sum(int(value) for value in detections.values())
    not_detected = int(detections.get("not_detected", 0))

    if total < min_sample_size:
        _log_ok(
            f"Detection sample size below threshold ({total}/{min_sample_size}); "
            "skipping not-detected rate check"
        )
        return

    rate = not_detected / total
    if rate > max_not_detected_rate:
        _fail(
            "Not-detected rate {:.1%} exceeds threshold {:.1%} (not_detected={}, attempts={})".format(
                rate, max_not_detected_rate, not_detected, total
            )
        )

    _log_ok(f"Redemption detection OK (attempts={total}, not_detected_rate={rate:.1%})")


async def main() -> None:
    args = parse_args()
    headers = {"X-API-Key": args.api_key} if args.api_key else None

    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        payload = await _get_json(client, "/api/v1/observability/loyalty", headers=headers)

    loyalty = payload.get("loyalty", {}) or {}
    scheduler = payload.get("scheduler", {}) or {}

    validate_sync(loyalty, args.max_sync_failures)
    validate_jobs(scheduler, args.max_job_consecutive_failures)
    validate_detection(
        loyalty,
        skip_detection=args.skip_detection,
        max_not_detected_rate=args.max_not_detected_rate,
        min_sample_size=args.detection_min_sample_size,
    )

    _log_ok("Observability checks completed successfully")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except httpx.HTTPStatusError as exc:
        _fail(f"HTTP {exc.response.status_code} while calling {exc.request.url}")
    except Exception as exc:  # pragma: no cover - best-effort logging
        _fail(f"Unexpected error: {exc}")
