"""Observability endpoints for loyalty pipelines and scheduled jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from punchcard_api.api.dependencies.security import require_intake_api_key
from punchcard_api.observability.loyalty import get_loyalty_store
from punchcard_api.observability.scheduler import get_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_intake_api_key)],
    summary="Loyalty pipeline counters",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    return {
        "loyalty": get_loyalty_store().snapshot().as_dict(),
        "scheduler": get_scheduler_store().snapshot().as_dict(),
    }


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_intake_api_key)],
    summary="Prometheus-formatted loyalty metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    loyalty = get_loyalty_store().snapshot()
    scheduler = get_scheduler_store().snapshot()

    lines: list[str] = []
    for key, value in sorted(loyalty.purchases.items()):
        lines.extend(_format_metric("punchcard_purchases_total", "Loyalty purchase counters", value, {"kind": key}))
    for status, value in sorted(loyalty.rewards.items()):
        lines.extend(_format_metric("punchcard_reward_transitions_total", "Reward transitions", value, {"status": status}))
    for method, value in sorted(loyalty.detections.items()):
        lines.extend(
            _format_metric("punchcard_redemption_detections_total", "Redemption detections", value, {"method": method})
        )
    for outcome, value in sorted(loyalty.sync.get("outcomes", {}).items()):
        lines.extend(_format_metric("punchcard_pos_sync_total", "POS sync outcomes", value, {"outcome": outcome}))
    for job_id, job in sorted(scheduler.jobs.items()):
        lines.extend(
            _format_metric(
                "punchcard_job_consecutive_failures",
                "Consecutive failed attempts per loyalty job",
                job.consecutive_failures,
                {"job": job_id},
            )
        )
    return PlainTextResponse("\n".join(lines) + "\n")
