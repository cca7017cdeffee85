"""Observability endpoints for pipeline stage runs and scheduled jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from stockloyal_api.api.dependencies.security import require_admin_api_key
from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.observability.scheduler import get_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"], dependencies=[Depends(require_admin_api_key)])


@router.get("/pipeline", summary="Stage run totals and latest outcomes")
async def get_pipeline_snapshot() -> dict[str, object]:
    return {"success": True, **get_pipeline_store().snapshot().as_dict()}


@router.get("/scheduler", summary="Scheduled pipeline job health")
async def get_scheduler_snapshot(request: Request) -> dict[str, object]:
    scheduler = getattr(request.app.state, "pipeline_job_scheduler", None)
    if scheduler is not None:
        return {"success": True, **scheduler.health()}
    return {"success": True, "running": False, **get_scheduler_store().snapshot().as_dict()}


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


@router.get("/prometheus", summary="Prometheus-formatted pipeline metrics", response_class=PlainTextResponse)
async def get_prometheus_metrics() -> PlainTextResponse:
    pipeline_snapshot = get_pipeline_store().snapshot()
    scheduler_snapshot = get_scheduler_store().snapshot()

    lines: list[str] = []
    for stage, totals in sorted(pipeline_snapshot.totals.items()):
        for outcome, value in sorted(totals.items()):
            lines.extend(
                _format_metric(
                    "stockloyal_pipeline_stage_runs_total",
                    "Pipeline stage runs by outcome",
                    value,
                    {"stage": stage, "outcome": outcome},
                )
            )
    for job_id, job in sorted(scheduler_snapshot.jobs.items()):
        for counter, value in sorted(job.totals.items()):
            lines.extend(
                _format_metric(
                    "stockloyal_scheduler_job_events",
                    "Scheduled pipeline job counters",
                    value,
                    {"job": job_id, "counter": counter},
                )
            )
    return PlainTextResponse("\n".join(lines) + "\n")
