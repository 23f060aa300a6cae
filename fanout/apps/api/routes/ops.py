from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel, Field

from fanout.apps.api.deps import actor_id_header, get_engine, get_telemetry
from fanout.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fanout.apps.api.response import SuccessEnvelope, success_response
from fanout.apps.api.routes.broadcasts import JobResponse, to_job_response
from fanout.domain.records import DeadLetterRecord
from fanout.services.metrics import format_uptime
from fanout.services.notifications.dead_letters import RESOLUTION_MANUAL
from fanout.services.notifications.engine import BroadcastEngine
from fanout.services.telemetry import RequestTelemetry

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class DeadLetterResponse(BaseModel):
    id: str
    job_id: str
    recipient_id: str
    attempts_made: int
    reason: str
    last_error: str | None = None
    first_failed_at: datetime
    last_failed_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    replay_job_id: str | None = None


class ResolveRequest(BaseModel):
    resolution: str = Field(default=RESOLUTION_MANUAL, min_length=1, max_length=64)


class ReplayResponse(BaseModel):
    job: JobResponse
    dead_letter: DeadLetterResponse


def _to_dead_letter_response(record: DeadLetterRecord) -> DeadLetterResponse:
    return DeadLetterResponse(
        id=record.id,
        job_id=record.job_id,
        recipient_id=record.recipient_id,
        attempts_made=record.attempts_made,
        reason=record.reason,
        last_error=record.last_error,
        first_failed_at=record.first_failed_at,
        last_failed_at=record.last_failed_at,
        resolved_at=record.resolved_at,
        resolved_by=record.resolved_by,
        resolution=record.resolution,
        replay_job_id=record.replay_job_id,
    )


@router.get("/dead-letters", response_model=SuccessEnvelope[list[DeadLetterResponse]])
async def list_dead_letters(
    request: Request,
    resolved: bool | None = Query(default=None),
    job_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    engine: BroadcastEngine = Depends(get_engine),
) -> dict:
    records = await engine.list_dead_letters(resolved=resolved, job_id=job_id, limit=limit)
    return success_response(request=request, data=[_to_dead_letter_response(record) for record in records])


@router.post("/dead-letters/{dead_letter_id}/resolve", response_model=SuccessEnvelope[DeadLetterResponse])
async def resolve_dead_letter(
    request: Request,
    dead_letter_id: str,
    body: ResolveRequest | None = Body(default=None),
    engine: BroadcastEngine = Depends(get_engine),
    actor_id: str | None = Depends(actor_id_header),
) -> dict:
    resolution = body.resolution if body is not None else RESOLUTION_MANUAL
    record = await engine.dead_letters.resolve(dead_letter_id, actor_id=actor_id, resolution=resolution)
    return success_response(request=request, data=_to_dead_letter_response(record))


@router.post("/dead-letters/{dead_letter_id}/replay", status_code=202, response_model=SuccessEnvelope[ReplayResponse])
async def replay_dead_letter(
    request: Request,
    dead_letter_id: str,
    engine: BroadcastEngine = Depends(get_engine),
    actor_id: str | None = Depends(actor_id_header),
) -> dict:
    # Replaying twice returns the job created by the first replay.
    job, record = await engine.dead_letters.replay(dead_letter_id, actor_id=actor_id)
    payload = ReplayResponse(job=to_job_response(job), dead_letter=_to_dead_letter_response(record))
    return success_response(request=request, data=payload)


@router.get("/metrics")
async def metrics_summary(
    request: Request,
    engine: BroadcastEngine = Depends(get_engine),
    telemetry: RequestTelemetry = Depends(get_telemetry),
) -> dict:
    # JSON mirror of the Prometheus scrape for dashboards that do not speak the text format.
    stats = await engine.metrics.refresh()
    uptime_s = int(engine.metrics.uptime_seconds())
    executor = engine.executor
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": {"seconds": uptime_s, "formatted": format_uptime(uptime_s)},
        "memory": {"rss_bytes": engine.metrics.memory_rss_bytes()},
        "requests": telemetry.summary(),
        "dlq": stats.as_dict(),
        "executor": {
            "inline": engine.inline,
            "max_concurrency": executor.max_concurrency,
            "in_flight": executor.in_flight,
            "queued": executor.queue_depth(),
            "delayed": executor.delayed_count(),
        },
    }
    queue_depth = getattr(engine.scheduler, "queue_depth", None)
    if queue_depth is not None:
        payload["executor"]["queued"] = await queue_depth()
    pool_stats = getattr(engine.store, "pool_stats", None)
    if pool_stats is not None:
        payload["store"] = {"pool": pool_stats()}
    return success_response(request=request, data=payload)
