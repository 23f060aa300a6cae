from __future__ import annotations

import asyncio
from datetime import datetime
import json
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import StreamingResponse

from fanout.apps.api.deps import actor_id_header, get_engine, idempotency_key_header
from fanout.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fanout.apps.api.response import SuccessEnvelope, success_response
from fanout.domain.records import CHANNEL_BROADCAST, DeliveryUnit, Job
from fanout.services.idempotency import IDEMPOTENCY_REPLAYED_HEADER
from fanout.services.notifications.bus import job_progress
from fanout.services.notifications.engine import JOB_LIST_MAX_LIMIT, BroadcastEngine
from fanout.services.notifications.tracker import EVENT_STATUS, EVENT_TERMINAL

router = APIRouter(prefix="/broadcasts", tags=["broadcasts"], responses=DEFAULT_ERROR_RESPONSES)


class BroadcastRequest(BaseModel):
    # Field shapes are checked here; length, kind and target rules are enforced by the engine.
    model_config = ConfigDict(populate_by_name=True)

    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    kind: str
    subject: str
    body: str
    target_spec: Any = Field(alias="targetSpec")
    metadata: dict[str, Any] = Field(default_factory=dict)

    def job_request(self) -> dict[str, Any]:
        return {
            "channel": CHANNEL_BROADCAST,
            "kind": self.kind,
            "subject": self.subject,
            "body": self.body,
            "target": self.target_spec,
            "metadata": self.metadata,
        }


class JobResponse(BaseModel):
    job_id: str
    idempotency_key: str
    channel: str
    kind: str
    subject: str
    status: str
    target_mode: str
    target_count: int
    sent_count: int
    failed_count: int
    remaining_count: int
    progress_percent: int
    created_by: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryResponse(BaseModel):
    recipient_id: str
    outcome: str
    attempt_number: int
    last_error: str | None = None
    next_retry_at: datetime | None = None
    updated_at: datetime | None = None


class PreviewResponse(BaseModel):
    target_count: int
    is_global: bool


def to_job_response(job: Job) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        idempotency_key=job.idempotency_key,
        channel=job.channel,
        kind=job.kind,
        subject=job.subject,
        status=job.status.value,
        target_mode=job.target_mode,
        target_count=job.target_count,
        sent_count=job.sent_count,
        failed_count=job.failed_count,
        remaining_count=job.remaining_count,
        progress_percent=job.progress_percent,
        created_by=job.created_by,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        last_error=job.last_error,
        metadata=dict(job.metadata or {}),
    )


def _to_delivery_response(unit: DeliveryUnit) -> DeliveryResponse:
    return DeliveryResponse(
        recipient_id=unit.recipient_id,
        outcome=unit.outcome.value,
        attempt_number=unit.attempt_number,
        last_error=unit.state.last_error,
        next_retry_at=unit.state.next_retry_at,
        updated_at=unit.updated_at,
    )


def _sse_message(event_type: str, data: dict[str, Any]) -> str:
    # SSE framing: event name stays "message"; the event type travels inside the JSON line.
    payload = json.dumps({"type": event_type, "data": data}, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"event: message\ndata: {payload}\n\n"


@router.post("", status_code=202, response_model=SuccessEnvelope[JobResponse])
async def submit_broadcast(
    request: Request,
    response: Response,
    body: BroadcastRequest,
    engine: BroadcastEngine = Depends(get_engine),
    header_key: str | None = Depends(idempotency_key_header),
    actor_id: str | None = Depends(actor_id_header),
) -> dict:
    # 202 for a new job; 200 plus the replay header when the key already names a job.
    admission = await engine.submit(body.idempotency_key or header_key, body.job_request(), created_by=actor_id)
    if not admission.created:
        response.status_code = 200
        response.headers[IDEMPOTENCY_REPLAYED_HEADER] = "true"
    return success_response(request=request, data=to_job_response(admission.job))


@router.post("/preview", response_model=SuccessEnvelope[PreviewResponse])
async def preview_broadcast(
    request: Request,
    body: BroadcastRequest,
    engine: BroadcastEngine = Depends(get_engine),
) -> dict:
    preview = await engine.preview(body.job_request())
    return success_response(
        request=request,
        data=PreviewResponse(target_count=preview.target_count, is_global=preview.is_global),
    )


@router.get("", response_model=SuccessEnvelope[list[JobResponse]])
async def list_broadcasts(
    request: Request,
    status: str | None = Query(default=None),
    kind: str | None = Query(default=None),
    channel: str | None = Query(default=None),
    created_by: str | None = Query(default=None, max_length=128),
    limit: int = Query(default=50, ge=1, le=JOB_LIST_MAX_LIMIT),
    engine: BroadcastEngine = Depends(get_engine),
) -> dict:
    jobs = await engine.list_jobs(
        status=status.upper() if status else None,
        kind=kind,
        channel=channel,
        created_by=created_by,
        limit=limit,
    )
    return success_response(request=request, data=[to_job_response(job) for job in jobs])


@router.get("/{job_id}", response_model=SuccessEnvelope[JobResponse])
async def get_broadcast(
    request: Request,
    job_id: str,
    engine: BroadcastEngine = Depends(get_engine),
) -> dict:
    job = await engine.get_status(job_id)
    return success_response(request=request, data=to_job_response(job))


@router.get("/{job_id}/deliveries", response_model=SuccessEnvelope[list[DeliveryResponse]])
async def list_broadcast_deliveries(
    request: Request,
    job_id: str,
    engine: BroadcastEngine = Depends(get_engine),
) -> dict:
    units = await engine.list_deliveries(job_id)
    return success_response(request=request, data=[_to_delivery_response(unit) for unit in units])


@router.get("/{job_id}/events")
async def stream_broadcast_events(
    request: Request,
    job_id: str,
    engine: BroadcastEngine = Depends(get_engine),
) -> StreamingResponse:
    # Resolve the job before streaming so an unknown id is a plain 404.
    await engine.get_status(job_id)
    heartbeat_s = max(1, int(engine.settings.sse_heartbeat_s))

    async def event_stream() -> AsyncIterator[str]:
        with engine.bus.subscribe(job_id) as queue:
            current = await engine.get_status(job_id)
            yield _sse_message(EVENT_TERMINAL if current.is_terminal else EVENT_STATUS, dict(job_progress(current)))
            if current.is_terminal:
                return
            while True:
                if await request.is_disconnected():
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    # A dropped terminal event must not leave the stream open forever.
                    latest = await engine.get_status(job_id)
                    if latest.is_terminal:
                        yield _sse_message(EVENT_TERMINAL, dict(job_progress(latest)))
                        return
                    continue
                yield _sse_message(event["type"], dict(event["data"]))
                if event["type"] == EVENT_TERMINAL:
                    return

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")
