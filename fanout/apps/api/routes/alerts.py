from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field

from fanout.apps.api.deps import actor_id_header, get_engine
from fanout.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fanout.apps.api.response import SuccessEnvelope, success_response
from fanout.apps.api.routes.broadcasts import JobResponse, to_job_response
from fanout.services.idempotency import IDEMPOTENCY_REPLAYED_HEADER
from fanout.services.notifications.alerts import alert_key
from fanout.services.notifications.engine import BroadcastEngine

router = APIRouter(prefix="/alerts", tags=["alerts"], responses=DEFAULT_ERROR_RESPONSES)


class AlertRequest(BaseModel):
    severity: str
    event: str = Field(min_length=1, max_length=100)
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("", status_code=202, response_model=SuccessEnvelope[JobResponse])
async def send_alert(
    request: Request,
    response: Response,
    body: AlertRequest,
    engine: BroadcastEngine = Depends(get_engine),
    actor_id: str | None = Depends(actor_id_header),
) -> dict:
    # Alerts share the broadcast pipeline; repeats of one event inside the dedupe window return the first job.
    if not engine.alerts.recipients:
        raise HTTPException(
            status_code=503,
            detail={"code": "ALERT_RECIPIENTS_MISSING", "message": "No alert recipients are configured"},
        )
    key = alert_key(event=body.event, window_seconds=engine.settings.alert_dedupe_window_s)
    admission = await engine.submit(
        key,
        engine.alerts.build_request(body.severity, body.event, body.message, body.metadata),
        created_by=actor_id or "system:alerts",
    )
    if not admission.created:
        response.status_code = 200
        response.headers[IDEMPOTENCY_REPLAYED_HEADER] = "true"
    return success_response(request=request, data=to_job_response(admission.job))
