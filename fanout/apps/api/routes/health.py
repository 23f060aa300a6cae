from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from fanout.apps.api.deps import get_engine
from fanout.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fanout.apps.api.response import SuccessEnvelope, success_response
from fanout.services.notifications.engine import EXECUTION_INLINE, EXECUTION_QUEUE, BroadcastEngine

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    execution_mode: str
    workers: int
    in_flight: int


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, engine: BroadcastEngine = Depends(get_engine)) -> dict:
    payload = HealthResponse(
        status="ok",
        execution_mode=EXECUTION_INLINE if engine.inline else EXECUTION_QUEUE,
        workers=engine.executor.max_concurrency if engine.inline else 0,
        in_flight=engine.executor.in_flight,
    )
    return success_response(request=request, data=payload)
