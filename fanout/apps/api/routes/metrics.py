from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from fanout.apps.api.deps import get_engine
from fanout.services.notifications.engine import BroadcastEngine

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics(engine: BroadcastEngine = Depends(get_engine)) -> Response:
    body = await engine.metrics.render()
    return Response(content=body, media_type=engine.metrics.content_type)
