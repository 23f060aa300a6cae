from __future__ import annotations

from fastapi import Header, HTTPException, Request

from fanout.services.notifications.engine import BroadcastEngine
from fanout.services.telemetry import RequestTelemetry


ACTOR_HEADER = "X-Actor-Id"


def get_engine(request: Request) -> BroadcastEngine:
    # One engine per app instance, created by the lifespan or injected by create_app.
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "ENGINE_NOT_READY", "message": "Delivery engine is not running"},
        )
    return engine


def get_telemetry(request: Request) -> RequestTelemetry:
    return request.app.state.telemetry


def actor_id_header(
    actor_id: str | None = Header(default=None, alias=ACTOR_HEADER, max_length=128),
) -> str | None:
    # Operator identity is taken as given; authentication sits in front of this service.
    cleaned = (actor_id or "").strip()
    return cleaned or None


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> str | None:
    # Length is enforced by the engine so header and body keys fail the same way.
    return idempotency_key
