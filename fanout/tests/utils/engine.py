from __future__ import annotations

import json
from typing import Any, Iterable

from fanout.core.config import Settings
from fanout.persistence.base import DeliveryStore
from fanout.persistence.memory import MemoryDeliveryStore
from fanout.providers.transport.base import DeliveryTransport
from fanout.providers.transport.fake import FakeTransport
from fanout.services.notifications.audience import RecipientDirectory, StaticRecipientDirectory
from fanout.services.notifications.engine import BroadcastEngine


def make_settings(**overrides: Any) -> Settings:
    # Millisecond backoff keeps retry scenarios fast; zero jitter keeps them deterministic.
    values: dict[str, Any] = {
        "store_backend": "memory",
        "execution_mode": "inline",
        "transport": "fake",
        "delivery_max_concurrency": 8,
        "delivery_max_attempts": 5,
        "delivery_backoff_ms": 1,
        "delivery_backoff_max_ms": 5,
        "delivery_backoff_jitter_ms": 0,
        "delivery_timeout_ms": 500,
        "audience_recipients_json": json.dumps([f"user-{index}" for index in range(5)]),
        "alert_recipients_json": json.dumps(["ops-1", "ops-2"]),
        "sse_heartbeat_s": 1,
        # Tests that exercise the stalled-unit sweep enable it explicitly.
        "delivery_sweep_interval_s": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def broadcast_request(
    *,
    kind: str = "INFO",
    subject: str = "Maintenance window",
    body: str = "The API is read-only between 02:00 and 03:00 UTC.",
    target: Any = "GLOBAL",
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "channel": "broadcast",
        "kind": kind,
        "subject": subject,
        "body": body,
        "target": target,
        "metadata": metadata or {},
    }


def explicit(recipient_ids: Iterable[str]) -> dict[str, Any]:
    return {"mode": "EXPLICIT", "recipient_ids": list(recipient_ids)}


def build_test_engine(
    *,
    settings: Settings | None = None,
    transport: DeliveryTransport | None = None,
    store: DeliveryStore | None = None,
    directory: RecipientDirectory | None = None,
) -> BroadcastEngine:
    settings = settings or make_settings()
    return BroadcastEngine(
        settings=settings,
        store=store or MemoryDeliveryStore(),
        transport=transport or FakeTransport(),
        directory=directory
        or StaticRecipientDirectory(settings.audience_recipients(), alert_recipients=settings.alert_recipients()),
    )
