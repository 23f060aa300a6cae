from __future__ import annotations

from fanout.core.config import Settings
from fanout.core.errors import ConfigError
from fanout.providers.transport.base import DeliveryTransport
from fanout.providers.transport.fake import FakeTransport
from fanout.providers.transport.noop import NoopTransport
from fanout.providers.transport.webhook import WebhookTransport


def get_transport(settings: Settings) -> DeliveryTransport:
    transport = (settings.transport or "noop").strip().lower()
    if transport == "noop":
        return NoopTransport()
    if transport == "fake":
        return FakeTransport()
    if transport == "webhook":
        if not settings.webhook_url_template:
            # Fail at build time rather than dead-lettering every unit at runtime.
            raise ConfigError("WEBHOOK_URL_TEMPLATE is required for the webhook transport")
        return WebhookTransport(
            url_template=settings.webhook_url_template,
            secret=settings.webhook_secret,
            timeout_s=max(0.2, settings.delivery_timeout_ms / 1000.0),
        )
    raise ConfigError(f"Unsupported delivery transport: {settings.transport}")
