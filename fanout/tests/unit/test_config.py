from __future__ import annotations

import pytest

from fanout.core.config import get_settings
from fanout.core.errors import ConfigError
from fanout.persistence.factory import get_store
from fanout.persistence.memory import MemoryDeliveryStore
from fanout.providers.transport.factory import get_transport
from fanout.providers.transport.webhook import WebhookTransport
from fanout.services.notifications.engine import build_broadcast_engine
from fanout.tests.utils.engine import make_settings


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("DELIVERY_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("AUDIENCE_RECIPIENTS_JSON", '["a", " b ", "", 3]')
    settings = get_settings()
    assert settings.delivery_max_attempts == 7
    assert settings.audience_recipients() == ["a", "b"]


def test_malformed_recipient_json_yields_empty_audience() -> None:
    assert make_settings(alert_recipients_json="{not json").alert_recipients() == []


def test_unknown_store_backend_is_rejected() -> None:
    with pytest.raises(ConfigError):
        get_store(make_settings(store_backend="cassandra"))
    assert isinstance(get_store(make_settings()), MemoryDeliveryStore)


def test_webhook_transport_requires_url() -> None:
    with pytest.raises(ConfigError):
        get_transport(make_settings(transport="webhook"))
    transport = get_transport(make_settings(transport="webhook", webhook_url_template="https://x.test/{recipient_id}"))
    assert isinstance(transport, WebhookTransport)
    assert transport.url_for("u1") == "https://x.test/u1"


def test_queue_mode_requires_shared_store() -> None:
    with pytest.raises(ConfigError):
        build_broadcast_engine(make_settings(execution_mode="queue"))
    with pytest.raises(ConfigError):
        build_broadcast_engine(make_settings(execution_mode="threads"))
